from ..accumulate import broadcast_accumulate
from ..errors import ShapeConflict
from ..shape import NodeDim, NodeShape
from .base import Op, OpInstance, Pass, standard_op_name


class Broadcast(Op):
    """
    Adds the input node to every position of the output node.

    The input must resolve to a fixed shape whose flat size equals the last
    (channel) dimension of the output.
    """
    type_name = "Broadcast"

    def __init__(self, input_id, output_id):
        super().__init__()
        self.input_id = input_id
        self.output_id = output_id

    def build(self, graph, op_id):
        name = standard_op_name(self, self._name, graph, [self.input_id], [self.output_id])
        return BroadcastInstance(
            name=name,
            input_id=self.input_id,
            output_id=self.output_id,
            forward_id=graph.add_pass(BroadcastForward(self.input_id, self.output_id)),
            backward_id=graph.add_pass(BroadcastBackward(self.input_id, self.output_id)),
        )


class BroadcastInstance(OpInstance):
    __slots__ = ('name', 'input_id', 'output_id', 'forward_id', 'backward_id')

    def __init__(self, name, input_id, output_id, forward_id, backward_id):
        self.name = name
        self.input_id = input_id
        self.output_id = output_id
        self.forward_id = forward_id
        self.backward_id = backward_id

    def dependencies(self):
        return [self.input_id], [self.output_id]

    def inner_passes(self):
        return [self.forward_id, self.backward_id]

    def propagate_shape_constraints(self, shapes):
        shapes.collapse_to_minimum(self.input_id)
        channels = shapes.get_shape(self.input_id).flat_size()
        output_shape = shapes.get_shape(self.output_id)
        if output_shape.ndim == 0:
            raise ShapeConflict("output node needs a channel dimension to broadcast into",
                                op=shapes.active_op)
        constraint = NodeShape([NodeDim.unknown()] * (output_shape.ndim - 1) + [NodeDim.known(channels)])
        shapes.merge_with(self.output_id, constraint)


class BroadcastForward(Pass):
    type_name = "BroadcastForward"
    __slots__ = ('input_id', 'output_id')

    def __init__(self, input_id, output_id):
        self.input_id = input_id
        self.output_id = output_id

    def dependencies(self):
        return [self.input_id.value_id()], [self.output_id.value_id()]

    def run(self, storage):
        input = storage.get(self.input_id.value_id())
        output = storage.get_mut(self.output_id.value_id())
        self.ensure(output.ndim > 0 and output.shape[-1] == input.numel(),
                    f"output channels {tuple(output.shape)[-1:]} did not match input size {input.numel()}")
        output.add_(input.reshape(input.numel()))


class BroadcastBackward(Pass):
    type_name = "BroadcastBackward"
    __slots__ = ('input_id', 'output_id')

    def __init__(self, input_id, output_id):
        self.input_id = input_id
        self.output_id = output_id

    def dependencies(self):
        return [self.output_id.gradient_id()], [self.input_id.gradient_id()]

    def run(self, storage):
        if not storage.is_required(self.input_id.gradient_id()):
            return
        output_grad = storage.get(self.output_id.gradient_id())
        input_grad = storage.get_mut(self.input_id.gradient_id())
        self.ensure(output_grad.ndim > 0 and output_grad.shape[-1] == input_grad.numel(),
                    f"output channels {tuple(output_grad.shape)[-1:]} did not match input size {input_grad.numel()}")
        # flat view of the input gradient, so the channel sum lands in place
        broadcast_accumulate(input_grad.view(input_grad.numel()), output_grad)
