from ..accumulate import broadcast_accumulate, can_broadcast
from ..shape import NodeDim, NodeShape
from .base import Op, OpInstance, Pass, standard_op_name


class Mul(Op):
    """
    The value of input2 is broadcast to the shape of input1, elementwise
    multiplied, then added to the output.
    """
    type_name = "Mul"

    def __init__(self, input1_id, input2_id, output_id):
        super().__init__()
        self.input1_id = input1_id
        self.input2_id = input2_id
        self.output_id = output_id

    def build(self, graph, op_id):
        name = standard_op_name(self, self._name, graph, [self.input1_id, self.input2_id], [self.output_id])
        return MulInstance(
            name=name,
            input1_id=self.input1_id,
            input2_id=self.input2_id,
            output_id=self.output_id,
            forward_id=graph.add_pass(MulForward(self.input1_id, self.input2_id, self.output_id)),
            backward_id=graph.add_pass(MulBackward(self.input1_id, self.input2_id, self.output_id)),
        )


class MulInstance(OpInstance):
    __slots__ = ('name', 'input1_id', 'input2_id', 'output_id', 'forward_id', 'backward_id')

    def __init__(self, name, input1_id, input2_id, output_id, forward_id, backward_id):
        self.name = name
        self.input1_id = input1_id
        self.input2_id = input2_id
        self.output_id = output_id
        self.forward_id = forward_id
        self.backward_id = backward_id

    def dependencies(self):
        return [self.input1_id, self.input2_id], [self.output_id]

    def inner_passes(self):
        return [self.forward_id, self.backward_id]

    def propagate_shape_constraints(self, shapes):
        # a Known(1) dimension of input2 says nothing about the output
        output_shape = NodeShape(
            d if d.is_known and d.lower != 1 else NodeDim.unknown()
            for d in shapes.get_shape(self.input2_id)
        )
        shapes.merge_with(self.output_id, output_shape)
        shapes.merge_with(self.output_id, shapes.get_shape(self.input1_id))
        shapes.merge_with(self.input1_id, shapes.get_shape(self.output_id))


def _check_shapes(pass_, input1, input2, output):
    pass_.ensure(input1.shape == output.shape,
                 f"input1 shape: {tuple(input1.shape)} did not match output shape: {tuple(output.shape)}")
    pass_.ensure(can_broadcast(input2.shape, input1.shape),
                 f"Could not broadcast input2 shape: {tuple(input2.shape)} to input1 shape: {tuple(input1.shape)}")


class MulForward(Pass):
    type_name = "MulForward"
    __slots__ = ('input1_id', 'input2_id', 'output_id')

    def __init__(self, input1_id, input2_id, output_id):
        self.input1_id = input1_id
        self.input2_id = input2_id
        self.output_id = output_id

    def dependencies(self):
        return (
            [self.input1_id.value_id(), self.input2_id.value_id()],
            [self.output_id.value_id()],
        )

    def run(self, storage):
        input1 = storage.get(self.input1_id.value_id())
        input2 = storage.get(self.input2_id.value_id())
        output = storage.get_mut(self.output_id.value_id())
        _check_shapes(self, input1, input2, output)
        output.add_(input1 * input2)


class MulBackward(Pass):
    type_name = "MulBackward"
    __slots__ = ('input1_id', 'input2_id', 'output_id')

    def __init__(self, input1_id, input2_id, output_id):
        self.input1_id = input1_id
        self.input2_id = input2_id
        self.output_id = output_id

    def dependencies(self):
        return (
            [self.input1_id.value_id(), self.input2_id.value_id(), self.output_id.gradient_id()],
            [self.input1_id.gradient_id(), self.input2_id.gradient_id()],
        )

    def run(self, storage):
        input1 = storage.get(self.input1_id.value_id())
        input2 = storage.get(self.input2_id.value_id())
        output_grad = storage.get(self.output_id.gradient_id())
        _check_shapes(self, input1, input2, output_grad)

        if storage.is_required(self.input1_id.gradient_id()):
            input1_grad = storage.get_mut(self.input1_id.gradient_id())
            input1_grad.add_(input2 * output_grad)

        if storage.is_required(self.input2_id.gradient_id()):
            # input2 was repeated across input1, so many products land on each element
            input2_grad = storage.get_mut(self.input2_id.gradient_id())
            broadcast_accumulate(input2_grad, input1 * output_grad)
