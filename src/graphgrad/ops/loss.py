from dataclasses import dataclass

from ..ids import NodeID, PassID
from ..shape import NodeShape
from .base import Op, OpInstance, Pass, standard_op_name


@dataclass(frozen=True)
class JointLoss:
    """No output node: the loss pass adds straight into the execution's loss."""
    pass_id: PassID


@dataclass(frozen=True)
class OutputLoss:
    """The loss is written to a scalar output node and scaled by that node's gradient."""
    output_id: NodeID
    forward_id: PassID
    backward_id: PassID


class Mse(Op):
    """Mean squared error between input and target, times a multiplier."""
    type_name = "Mse"

    def __init__(self, input_id, target_id, multiplier=1.0):
        super().__init__()
        self.input_id = input_id
        self.target_id = target_id
        self.multiplier = multiplier
        self.output_id = None

    def output(self, output_id):
        """Write the loss into output_id instead of adding it to the execution loss."""
        self.output_id = output_id
        return self

    def build(self, graph, op_id):
        outputs = [self.output_id] if self.output_id is not None else []
        name = standard_op_name(self, self._name, graph, [self.input_id, self.target_id], outputs)
        if self.output_id is None:
            loss_type = JointLoss(graph.add_pass(
                MseJoint(self.input_id, self.target_id, self.multiplier)))
        else:
            loss_type = OutputLoss(
                output_id=self.output_id,
                forward_id=graph.add_pass(MseForward(self.input_id, self.target_id, self.output_id, self.multiplier)),
                backward_id=graph.add_pass(MseBackward(self.input_id, self.target_id, self.output_id, self.multiplier)),
            )
        return MseInstance(name, self.input_id, self.target_id, loss_type)


class MseInstance(OpInstance):
    __slots__ = ('name', 'input_id', 'target_id', 'loss_type')

    def __init__(self, name, input_id, target_id, loss_type):
        self.name = name
        self.input_id = input_id
        self.target_id = target_id
        self.loss_type = loss_type

    def dependencies(self):
        outputs = [self.loss_type.output_id] if isinstance(self.loss_type, OutputLoss) else []
        return [self.input_id, self.target_id], outputs

    def inner_passes(self):
        if isinstance(self.loss_type, OutputLoss):
            return [self.loss_type.forward_id, self.loss_type.backward_id]
        return [self.loss_type.pass_id]

    def propagate_shape_constraints(self, shapes):
        shapes.merge_with(self.target_id, shapes.get_shape(self.input_id))
        shapes.merge_with(self.input_id, shapes.get_shape(self.target_id))
        if isinstance(self.loss_type, OutputLoss):
            shapes.merge_with(self.loss_type.output_id, NodeShape([1]))


def _mse_parts(pass_, storage, input_id, target_id):
    input = storage.get(input_id.value_id())
    target = storage.get(target_id.value_id())
    pass_.ensure(input.shape == target.shape,
                 f"input shape: {tuple(input.shape)} did not match target shape: {tuple(target.shape)}")
    return input - target, max(input.numel(), 1)


def _add_gradients(storage, input_id, target_id, grad):
    if storage.is_required(input_id.gradient_id()):
        storage.get_mut(input_id.gradient_id()).add_(grad)
    if storage.is_required(target_id.gradient_id()):
        storage.get_mut(target_id.gradient_id()).sub_(grad)


class MseJoint(Pass):
    type_name = "MseJoint"
    __slots__ = ('input_id', 'target_id', 'multiplier')

    def __init__(self, input_id, target_id, multiplier):
        self.input_id = input_id
        self.target_id = target_id
        self.multiplier = multiplier

    def dependencies(self):
        return (
            [self.input_id.value_id(), self.target_id.value_id()],
            [self.input_id.gradient_id(), self.target_id.gradient_id()],
        )

    def run(self, storage):
        diff, n = _mse_parts(self, storage, self.input_id, self.target_id)
        storage.loss_add(self.multiplier * diff.pow(2).sum().item() / n)
        _add_gradients(storage, self.input_id, self.target_id, diff * (2.0 * self.multiplier / n))


class MseForward(Pass):
    type_name = "MseForward"
    __slots__ = ('input_id', 'target_id', 'output_id', 'multiplier')

    def __init__(self, input_id, target_id, output_id, multiplier):
        self.input_id = input_id
        self.target_id = target_id
        self.output_id = output_id
        self.multiplier = multiplier

    def dependencies(self):
        return [self.input_id.value_id(), self.target_id.value_id()], [self.output_id.value_id()]

    def run(self, storage):
        diff, n = _mse_parts(self, storage, self.input_id, self.target_id)
        output = storage.get_mut(self.output_id.value_id())
        output.add_(self.multiplier * diff.pow(2).sum() / n)


class MseBackward(Pass):
    type_name = "MseBackward"
    __slots__ = ('input_id', 'target_id', 'output_id', 'multiplier')

    def __init__(self, input_id, target_id, output_id, multiplier):
        self.input_id = input_id
        self.target_id = target_id
        self.output_id = output_id
        self.multiplier = multiplier

    def dependencies(self):
        return (
            [self.input_id.value_id(), self.target_id.value_id(), self.output_id.gradient_id()],
            [self.input_id.gradient_id(), self.target_id.gradient_id()],
        )

    def run(self, storage):
        diff, n = _mse_parts(self, storage, self.input_id, self.target_id)
        scale = storage.get(self.output_id.gradient_id()).sum()
        _add_gradients(storage, self.input_id, self.target_id, diff * (2.0 * self.multiplier / n) * scale)
