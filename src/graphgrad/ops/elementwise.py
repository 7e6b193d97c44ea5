from abc import ABC, abstractmethod

import torch

from .base import Op, OpInstance, Pass, standard_op_name


class ActivationFunc(ABC):
    """Elementwise function and its derivative, both applied to whole tensors."""
    backprop_requires_input_value = True

    @abstractmethod
    def value(self, input):
        raise NotImplementedError

    @abstractmethod
    def gradient(self, input, output_grad):
        raise NotImplementedError


class TanhFunc(ActivationFunc):
    def value(self, input):
        return torch.tanh(input)

    def gradient(self, input, output_grad):
        t = torch.tanh(input)
        return output_grad * (1 - t * t)


class SigmoidFunc(ActivationFunc):
    def value(self, input):
        return torch.sigmoid(input)

    def gradient(self, input, output_grad):
        s = torch.sigmoid(input)
        return output_grad * s * (1 - s)


class ElementwiseInstance(OpInstance):
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
        shapes.merge_with(self.output_id, shapes.get_shape(self.input_id))
        shapes.merge_with(self.input_id, shapes.get_shape(self.output_id))


class ElementwiseForward(Pass):
    __slots__ = ('input_id', 'output_id', 'func', 'type_name')

    def __init__(self, input_id, output_id, func, type_name):
        self.input_id = input_id
        self.output_id = output_id
        self.func = func
        self.type_name = type_name

    def dependencies(self):
        return [self.input_id.value_id()], [self.output_id.value_id()]

    def run(self, storage):
        input = storage.get(self.input_id.value_id())
        output = storage.get_mut(self.output_id.value_id())
        self.ensure(input.shape == output.shape,
                    f"input shape: {tuple(input.shape)} did not match output shape: {tuple(output.shape)}")
        output.add_(self.func.value(input))


class ElementwiseBackward(Pass):
    __slots__ = ('input_id', 'output_id', 'func', 'type_name')

    def __init__(self, input_id, output_id, func, type_name):
        self.input_id = input_id
        self.output_id = output_id
        self.func = func
        self.type_name = type_name

    def dependencies(self):
        reads = [self.output_id.gradient_id()]
        if self.func.backprop_requires_input_value:
            reads.insert(0, self.input_id.value_id())
        return reads, [self.input_id.gradient_id()]

    def run(self, storage):
        if not storage.is_required(self.input_id.gradient_id()):
            return
        output_grad = storage.get(self.output_id.gradient_id())
        input = storage.get(self.input_id.value_id()) if self.func.backprop_requires_input_value else None
        input_grad = storage.get_mut(self.input_id.gradient_id())
        self.ensure(input_grad.shape == output_grad.shape,
                    f"input shape: {tuple(input_grad.shape)} did not match output shape: {tuple(output_grad.shape)}")
        input_grad.add_(self.func.gradient(input, output_grad))


def elementwise_build(graph, op, name, input_id, output_id, func):
    name = standard_op_name(op, name, graph, [input_id], [output_id])
    return ElementwiseInstance(
        name=name,
        input_id=input_id,
        output_id=output_id,
        forward_id=graph.add_pass(ElementwiseForward(input_id, output_id, func, op.type_name + "Forward")),
        backward_id=graph.add_pass(ElementwiseBackward(input_id, output_id, func, op.type_name + "Backward")),
    )


class Tanh(Op):
    type_name = "Tanh"

    def __init__(self, input_id, output_id):
        super().__init__()
        self.input_id = input_id
        self.output_id = output_id

    def build(self, graph, op_id):
        return elementwise_build(graph, self, self._name, self.input_id, self.output_id, TanhFunc())


class Sigmoid(Op):
    type_name = "Sigmoid"

    def __init__(self, input_id, output_id):
        super().__init__()
        self.input_id = input_id
        self.output_id = output_id

    def build(self, graph, op_id):
        return elementwise_build(graph, self, self._name, self.input_id, self.output_id, SigmoidFunc())
