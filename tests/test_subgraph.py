from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
import torch
import torch.nn.functional as F

import graphgrad.subgraph
from graphgrad import GraphDef, MissingDependency, PassError, ShapeConflict, shape
from graphgrad.ops import Op, OpInstance, Pass, Tanh, Mul, Mse
from graphgrad.storage import Storage


class ReadOther(Pass):
    """Reads a DataID it never declared."""
    type_name = "ReadOther"

    def __init__(self, declared, other, output):
        self.declared = declared
        self.other = other
        self.output = output

    def dependencies(self):
        return [self.declared], [self.output]

    def run(self, storage):
        storage.get_mut(self.output).add_(storage.get(self.other))


class Explode(Pass):
    type_name = "Explode"

    def __init__(self, input, output):
        self.input = input
        self.output = output

    def dependencies(self):
        return [self.input], [self.output]

    def run(self, storage):
        # mismatched matmul raises a RuntimeError from torch
        storage.get_mut(self.output).add_(storage.get(self.input) @ torch.ones(7, 3))


class SinglePass(Op):
    type_name = "SinglePass"

    def __init__(self, make_pass, input_id, output_id):
        super().__init__()
        self.make_pass = make_pass
        self.input_id = input_id
        self.output_id = output_id

    def build(self, graph, op_id):
        pass_id = graph.add_pass(self.make_pass(self.input_id, self.output_id))
        return SinglePassInstance(f"single{op_id.index}", self.input_id, self.output_id, pass_id)


class SinglePassInstance(OpInstance):
    def __init__(self, name, input_id, output_id, pass_id):
        self.name = name
        self.input_id = input_id
        self.output_id = output_id
        self.pass_id = pass_id

    def dependencies(self):
        return [self.input_id], [self.output_id]

    def inner_passes(self):
        return [self.pass_id]

    def propagate_shape_constraints(self, shapes):
        shapes.merge_with(self.output_id, shapes.get_shape(self.input_id))
        shapes.merge_with(self.input_id, shapes.get_shape(self.output_id))


class RecordingStorage(Storage):
    instances = []

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        RecordingStorage.instances.append(self)


@pytest.fixture
def recording(monkeypatch):
    RecordingStorage.instances = []
    monkeypatch.setattr(graphgrad.subgraph, "Storage", RecordingStorage)
    return RecordingStorage.instances


def tanh_graph(x_shape=(None, 6)):
    g = GraphDef()
    x = g.new_node(shape(*x_shape), "x")
    y = g.new_node(shape(*x_shape), "y")
    g.new_op(Tanh(x, y))
    return g, x, y


def test_forward_matches_torch():
    g, x, y = tanh_graph()
    data = torch.randn(4, 6)
    result = g.subgraph([x.value_id()], [y.value_id()]).execute({x.value_id(): data})
    np.testing.assert_allclose(result[y.value_id()].numpy(), torch.tanh(data).numpy(), rtol=1e-6, atol=1e-6)
    assert result.loss == 0.0
    assert list(result) == [y.value_id()]


def test_repeated_execution_is_identical():
    g, x, y = tanh_graph()
    data = torch.randn(3, 6)
    original = data.clone()
    subgraph = g.subgraph([x.value_id(), y.gradient_id()], [x.gradient_id(), y.value_id()])
    grad = torch.randn(3, 6)
    first = subgraph.execute({x.value_id(): data, y.gradient_id(): grad}).into_map()
    second = subgraph.execute({x.value_id(): data, y.gradient_id(): grad}).into_map()
    for data_id in first:
        assert torch.equal(first[data_id], second[data_id])
    assert torch.equal(data, original)


def test_requested_input_is_returned_as_a_copy():
    g, x, y = tanh_graph()
    data = torch.randn(2, 6)
    result = g.subgraph([x.value_id()], [x.value_id(), y.value_id()]).execute([data])
    result[x.value_id()].zero_()
    assert not torch.equal(data, torch.zeros(2, 6))


def test_sequence_and_mapping_inputs_agree():
    g, x, y = tanh_graph()
    subgraph = g.subgraph([x.value_id()], [y.value_id()])
    data = torch.randn(5, 6)
    by_position = subgraph.execute([data])
    by_id = subgraph.execute({x.value_id(): data})
    assert torch.equal(by_position[y.value_id()], by_id[y.value_id()])


def test_missing_input_buffer():
    g, x, y = tanh_graph()
    subgraph = g.subgraph([x.value_id(), y.gradient_id()], [x.gradient_id()])
    with pytest.raises(MissingDependency) as exc_info:
        subgraph.execute({x.value_id(): torch.randn(2, 6)})
    assert exc_info.value.data_id == y.gradient_id()


def test_input_shape_conflict():
    g, x, y = tanh_graph()
    subgraph = g.subgraph([x.value_id()], [y.value_id()])
    with pytest.raises(ShapeConflict) as exc_info:
        subgraph.execute([torch.randn(2, 5)])
    assert exc_info.value.node == "x"


def test_unknown_batch_dimension_is_cached_per_shape():
    g, x, y = tanh_graph()
    subgraph = g.subgraph([x.value_id()], [y.value_id()])
    assert subgraph.execute([torch.randn(2, 6)])[y.value_id()].shape == (2, 6)
    assert subgraph.execute([torch.randn(9, 6)])[y.value_id()].shape == (9, 6)
    subgraph.execute([torch.randn(2, 6)])
    assert len(subgraph._shape_cache) == 2


def test_unrequested_gradient_is_never_allocated(recording):
    g = GraphDef()
    a = g.new_node(shape(4, 3), "a")
    b = g.new_node(shape(1, 3), "b")
    c = g.new_node(shape(4, 3), "c")
    g.new_op(Mul(a, b, c))
    subgraph = g.subgraph([a.value_id(), b.value_id(), c.gradient_id()], [a.gradient_id()])
    assert subgraph.required == {a.gradient_id()}

    a_data, b_data, c_grad = torch.randn(4, 3), torch.randn(1, 3), torch.randn(4, 3)
    result = subgraph.execute([a_data, b_data, c_grad])
    np.testing.assert_allclose(result[a.gradient_id()].numpy(), (b_data * c_grad).numpy(), rtol=1e-6)
    assert recording[0].allocated() == {a.gradient_id()}
    assert recording[0].is_input(c.gradient_id())
    assert not recording[0].is_input(a.gradient_id())


def test_undeclared_read_fails():
    g = GraphDef()
    a = g.new_node(shape(3), "a")
    b = g.new_node(shape(3), "b")
    g.new_op(SinglePass(lambda i, o: ReadOther(i.value_id(), o.gradient_id(), o.value_id()), a, b))
    with pytest.raises(PassError) as exc_info:
        g.subgraph([a.value_id()], [b.value_id()]).execute([torch.ones(3)])
    assert exc_info.value.pass_name == "single0/ReadOther"
    assert "undeclared" in str(exc_info.value)


def test_runtime_error_is_wrapped():
    g = GraphDef()
    a = g.new_node(shape(2, 3), "a")
    b = g.new_node(shape(2, 3), "b")
    g.new_op(SinglePass(lambda i, o: Explode(i.value_id(), o.value_id()), a, b))
    with pytest.raises(PassError) as exc_info:
        g.subgraph([a.value_id()], [b.value_id()]).execute([torch.ones(2, 3)])
    assert exc_info.value.pass_name == "single0/Explode"
    assert isinstance(exc_info.value.__cause__, RuntimeError)


def test_gradients_accumulate_across_consumers():
    g = GraphDef()
    x = g.new_node(shape(5), "x")
    h1 = g.new_node(shape(5), "h1")
    h2 = g.new_node(shape(5), "h2")
    out = g.new_node(shape(5), "out")
    g.new_op(Tanh(x, h1))
    g.new_op(Tanh(x, h2))
    g.new_op(Tanh(h1, out))
    g.new_op(Tanh(h2, out))

    data = torch.randn(5, dtype=torch.float64)
    out_grad = torch.randn(5, dtype=torch.float64)
    result = g.subgraph([x.value_id(), out.gradient_id()], [out.value_id(), x.gradient_id()]).execute(
        {x.value_id(): data, out.gradient_id(): out_grad})

    expected_x = data.clone().requires_grad_(True)
    expected_out = 2 * torch.tanh(torch.tanh(expected_x))
    expected_out.backward(out_grad)
    np.testing.assert_allclose(result[out.value_id()].numpy(), expected_out.detach().numpy(), rtol=1e-12)
    np.testing.assert_allclose(result[x.gradient_id()].numpy(), expected_x.grad.numpy(), rtol=1e-12)


def test_joint_mse_loss_matches_torch():
    g = GraphDef()
    x = g.new_node(shape(None, 4), "x")
    target = g.new_node(shape(None, 4), "target")
    g.new_op(Mse(x, target, multiplier=3.0))
    data, labels = torch.randn(6, 4, dtype=torch.float64), torch.randn(6, 4, dtype=torch.float64)
    result = g.subgraph([x.value_id(), target.value_id()], [x.gradient_id()]).execute([data, labels])

    expected_x = data.clone().requires_grad_(True)
    expected_loss = 3.0 * F.mse_loss(expected_x, labels)
    expected_loss.backward()
    assert result.loss == pytest.approx(expected_loss.item(), rel=1e-12)
    np.testing.assert_allclose(result[x.gradient_id()].numpy(), expected_x.grad.numpy(), rtol=1e-12)


def test_concurrent_executions_share_nothing():
    g, x, y = tanh_graph()
    subgraph = g.subgraph([x.value_id(), y.gradient_id()], [x.gradient_id()])
    batches = [(torch.randn(3, 6), torch.randn(3, 6)) for _ in range(16)]
    expected = [subgraph.execute(list(batch))[x.gradient_id()] for batch in batches]
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda batch: subgraph.execute(list(batch)), batches))
    for result, reference in zip(results, expected):
        assert torch.equal(result[x.gradient_id()], reference)


class Guard(Pass):
    type_name = "Guard"

    def __init__(self, input, output):
        self.input = input
        self.output = output

    def dependencies(self):
        return [self.input], [self.output]

    def run(self, storage):
        self.ensure(storage.get(self.input).sum() > 0, "input must have a positive sum")
        storage.get_mut(self.output).add_(storage.get(self.input))


def test_failed_check_reports_the_full_pass_name():
    g = GraphDef()
    a = g.new_node(shape(3), "a")
    b = g.new_node(shape(3), "b")
    g.new_op(SinglePass(lambda i, o: Guard(i.value_id(), o.value_id()), a, b))
    subgraph = g.subgraph([a.value_id()], [b.value_id()])
    assert torch.equal(subgraph.execute([torch.ones(3)])[b.value_id()], torch.ones(3))
    with pytest.raises(PassError) as exc_info:
        subgraph.execute([-torch.ones(3)])
    assert exc_info.value.pass_name == "single0/Guard"
    assert str(exc_info.value) == "Pass 'single0/Guard': input must have a positive sum"


class PeekGradient(Pass):
    """Declares the output gradient as a write but reads it although nothing requires it."""
    type_name = "PeekGradient"

    def __init__(self, input, output):
        self.input = input
        self.output = output

    def dependencies(self):
        return [self.input.value_id()], [self.output.value_id(), self.output.gradient_id()]

    def run(self, storage):
        storage.get(self.output.gradient_id())


def test_missing_data_inside_a_pass_names_the_pass():
    g = GraphDef()
    a = g.new_node(shape(3), "a")
    b = g.new_node(shape(3), "b")
    g.new_op(SinglePass(PeekGradient, a, b))
    with pytest.raises(MissingDependency) as exc_info:
        g.subgraph([a.value_id()], [b.value_id()]).execute([torch.ones(3)])
    assert exc_info.value.data_id == b.gradient_id()
    assert str(exc_info.value).startswith("Pass 'single0/PeekGradient': ")


def test_buffer_dtype_does_not_depend_on_input_order():
    g, x, y = tanh_graph()
    data = torch.randn(3, 6, dtype=torch.float64)
    grad = torch.randn(3, 6, dtype=torch.float32)
    value_first = g.subgraph([x.value_id(), y.gradient_id()], [x.gradient_id()])
    grad_first = g.subgraph([y.gradient_id(), x.value_id()], [x.gradient_id()])

    a = value_first.execute({x.value_id(): data, y.gradient_id(): grad})[x.gradient_id()]
    b = grad_first.execute({x.value_id(): data, y.gradient_id(): grad})[x.gradient_id()]
    assert a.dtype == b.dtype == torch.float64
    assert torch.equal(a, b)


def test_integer_input_does_not_decide_buffer_dtype():
    g = GraphDef()
    labels = g.new_node(shape(4, 3), "labels")
    x = g.new_node(shape(4, 3), "x")
    g.new_op(Mse(x, labels))
    subgraph = g.subgraph([labels.value_id(), x.value_id()], [x.gradient_id()])

    targets = torch.randint(0, 3, (4, 3))
    data = torch.randn(4, 3)
    result = subgraph.execute([targets, data])
    assert result[x.gradient_id()].dtype == torch.float32
    np.testing.assert_allclose(result[x.gradient_id()].numpy(),
                               (2.0 * (data - targets) / data.numel()).numpy(), rtol=1e-6)
