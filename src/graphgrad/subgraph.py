import logging
from collections.abc import Mapping

import torch

from .config import dtype as default_dtype
from .dependencies import Dependencies
from .errors import GraphError, MissingDependency, PassError, ShapeConflict
from .shape import NodeShape
from .storage import Storage

logger = logging.getLogger(__name__)


class ExecutionResult(Mapping):
    """Read-only mapping DataID -> tensor for the requested outputs, plus the accumulated loss."""
    __slots__ = ('_outputs', 'loss')

    def __init__(self, outputs, loss):
        self._outputs = outputs
        self.loss = loss

    def __getitem__(self, data_id):
        return self._outputs[data_id]

    def __iter__(self):
        return iter(self._outputs)

    def __len__(self):
        return len(self._outputs)

    def into_map(self):
        return dict(self._outputs)

    def __repr__(self):
        return f"ExecutionResult(outputs={list(self._outputs)}, loss={self.loss})"


class Subgraph:
    """
    The part of a graph needed to compute `outputs` from `inputs`.

    The pass order and the required data set are fixed at construction;
    every execute() call gets fresh Storage, so calls never observe each
    other's buffers.
    """
    __slots__ = ('graph', 'inputs', 'outputs', 'dependencies', 'passes', 'required', '_shape_cache')

    def __init__(self, graph, inputs, outputs):
        self.graph = graph
        self.inputs = list(dict.fromkeys(inputs))
        self.outputs = list(dict.fromkeys(outputs))
        self.dependencies = Dependencies(graph)
        self.passes, self.required = self.dependencies.plan(self.inputs, self.outputs)
        self._shape_cache = {}

    @property
    def pass_names(self):
        return [self.graph.pass_name(pass_id) for pass_id in self.passes]

    def execute(self, data):
        """
        Run the planned passes. `data` is a mapping DataID -> tensor covering
        every subgraph input, or a sequence aligned with `self.inputs`.
        """
        input_data = self._collect_inputs(data)
        shapes = self._resolve_shapes(input_data)
        storage = Storage(shapes, input_data, self.required)

        with torch.no_grad():
            for pass_id in self.passes:
                pass_ = self.graph.pass_(pass_id)
                name = self.graph.pass_name(pass_id)
                reads, writes = pass_.dependencies()
                with storage.pass_scope(name, reads, writes):
                    try:
                        pass_.run(storage)
                    except PassError as exc:
                        if exc.pass_name == name:
                            raise
                        raise PassError(name, exc.message) from exc
                    except MissingDependency as exc:
                        raise MissingDependency(f"Pass '{name}': {exc}", exc.data_id) from exc
                    except GraphError:
                        raise
                    except (RuntimeError, ValueError, IndexError) as exc:
                        raise PassError(name, str(exc)) from exc

            outputs = {data_id: storage.take(data_id) for data_id in self.outputs}
        return ExecutionResult(outputs, storage.loss)

    def _collect_inputs(self, data):
        if isinstance(data, Mapping):
            unexpected = [d for d in data if d not in self.inputs]
            if unexpected:
                raise GraphError(f"Data supplied for {unexpected} which are not inputs of this subgraph.")
            missing = [d for d in self.inputs if d not in data]
            if missing:
                raise MissingDependency(f"No buffer supplied for subgraph input {missing[0]!r}.", missing[0])
            pairs = [(d, data[d]) for d in self.inputs]
        else:
            data = list(data)
            if len(data) != len(self.inputs):
                raise GraphError(f"Expected {len(self.inputs)} input buffers, got {len(data)}.")
            pairs = zip(self.inputs, data)

        collected = {}
        for data_id, buffer in pairs:
            if not isinstance(buffer, torch.Tensor):
                buffer = torch.as_tensor(buffer, dtype=default_dtype)
            collected[data_id] = buffer
        return collected

    def _resolve_shapes(self, input_data):
        signature = tuple((data_id.sort_key(), tuple(buffer.shape)) for data_id, buffer in input_data.items())
        shapes = self._shape_cache.get(signature)
        if shapes is None:
            input_shapes = {}
            for data_id, buffer in input_data.items():
                node_id = data_id.node
                buffer_shape = NodeShape(buffer.shape)
                try:
                    input_shapes[node_id] = input_shapes.get(node_id, buffer_shape).merge(buffer_shape)
                except ShapeConflict as exc:
                    raise ShapeConflict(f"value and gradient buffers disagree: {exc}",
                                        node=self.graph.node_name(node_id)) from exc
            nodes = {d.node for d in self.required} | {d.node for d in input_data}
            shapes = self.graph.propagate_shapes(input_shapes).resolve(nodes)
            self._shape_cache[signature] = shapes
        return shapes

    def __repr__(self):
        return f"Subgraph(inputs={self.inputs}, outputs={self.outputs}, passes={len(self.passes)})"
