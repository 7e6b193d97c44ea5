import logging
import rustworkx as rx

from .errors import CyclicDependency, MissingDependency
from .ids import PassID

logger = logging.getLogger(__name__)


def _sort_key(payload):
    # rustworkx wants a string key for lexicographical ordering
    if isinstance(payload, PassID):
        return f"p{payload.index:010d}"
    node_index, kind = payload.sort_key()
    return f"d{node_index:010d}.{kind}"


class Dependencies:
    """
    Bipartite producer/consumer graph between DataIDs and PassIDs.

    Edges run DataID -> PassID for every read a pass declares and
    PassID -> DataID for every write, so a path between two passes means
    the first one produces something the second one consumes.
    """
    __slots__ = ('graph', '_graph_def', '_data_index', '_pass_index')

    def __init__(self, graph_def):
        self._graph_def = graph_def
        self.graph = rx.PyDiGraph()
        self._data_index = {}
        self._pass_index = {}

        for node_id in graph_def.node_ids():
            for data_id in (node_id.value_id(), node_id.gradient_id()):
                self._data_index[data_id] = self.graph.add_node(data_id)

        for pass_id in graph_def.pass_ids():
            pass_index = self.graph.add_node(pass_id)
            self._pass_index[pass_id] = pass_index
            reads, writes = graph_def.pass_(pass_id).dependencies()
            for data_id in dict.fromkeys(reads):
                self.graph.add_edge(self._index_of(data_id), pass_index, None)
            for data_id in dict.fromkeys(writes):
                self.graph.add_edge(pass_index, self._index_of(data_id), None)

    def _index_of(self, data_id):
        try:
            return self._data_index[data_id]
        except KeyError:
            raise MissingDependency(f"{data_id!r} does not belong to this graph.", data_id) from None

    def _sorted(self, indices):
        return sorted((self.graph[i] for i in indices), key=_sort_key)

    def data_inputs(self, data_id):
        """Passes that write data_id."""
        return self._sorted(self.graph.predecessor_indices(self._index_of(data_id)))

    def data_outputs(self, data_id):
        """Passes that read data_id."""
        return self._sorted(self.graph.successor_indices(self._index_of(data_id)))

    def pass_inputs(self, pass_id):
        return self._sorted(self.graph.predecessor_indices(self._pass_index[pass_id]))

    def pass_outputs(self, pass_id):
        return self._sorted(self.graph.successor_indices(self._pass_index[pass_id]))

    def leaf_node_ids(self):
        """Nodes whose value no pass produces, i.e. data that must be supplied."""
        return [node_id for node_id in self._graph_def.node_ids()
                if not self.data_inputs(node_id.value_id())]

    def has_cycle(self):
        return not rx.is_directed_acyclic_graph(self.graph)

    def plan(self, inputs, outputs):
        """
        Minimal ordered pass list producing `outputs` from `inputs`.

        Walks producer edges back from the outputs; supplied inputs end the
        walk. Every producer of a needed DataID is scheduled, since each one
        accumulates part of it. Returns (ordered PassIDs, required DataIDs).
        """
        inputs = set(inputs)
        for data_id in inputs:
            self._index_of(data_id)

        required = set()
        passes = set()
        stack = [data_id for data_id in outputs if data_id not in inputs]
        while stack:
            data_id = stack.pop()
            if data_id in required:
                continue
            producers = self.data_inputs(data_id)
            if not producers:
                raise MissingDependency(
                    f"{self._describe(data_id)} is not produced by any pass and was not supplied as an input.",
                    data_id)
            required.add(data_id)
            for pass_id in producers:
                if pass_id in passes:
                    continue
                passes.add(pass_id)
                stack.extend(d for d in self.pass_inputs(pass_id) if d not in inputs and d not in required)

        order = self.execution_order(passes, required)
        logger.debug("Planned %d passes for %d outputs: %s", len(order), len(outputs),
                     [self._graph_def.pass_name(p) for p in order])
        return order, required

    def execution_order(self, passes, data_ids=()):
        indices = [self._pass_index[p] for p in passes]
        indices.extend(self._data_index[d] for d in data_ids)
        sub_graph = self.graph.subgraph(indices)
        if not rx.is_directed_acyclic_graph(sub_graph):
            raise CyclicDependency("The pass dependency graph contains a cycle.")
        ordered = rx.lexicographical_topological_sort(sub_graph, key=_sort_key)
        return [payload for payload in ordered if isinstance(payload, PassID)]

    def _describe(self, data_id):
        kind = "gradient" if data_id.is_gradient else "value"
        return f"The {kind} of node '{self._graph_def.node_name(data_id.node)}'"

    def __repr__(self):
        return f"Dependencies(nodes={self.graph.num_nodes()}, edges={self.graph.num_edges()})"
