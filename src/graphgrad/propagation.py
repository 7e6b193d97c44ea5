import logging
from collections import deque

from .errors import ShapeConflict
from .shape import NodeShape

logger = logging.getLogger(__name__)


class GraphShapes:
    """
    Working copy of node shapes used while shape constraints are propagated.

    Ops read and narrow shapes through merge_with/collapse_to_minimum; every
    node whose shape actually changed is recorded so the propagation loop
    only revisits ops that can observe the change.
    """
    __slots__ = ('_graph', '_shapes', '_changed', 'active_op')

    def __init__(self, graph):
        self._graph = graph
        self._shapes = [graph.node_shape(node_id) for node_id in graph.node_ids()]
        self._changed = set()
        self.active_op = None

    def get_shape(self, node_id):
        return self._shapes[node_id.index]

    def merge_with(self, node_id, shape):
        if not isinstance(shape, NodeShape):
            shape = NodeShape(shape)
        current = self._shapes[node_id.index]
        try:
            merged = current.merge(shape)
        except ShapeConflict as exc:
            raise ShapeConflict(str(exc), node=self._graph.node_name(node_id), op=self.active_op) from exc
        self._set(node_id, merged)

    def collapse_to_minimum(self, node_id):
        current = self._shapes[node_id.index]
        try:
            collapsed = current.collapse_ranges_to_minimum()
        except ShapeConflict as exc:
            raise ShapeConflict(
                f"{exc}. Provide dimensions or stronger constraints.",
                node=self._graph.node_name(node_id), op=self.active_op) from exc
        self._set(node_id, collapsed)

    def _set(self, node_id, shape):
        if shape != self._shapes[node_id.index]:
            self._shapes[node_id.index] = shape
            self._changed.add(node_id)

    def take_changed(self):
        changed = self._changed
        self._changed = set()
        return changed

    def resolve(self, node_ids=None):
        """Collapse nodes to their minimum and return concrete shapes keyed by NodeID."""
        resolved = {}
        for node_id in (self._graph.node_ids() if node_ids is None else sorted(node_ids)):
            try:
                resolved[node_id] = self._shapes[node_id.index].collapse_ranges_to_minimum().to_data_shape()
            except ShapeConflict as exc:
                raise ShapeConflict(
                    f"shape could not be inferred ({exc})", node=self._graph.node_name(node_id)) from exc
        return resolved

    def __repr__(self):
        return f"GraphShapes({self._shapes})"


def propagate_shapes(graph, input_shapes=None, max_visits=None):
    """
    Run every op's shape rule until no node shape changes.

    Starts from the declared node shapes narrowed by input_shapes. Ops are
    visited from a worklist; a changed node requeues the ops attached to it.
    """
    shapes = GraphShapes(graph)
    for node_id, node_shape in (input_shapes or {}).items():
        shapes.merge_with(node_id, node_shape)
    shapes.take_changed()

    op_ids = graph.op_ids()
    dependents = graph.op_dependents()
    if max_visits is None:
        max_visits = max(1000, 100 * len(op_ids))

    queue = deque(op_ids)
    queued = set(op_ids)
    visits = 0
    while queue:
        op_id = queue.popleft()
        queued.discard(op_id)
        visits += 1
        shapes.active_op = graph.op_name(op_id)
        if visits > max_visits:
            raise ShapeConflict(f"shape propagation did not converge after {max_visits} op visits",
                                op=shapes.active_op)
        graph.op_instance(op_id).propagate_shape_constraints(shapes)
        for node_id in sorted(shapes.take_changed()):
            for dependent in dependents.get(node_id, ()):
                if dependent not in queued:
                    queue.append(dependent)
                    queued.add(dependent)
    shapes.active_op = None

    logger.debug("Shape propagation converged after %d op visits over %d ops", visits, len(op_ids))
    return shapes
