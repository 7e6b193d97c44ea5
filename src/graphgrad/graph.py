import logging

from .errors import GraphError
from .ids import NodeID, OpID, PassID, NodeTag
from .propagation import propagate_shapes
from .shape import NodeShape

logger = logging.getLogger(__name__)


def _tag_set(tags):
    if isinstance(tags, (str, NodeTag)):
        return frozenset([tags])
    return frozenset(tags)


class GraphDef:
    """
    Mutable builder for a computation graph.

    Owns the node, op and pass tables. All tables are append-only arenas
    indexed by NodeID/OpID/PassID; records refer to each other only through
    those ids.
    """
    __slots__ = ('_node_names', '_node_shapes', '_node_tags', '_name_to_node',
                 '_ops', '_op_tags', '_op_names', '_passes', '_pass_owner',
                 '_building', '_static_shapes', '_op_dependents', '__weakref__')

    def __init__(self):
        self._node_names = []
        self._node_shapes = []
        self._node_tags = []
        self._name_to_node = {}
        self._ops = []
        self._op_tags = []
        self._op_names = set()
        self._passes = []
        self._pass_owner = []
        self._building = []
        self._static_shapes = None
        self._op_dependents = None

    # --- Construction ---

    def new_node(self, shape, name, tags=()):
        if name in self._name_to_node:
            raise GraphError(f"A node named '{name}' already exists in the graph.")
        if not isinstance(shape, NodeShape):
            shape = NodeShape(shape)
        node_id = NodeID(len(self._node_names))
        self._node_names.append(name)
        self._node_shapes.append(shape)
        self._node_tags.append(_tag_set(tags))
        self._name_to_node[name] = node_id
        self._invalidate()
        logger.debug("Added node %s '%s' with shape %s", node_id, name, shape)
        return node_id

    def new_op(self, op, tags=()):
        """
        Build op into the graph and return its OpID.

        The op's shape rule is checked against the graph straight away. If the
        build or the check fails, every node, op and pass the build appended is
        removed again before the error is re-raised.
        """
        checkpoint = (len(self._node_names), len(self._ops), len(self._passes))
        op_id = OpID(len(self._ops))
        self._ops.append(None)
        self._op_tags.append(_tag_set(tags))
        self._building.append(op_id)
        try:
            instance = op.build(self, op_id)
            if instance.name in self._op_names:
                raise GraphError(f"An op named '{instance.name}' already exists in the graph.")
            self._ops[op_id.index] = instance
            self._op_names.add(instance.name)
            for pass_id in instance.inner_passes():
                self._pass_owner[pass_id.index] = op_id
            self._invalidate()
            self.static_shapes()
        except Exception:
            self._rollback(checkpoint)
            raise
        finally:
            self._building.pop()
        logger.debug("Added op %s '%s' with passes %s", op_id, instance.name, instance.inner_passes())
        return op_id

    def add_pass(self, pass_):
        """Register a pass. Only meant to be called from Op.build()."""
        pass_id = PassID(len(self._passes))
        self._passes.append(pass_)
        self._pass_owner.append(self._building[-1] if self._building else None)
        self._invalidate()
        return pass_id

    def _rollback(self, checkpoint):
        n_nodes, n_ops, n_passes = checkpoint
        for name in self._node_names[n_nodes:]:
            del self._name_to_node[name]
        del self._node_names[n_nodes:]
        del self._node_shapes[n_nodes:]
        del self._node_tags[n_nodes:]
        for instance in self._ops[n_ops:]:
            if instance is not None:
                self._op_names.discard(instance.name)
        del self._ops[n_ops:]
        del self._op_tags[n_ops:]
        del self._passes[n_passes:]
        del self._pass_owner[n_passes:]
        self._invalidate()
        logger.debug("Rolled back graph to %d nodes, %d ops, %d passes", n_nodes, n_ops, n_passes)

    def _invalidate(self):
        self._static_shapes = None
        self._op_dependents = None

    # --- Lookups ---

    def node_ids(self):
        return [NodeID(i) for i in range(len(self._node_names))]

    def op_ids(self):
        """Ids of every fully built op."""
        return [OpID(i) for i, instance in enumerate(self._ops) if instance is not None]

    def pass_ids(self):
        return [PassID(i) for i in range(len(self._passes))]

    def node_id(self, name):
        try:
            return self._name_to_node[name]
        except KeyError:
            raise GraphError(f"No node named '{name}' in the graph.") from None

    def node_name(self, node_id):
        return self._node_names[self._check_node(node_id)]

    def node_shape(self, node_id):
        return self._node_shapes[self._check_node(node_id)]

    def node_tags(self, node_id):
        return self._node_tags[self._check_node(node_id)]

    def is_parameter(self, node_id):
        return NodeTag.Parameter in self.node_tags(node_id)

    def node_ids_with_tag(self, tag):
        return [node_id for node_id in self.node_ids() if tag in self._node_tags[node_id.index]]

    def op_ids_with_tag(self, tag):
        return [op_id for op_id in self.op_ids() if tag in self._op_tags[op_id.index]]

    def op_instance(self, op_id):
        instance = self._ops[op_id.index] if 0 <= op_id.index < len(self._ops) else None
        if instance is None:
            raise GraphError(f"{op_id} is not a built op of this graph.")
        return instance

    def op_name(self, op_id):
        return self.op_instance(op_id).name

    def op_tags(self, op_id):
        return self._op_tags[op_id.index]

    def has_op_name(self, name):
        return name in self._op_names

    def pass_(self, pass_id):
        if not 0 <= pass_id.index < len(self._passes):
            raise GraphError(f"{pass_id} is not a pass of this graph.")
        return self._passes[pass_id.index]

    def pass_owner(self, pass_id):
        return self._pass_owner[pass_id.index]

    def pass_name(self, pass_id):
        owner = self._pass_owner[pass_id.index]
        pass_ = self.pass_(pass_id)
        if owner is not None and self._ops[owner.index] is not None:
            return f"{self._ops[owner.index].name}/{pass_.type_name}"
        return f"{pass_.type_name}#{pass_id.index}"

    def _check_node(self, node_id):
        if not isinstance(node_id, NodeID) or not 0 <= node_id.index < len(self._node_names):
            raise GraphError(f"{node_id!r} is not a node of this graph.")
        return node_id.index

    def op_dependents(self):
        """Maps each NodeID to the ops whose shape rule reads or writes it."""
        if self._op_dependents is None:
            dependents = {}
            for op_id in self.op_ids():
                inputs, outputs = self._ops[op_id.index].dependencies()
                for node_id in list(inputs) + list(outputs):
                    ops = dependents.setdefault(node_id, [])
                    if op_id not in ops:
                        ops.append(op_id)
            self._op_dependents = dependents
        return self._op_dependents

    # --- Shapes and execution ---

    def propagate_shapes(self, input_shapes=None):
        return propagate_shapes(self, input_shapes)

    def static_shapes(self):
        """Shapes implied by the declarations and op rules alone; may be partial."""
        if self._static_shapes is None:
            self._static_shapes = propagate_shapes(self)
        return self._static_shapes

    def subgraph(self, inputs, outputs):
        from .subgraph import Subgraph
        return Subgraph(self, inputs, outputs)

    def __repr__(self):
        return f"GraphDef(nodes={len(self._node_names)}, ops={len(self.op_ids())}, passes={len(self._passes)})"
