from abc import ABC, abstractmethod

from ..errors import PassError


class Op(ABC):
    """
    Build-time description of an operation, e.g. Mul(input1, input2, output).

    build() registers the op's passes with the graph and returns the
    OpInstance that the graph keeps as the permanent record of the op.
    """
    type_name = "Op"

    def __init__(self):
        self._name = None

    def name(self, name):
        """Set an explicit op name. Returns self so it can be chained."""
        self._name = name
        return self

    @abstractmethod
    def build(self, graph, op_id):
        raise NotImplementedError


class OpInstance(ABC):
    """
    The graph's immutable record of a built op. Implementations expose a
    `name` attribute and the hooks below.
    """

    @abstractmethod
    def dependencies(self):
        """Returns (input NodeIDs, output NodeIDs)."""
        raise NotImplementedError

    @abstractmethod
    def inner_passes(self):
        raise NotImplementedError

    def inner_ops(self):
        return []

    def inner_nodes(self):
        return []

    @abstractmethod
    def propagate_shape_constraints(self, shapes):
        """Read current shapes and merge the constraints this op implies."""
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"


class Pass(ABC):
    """
    Atomic unit of computation.

    A pass may only read the DataIDs it declares as reads and only write the
    DataIDs it declares as writes; Storage enforces this while the pass runs.
    """
    type_name = "Pass"

    @abstractmethod
    def dependencies(self):
        """Returns (read DataIDs, written DataIDs)."""
        raise NotImplementedError

    @abstractmethod
    def run(self, storage):
        raise NotImplementedError

    def ensure(self, condition, message):
        if not condition:
            raise PassError(self.type_name, message)

    def __repr__(self):
        return f"{self.type_name}()"


def standard_op_name(op, name, graph, inputs, outputs):
    """Explicit name if given, otherwise a unique name built from the node names."""
    if name is not None:
        return name
    in_names = ",".join(graph.node_name(n) for n in inputs)
    out_names = ",".join(graph.node_name(n) for n in outputs)
    base = f"{op.type_name}({in_names}=>{out_names})"
    candidate = base
    suffix = 1
    while graph.has_op_name(candidate):
        candidate = f"{base}_{suffix}"
        suffix += 1
    return candidate
