from dataclasses import dataclass
from enum import Enum


class DataKind(Enum):
    VALUE = 0
    GRADIENT = 1


class NodeTag(Enum):
    Parameter = "parameter"
    Input = "input"


@dataclass(frozen=True, order=True)
class NodeID:
    """Index of a node in the owning GraphDef's node table."""
    index: int

    def value_id(self):
        return DataID(self, DataKind.VALUE)

    def gradient_id(self):
        return DataID(self, DataKind.GRADIENT)

    def __repr__(self):
        return f"NodeID({self.index})"


@dataclass(frozen=True, order=True)
class OpID:
    index: int

    def __repr__(self):
        return f"OpID({self.index})"


@dataclass(frozen=True, order=True)
class PassID:
    index: int

    def __repr__(self):
        return f"PassID({self.index})"


@dataclass(frozen=True)
class DataID:
    """Either the value buffer or the gradient buffer of a node."""
    node: NodeID
    kind: DataKind

    @property
    def is_gradient(self):
        return self.kind is DataKind.GRADIENT

    def sort_key(self):
        return (self.node.index, self.kind.value)

    def __lt__(self, other):
        if not isinstance(other, DataID):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __repr__(self):
        suffix = "grad" if self.is_gradient else "value"
        return f"DataID({self.node.index}.{suffix})"
