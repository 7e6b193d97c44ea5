from .errors import GraphError, ShapeConflict, MissingDependency, CyclicDependency, PassError, NumericCheckFailure
from .ids import NodeID, OpID, PassID, DataID, DataKind, NodeTag
from .shape import NodeDim, NodeShape, shape
from .graph import GraphDef

__all__ = [
    "GraphDef",
    "NodeID",
    "OpID",
    "PassID",
    "DataID",
    "DataKind",
    "NodeTag",
    "NodeDim",
    "NodeShape",
    "shape",
    "GraphError",
    "ShapeConflict",
    "MissingDependency",
    "CyclicDependency",
    "PassError",
    "NumericCheckFailure",
    "config",
    "ops",
    "dependencies",
    "storage",
    "subgraph",
    "propagation",
    "accumulate",
    "fill",
    "numeric_check",
    "__version__",
]

_LAZY_MODULES = {
    "config", "ops", "dependencies", "storage", "subgraph",
    "propagation", "accumulate", "fill", "numeric_check",
}


def __getattr__(name):
    if name in _LAZY_MODULES:
        import importlib
        mod = importlib.import_module(f".{name}", __name__)
        globals()[name] = mod  # cache so future lookups are fast
        return mod
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__():
    return sorted(list(globals().keys()) + __all__)


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from . import (
        config,
        ops,
        dependencies,
        storage,
        subgraph,
        propagation,
        accumulate,
        fill,
        numeric_check,
    )
__version__ = "0.1.0"
