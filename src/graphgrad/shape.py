import math
from .errors import ShapeConflict


class NodeDim:
    """
    Constraint on a single dimension of a node.

    A dimension is Known (one extent), Unknown (any extent) or an Interval
    with an inclusive lower bound and an optional inclusive upper bound.
    Intervals whose bounds coincide are stored as Known.
    """
    __slots__ = ('lower', 'upper', '_unknown')

    def __init__(self, lower=None, upper=None, _unknown=False):
        if lower is None and not _unknown:
            raise ValueError("A bounded dimension needs a lower bound; use NodeDim.unknown() for any extent")
        self.lower = lower
        self.upper = upper
        self._unknown = _unknown

    @classmethod
    def known(cls, extent):
        if extent < 0:
            raise ValueError(f"Dimension extent must be non-negative, got {extent}")
        return cls(extent, extent)

    @classmethod
    def unknown(cls):
        return cls(_unknown=True)

    @classmethod
    def interval(cls, lower, upper=None):
        if lower < 0:
            raise ValueError(f"Interval lower bound must be non-negative, got {lower}")
        if upper is not None and upper < lower:
            raise ValueError(f"Empty interval [{lower}, {upper}]")
        if upper == lower:
            return cls.known(lower)
        return cls(lower, upper)

    @classmethod
    def coerce(cls, value):
        if isinstance(value, NodeDim):
            return value
        if value is None:
            return cls.unknown()
        if isinstance(value, tuple):
            return cls.interval(*value)
        return cls.known(int(value))

    @property
    def is_known(self):
        return not self._unknown and self.lower == self.upper

    @property
    def is_unknown(self):
        return self._unknown

    @property
    def is_interval(self):
        return not self._unknown and self.lower != self.upper

    def merge(self, other):
        """Intersect two constraints. Raises ShapeConflict if nothing satisfies both."""
        if self._unknown:
            return other
        if other._unknown:
            return self
        lower = max(self.lower, other.lower)
        uppers = [u for u in (self.upper, other.upper) if u is not None]
        upper = min(uppers) if uppers else None
        if upper is not None and lower > upper:
            raise ShapeConflict(f"Dimension {self} is incompatible with {other}")
        return NodeDim.interval(lower, upper)

    def collapse_to_minimum(self):
        if self._unknown:
            raise ShapeConflict("An Unknown dimension has no minimum to collapse to")
        return NodeDim.known(self.lower)

    def _key(self):
        return (self._unknown, self.lower, self.upper)

    def __eq__(self, other):
        if not isinstance(other, NodeDim):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self):
        if self._unknown:
            return "Unknown"
        if self.is_known:
            return f"Known({self.lower})"
        return f"Interval({self.lower}, {'inf' if self.upper is None else self.upper})"


class NodeShape:
    """Ordered, immutable sequence of NodeDim constraints."""
    __slots__ = ('_dims',)

    def __init__(self, dims=()):
        self._dims = tuple(NodeDim.coerce(d) for d in dims)

    @property
    def dimensions(self):
        return self._dims

    @property
    def ndim(self):
        return len(self._dims)

    def is_known(self):
        return all(d.is_known for d in self._dims)

    def merge(self, other):
        if not isinstance(other, NodeShape):
            other = NodeShape(other)
        if self.ndim != other.ndim:
            raise ShapeConflict(f"Shape {self} has rank {self.ndim}, shape {other} has rank {other.ndim}")
        try:
            return NodeShape(a.merge(b) for a, b in zip(self._dims, other._dims))
        except ShapeConflict as exc:
            raise ShapeConflict(f"Cannot merge shape {self} with {other}: {exc}") from exc

    def collapse_ranges_to_minimum(self):
        try:
            return NodeShape(d.collapse_to_minimum() for d in self._dims)
        except ShapeConflict as exc:
            raise ShapeConflict(f"Shape {self} could not be collapsed to a fixed shape: {exc}") from exc

    def to_data_shape(self):
        if not self.is_known():
            raise ShapeConflict(f"Shape {self} is not fully known")
        return tuple(d.lower for d in self._dims)

    def flat_size(self):
        return math.prod(self.to_data_shape())

    def __len__(self):
        return len(self._dims)

    def __iter__(self):
        return iter(self._dims)

    def __getitem__(self, index):
        return self._dims[index]

    def __eq__(self, other):
        if not isinstance(other, NodeShape):
            return NotImplemented
        return self._dims == other._dims

    def __hash__(self):
        return hash(self._dims)

    def __repr__(self):
        return f"NodeShape([{', '.join(repr(d) for d in self._dims)}])"


def shape(*dims):
    """Shorthand: shape(7, 5, None, (1, 4)) -> NodeShape."""
    return NodeShape(dims)
