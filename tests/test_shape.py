import itertools

import pytest

from graphgrad.errors import ShapeConflict
from graphgrad.shape import NodeDim, NodeShape, shape

DIMS = [
    NodeDim.known(1),
    NodeDim.known(3),
    NodeDim.known(4),
    NodeDim.unknown(),
    NodeDim.interval(2, 5),
    NodeDim.interval(3),
    NodeDim.interval(0, 3),
]


def _merge_or_none(a, b):
    try:
        return a.merge(b)
    except ShapeConflict:
        return None


def test_known_merge():
    assert NodeDim.known(3).merge(NodeDim.known(3)) == NodeDim.known(3)
    with pytest.raises(ShapeConflict):
        NodeDim.known(3).merge(NodeDim.known(4))


def test_unknown_is_absorbed():
    assert NodeDim.unknown().merge(NodeDim.known(7)) == NodeDim.known(7)
    assert NodeDim.known(7).merge(NodeDim.unknown()) == NodeDim.known(7)
    assert NodeDim.unknown().merge(NodeDim.unknown()).is_unknown


def test_interval_against_known():
    assert NodeDim.interval(2, 5).merge(NodeDim.known(4)) == NodeDim.known(4)
    with pytest.raises(ShapeConflict):
        NodeDim.interval(2, 5).merge(NodeDim.known(6))


def test_interval_intersection():
    assert NodeDim.interval(2, 8).merge(NodeDim.interval(4)) == NodeDim.interval(4, 8)
    assert NodeDim.interval(2, 4).merge(NodeDim.interval(4, 9)) == NodeDim.known(4)
    with pytest.raises(ShapeConflict):
        NodeDim.interval(2, 3).merge(NodeDim.interval(5, 9))


def test_dim_merge_is_associative_and_idempotent():
    for a in DIMS:
        assert a.merge(a) == a
    for a, b, c in itertools.product(DIMS, repeat=3):
        ab = _merge_or_none(a, b)
        bc = _merge_or_none(b, c)
        left = _merge_or_none(ab, c) if ab is not None else None
        right = _merge_or_none(a, bc) if bc is not None else None
        assert left == right, (a, b, c)


def test_shape_merge_is_associative_and_idempotent():
    shapes = [NodeShape(dims) for dims in itertools.product(DIMS[:5], repeat=2)]
    for a in shapes:
        assert a.merge(a) == a
    for a, b, c in itertools.product(shapes[::3], repeat=3):
        ab = _merge_or_none(a, b)
        bc = _merge_or_none(b, c)
        left = _merge_or_none(ab, c) if ab is not None else None
        right = _merge_or_none(a, bc) if bc is not None else None
        assert left == right, (a, b, c)


def test_rank_mismatch_is_a_conflict():
    with pytest.raises(ShapeConflict):
        shape(7, 5).merge(shape(7, 5, 16))


def test_collapse_ranges_to_minimum():
    collapsed = shape(7, (2, 9), (3, None)).collapse_ranges_to_minimum()
    assert collapsed.to_data_shape() == (7, 2, 3)
    with pytest.raises(ShapeConflict):
        shape(7, None).collapse_ranges_to_minimum()


def test_coercion_and_sizes():
    s = shape(7, None, (2, 4), (5, 5))
    assert s.dimensions == (NodeDim.known(7), NodeDim.unknown(), NodeDim.interval(2, 4), NodeDim.known(5))
    assert not s.is_known()
    with pytest.raises(ShapeConflict):
        s.to_data_shape()
    assert shape(7, 5, 16).flat_size() == 560
    assert shape().to_data_shape() == ()


def test_invalid_dimensions():
    with pytest.raises(ValueError):
        NodeDim.known(-1)
    with pytest.raises(ValueError):
        NodeDim.interval(5, 2)


def test_bare_dimension_is_rejected():
    with pytest.raises(ValueError):
        NodeDim()
    assert NodeDim.unknown().is_unknown
    assert not NodeDim.unknown().is_known
