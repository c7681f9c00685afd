"""Tests for pattern memory clustering and lookup."""

import hypothesis.extra.numpy as hnp
import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from sona.errors import InvalidInput
from sona.patterns import NumpyIndex, PatternMemory

finite = st.floats(min_value=-10.0, max_value=10.0, allow_nan=False, allow_infinity=False, width=32)


@given(
    emb=hnp.arrays(np.float32, 4, elements=finite),
    n=st.integers(min_value=1, max_value=20),
)
@settings(max_examples=50, deadline=None)
def test_same_embedding_yields_one_pattern(emb: np.ndarray, n: int) -> None:
    mem = PatternMemory(4, capacity=8, radius=0.0)
    for _ in range(n):
        mem.insert(emb, 0.5)
    patterns = mem.patterns()
    assert len(patterns) == 1
    assert patterns[0].member_count == n
    np.testing.assert_array_equal(patterns[0].centroid, emb)


def test_far_embeddings_create_distinct_patterns() -> None:
    mem = PatternMemory(2, capacity=8, radius=0.5)
    a = mem.insert([0.0, 0.0], 0.2)
    b = mem.insert([1.0, 0.0], 0.9)
    assert a.id != b.id
    assert len(mem) == 2


def test_merge_updates_running_mean_and_quality() -> None:
    mem = PatternMemory(2, capacity=8, radius=1.0)
    mem.insert([0.0, 0.0], 0.2)
    p = mem.insert([0.5, 0.0], 0.8)
    assert p.member_count == 2
    np.testing.assert_allclose(p.centroid, [0.25, 0.0])
    assert p.aggregate_quality == pytest.approx(0.5)


def test_find_similar_orders_by_distance() -> None:
    mem = PatternMemory(2, capacity=8, radius=0.1)
    for x in (0.0, 3.0, 1.0, 2.0):
        mem.insert([x, 0.0], 0.5)
    hits = mem.find_similar([0.9, 0.0], 3)
    xs = [float(p.centroid[0]) for p, _ in hits]
    assert xs == [1.0, 0.0, 2.0]
    dists = [d for _, d in hits]
    assert dists == sorted(dists)
    assert dists[0] == pytest.approx(0.1, abs=1e-6)


def test_find_similar_breaks_ties_by_member_count_then_id() -> None:
    mem = PatternMemory(2, capacity=8, radius=0.1)
    left = mem.insert([-1.0, 0.0], 0.5)
    right = mem.insert([1.0, 0.0], 0.5)
    up = mem.insert([0.0, 1.0], 0.5)
    mem.insert([1.0, 0.0], 0.5)  # right now has two members
    hits = mem.find_similar([0.0, 0.0], 3)
    assert [p.id for p, _ in hits] == [right.id, left.id, up.id]
    assert all(d == pytest.approx(1.0) for _, d in hits)


def test_find_similar_on_empty_memory_is_empty() -> None:
    mem = PatternMemory(3, capacity=4, radius=0.1)
    assert mem.find_similar([0.0, 0.0, 0.0], 5) == []
    mem.insert([0.0, 0.0, 0.0], 0.5)
    assert mem.find_similar([0.0, 0.0, 0.0], 0) == []


def test_find_similar_returns_at_most_k() -> None:
    mem = PatternMemory(1, capacity=16, radius=0.1)
    for x in range(10):
        mem.insert([float(x)], 0.5)
    assert len(mem.find_similar([0.0], 4)) == 4
    assert len(mem.find_similar([0.0], 40)) == 10


def test_capacity_merges_two_closest_patterns() -> None:
    mem = PatternMemory(1, capacity=3, radius=0.1)
    a = mem.insert([0.0], 0.2)
    b = mem.insert([1.0], 0.4)
    mem.insert([10.0], 0.6)
    mem.insert([20.0], 0.8)
    patterns = mem.patterns()
    assert len(patterns) == 3
    merged = patterns[0]
    assert merged.id == a.id
    assert merged.member_count == 2
    np.testing.assert_allclose(merged.centroid, [0.5])
    assert merged.aggregate_quality == pytest.approx(0.3)
    assert b.id not in {p.id for p in patterns}
    assert mem.log_status()["merges"] == 1


@given(points=st.lists(st.tuples(finite, finite), min_size=1, max_size=40))
@settings(max_examples=50, deadline=None)
def test_pattern_count_never_exceeds_capacity(points) -> None:
    mem = PatternMemory(2, capacity=5, radius=0.01)
    for x, y in points:
        mem.insert([x, y], 0.5)
        assert len(mem) <= 5
    assert sum(p.member_count for p in mem.patterns()) == len(points)


def test_capacity_one_folds_into_single_pattern() -> None:
    mem = PatternMemory(1, capacity=1, radius=0.1)
    mem.insert([0.0], 0.0)
    p = mem.insert([2.0], 1.0)
    assert len(mem) == 1
    assert p.member_count == 2
    np.testing.assert_allclose(p.centroid, [1.0])


def test_returned_patterns_are_copies() -> None:
    mem = PatternMemory(1, capacity=4, radius=0.1)
    p = mem.insert([1.0], 0.5)
    p.centroid[0] = 99.0
    assert mem.patterns()[0].centroid[0] == 1.0


def test_dimension_mismatch_rejected() -> None:
    mem = PatternMemory(2, capacity=4, radius=0.1)
    with pytest.raises(InvalidInput):
        mem.insert([1.0], 0.5)
    with pytest.raises(InvalidInput):
        mem.find_similar([1.0, 2.0, 3.0], 1)


def test_numpy_index_search_and_remove() -> None:
    index = NumpyIndex(2)
    index.add(np.array([0.0, 0.0]), 1)
    index.add(np.array([3.0, 4.0]), 2)
    dists, ids = index.search(np.array([3.0, 4.0]), 2)
    assert ids.tolist() == [2, 1]
    np.testing.assert_allclose(dists, [0.0, 25.0])
    index.remove(2)
    assert index.ntotal == 1


def test_faiss_backend_matches_numpy_ordering() -> None:
    pytest.importorskip("faiss")
    rng = np.random.default_rng(0)
    points = rng.normal(size=(30, 4)).astype("float32")
    mems = [PatternMemory(4, capacity=12, radius=0.3, backend=b) for b in ("numpy", "faiss")]
    for mem in mems:
        for p in points:
            mem.insert(p, 0.5)
    query = rng.normal(size=4).astype("float32")
    ranked = [[p.id for p, _ in mem.find_similar(query, 5)] for mem in mems]
    assert ranked[0] == ranked[1]
