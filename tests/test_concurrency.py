"""Concurrent use of a single engine from many threads."""

import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

import sona.consolidation.trainer as trainer
from sona import SonaEngine
from sona.adapters.lora import LoraPair


def test_apply_micro_never_observes_torn_weights(make_config, monkeypatch) -> None:
    engine = SonaEngine.with_config(make_config())
    published = [engine.micro_adapter.weights()]
    original = LoraPair.with_factors

    def recording(self, A, B):
        pair = original(self, A, B)
        published.append(pair)
        return pair

    monkeypatch.setattr(LoraPair, "with_factors", recording)
    x = np.linspace(-1.0, 1.0, 8).astype("float32")
    outputs = []
    done = threading.Event()

    def reader() -> None:
        while not done.is_set():
            outputs.append(engine.apply_micro(x))

    def writer(seed: int) -> None:
        rng = np.random.default_rng(seed)
        for _ in range(20):
            tid = engine.begin_trajectory(rng.normal(size=8))
            engine.end_trajectory(tid, 0.9)

    readers = [threading.Thread(target=reader) for _ in range(2)]
    for t in readers:
        t.start()
    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(writer, range(4)))
    done.set()
    for t in readers:
        t.join()

    expected = [p.forward(x) for p in published]
    for out in outputs[:: max(1, len(outputs) // 200)]:
        assert any(np.array_equal(out, e) for e in expected)
    assert engine.stats().micro_updates == 80


def test_concurrent_trajectories_get_unique_ids(make_config) -> None:
    engine = SonaEngine.with_config(make_config(trajectory_capacity=1000, pattern_clusters=64))

    def work(seed: int) -> list:
        rng = np.random.default_rng(seed)
        ids = []
        for _ in range(25):
            tid = engine.begin_trajectory(rng.normal(size=8))
            engine.record_step(tid, node_id=seed, score=0.5, latency_us=10)
            engine.end_trajectory(tid, float(rng.uniform()))
            ids.append(tid)
        return ids

    with ThreadPoolExecutor(max_workers=8) as pool:
        all_ids = [tid for ids in pool.map(work, range(8)) for tid in ids]
    assert len(set(all_ids)) == len(all_ids) == 200
    stats = engine.stats()
    assert stats.trajectories_buffered == 200
    assert stats.trajectories_open == 0
    assert sum(p.member_count for p in engine._parts.patterns.patterns()) == 200


def test_concurrent_force_learn_runs_one_cycle(make_config, monkeypatch) -> None:
    engine = SonaEngine.with_config(make_config())
    for i in range(4):
        tid = engine.begin_trajectory([0.1 * (i + 1)] * 8)
        engine.end_trajectory(tid, 0.9)
    original = trainer.layer_gradients
    started = threading.Event()
    release = threading.Event()

    def slow(pair, X, adv, carries):
        started.set()
        release.wait(2.0)
        return original(pair, X, adv, carries)

    monkeypatch.setattr(trainer, "layer_gradients", slow)
    with ThreadPoolExecutor(max_workers=1) as pool:
        first = pool.submit(engine.force_learn)
        assert started.wait(2.0)
        others = [engine.force_learn() for _ in range(3)]
        assert engine.tick() is False
        release.set()
        result = first.result()
    assert result.ran
    assert [r.status for r in others] == ["busy"] * 3
    assert engine.stats().cycles_run == 1


@pytest.mark.slow
def test_mixed_load_keeps_engine_consistent(make_config) -> None:
    engine = SonaEngine.with_config(make_config(batch_size=8, trajectory_capacity=64))

    def work(seed: int) -> None:
        rng = np.random.default_rng(seed)
        for i in range(200):
            tid = engine.begin_trajectory(rng.normal(size=8))
            engine.end_trajectory(tid, float(rng.uniform()))
            engine.apply_micro(rng.normal(size=8))
            engine.apply_base(i % 2, rng.normal(size=8))
            engine.tick()

    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(work, range(6)))
    stats = engine.stats()
    assert stats.trajectories_open == 0
    assert stats.cycles_failed == 0
    assert stats.anchor_version == stats.cycles_run
    assert stats.trajectories_buffered + stats.trajectories_consumed + stats.trajectories_dropped == 1200
    for pair in engine.base_adapter.snapshot():
        assert pair.is_finite()
