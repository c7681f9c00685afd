"""Tests for the learning scheduler."""

import threading

import numpy as np
import torch

import sona.consolidation.trainer as trainer
from sona.adapters import BaseAdapter, MicroAdapter
from sona.consolidation import Consolidator, LearningScheduler, SchedulerState
from sona.trajectory import Trajectory, TrajectoryBuffer


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _make(cfg, clock=None, micro=None):
    buffer = TrajectoryBuffer(cfg.trajectory_capacity)
    base = BaseAdapter(cfg.hidden_dim, cfg.base_lora_rank, cfg.num_layers, scale=cfg.base_scale)
    cons = Consolidator(cfg, base)
    sched = LearningScheduler(cfg, buffer, cons, micro=micro, clock=clock or FakeClock())
    return sched, buffer


def _push(buffer, n, start=1, score=0.9):
    for tid in range(start, start + n):
        buffer.push(Trajectory(id=tid, query_embedding=np.ones(8, dtype="float32"), final_score=score))


def test_not_due_when_idle(make_config) -> None:
    sched, buffer = _make(make_config(batch_size=4))
    _push(buffer, 4)
    assert not sched.is_due()
    assert sched.tick() is False
    assert len(buffer) == 4
    assert sched.state is SchedulerState.IDLE


def test_volume_trigger_runs_cycle(make_config) -> None:
    sched, buffer = _make(make_config(batch_size=4))
    _push(buffer, 5)
    assert sched.is_due()
    assert sched.tick() is True
    assert len(buffer) == 0
    assert sched.cycles_run == 1
    assert sched.last_result.batch_size == 5
    assert sched.state is SchedulerState.IDLE


def test_time_trigger_runs_cycle(make_config) -> None:
    clock = FakeClock()
    sched, buffer = _make(make_config(background_interval_s=10.0), clock=clock)
    _push(buffer, 1)
    assert sched.tick() is False
    clock.now += 10.0
    assert sched.tick() is True
    assert sched.last_cycle_at == clock.now
    assert sched.tick() is False


def test_time_trigger_with_empty_buffer_resets_timer(make_config) -> None:
    clock = FakeClock()
    sched, _ = _make(make_config(background_interval_s=10.0), clock=clock)
    clock.now += 11.0
    assert sched.tick() is False
    assert sched.last_cycle_at == clock.now
    assert sched.cycles_run == 0


def test_tick_disabled_is_noop(make_config) -> None:
    sched, buffer = _make(make_config(batch_size=1))
    _push(buffer, 3)
    assert sched.tick(enabled=False) is False
    assert len(buffer) == 3


def test_force_learn_statuses(make_config) -> None:
    sched, buffer = _make(make_config())
    assert sched.force_learn().status == trainer.NOTHING_TO_LEARN
    _push(buffer, 2)
    assert sched.force_learn(enabled=False).status == trainer.DISABLED
    assert len(buffer) == 2
    result = sched.force_learn()
    assert result.status == trainer.COMPLETED
    assert result.batch_size == 2
    assert len(buffer) == 0


def test_reentry_is_rejected(make_config) -> None:
    sched, buffer = _make(make_config(batch_size=1))
    _push(buffer, 3)
    sched._run_lock.acquire()
    try:
        assert sched.force_learn().status == trainer.BUSY
        assert sched.tick() is False
    finally:
        sched._run_lock.release()
    assert len(buffer) == 3


def test_trajectories_closed_during_cycle_wait_for_next(make_config, monkeypatch) -> None:
    sched, buffer = _make(make_config())
    _push(buffer, 3)
    original = sched.consolidator.consolidate

    def consolidate_with_late_arrival(batch, *, drift=None):
        _push(buffer, 1, start=100)
        return original(batch, drift=drift)

    monkeypatch.setattr(sched.consolidator, "consolidate", consolidate_with_late_arrival)
    result = sched.force_learn()
    assert result.batch_size == 3
    assert [t.id for t in buffer.snapshot()] == [100]


def test_micro_drift_is_settled_only_after_commit(make_config, monkeypatch) -> None:
    cfg = make_config()
    micro = MicroAdapter(cfg.hidden_dim, cfg.micro_lora_rank, cfg.micro_lora_lr, flush_decay=0.5)
    sched, buffer = _make(cfg, micro=micro)
    _push(buffer, 2)
    micro.update(buffer.snapshot()[0])
    live = micro.weights()

    def nan_gradients(pair, X, adv, carries):
        return torch.full_like(pair.A, float("nan")), torch.zeros_like(pair.B)

    monkeypatch.setattr(trainer, "layer_gradients", nan_gradients)
    assert sched.force_learn().status == trainer.FAILED
    assert micro.weights() is live
    assert micro.pending_updates == 1
    assert sched.consolidator.pending_flushes == 0

    monkeypatch.undo()
    result = sched.force_learn()
    assert result.ran and result.micro_flushes == 1
    assert micro.pending_updates == 0
    assert torch.allclose(micro.weights().B, live.B * 0.5)


def test_failed_cycle_keeps_buffer(make_config, monkeypatch) -> None:
    sched, buffer = _make(make_config())
    _push(buffer, 2)

    def nan_gradients(pair, X, adv, carries):
        return torch.zeros_like(pair.A), torch.full_like(pair.B, float("inf"))

    monkeypatch.setattr(trainer, "layer_gradients", nan_gradients)
    result = sched.force_learn()
    assert result.status == trainer.FAILED
    assert len(buffer) == 2
    assert sched.cycles_failed == 1
    assert sched.cycles_run == 0


def test_only_one_cycle_runs_at_a_time(make_config, monkeypatch) -> None:
    sched, buffer = _make(make_config())
    _push(buffer, 4)
    running = []
    overlap = []
    original = trainer.layer_gradients
    gate = threading.Event()

    def slow(pair, X, adv, carries):
        running.append(1)
        if len(running) > 1 and not gate.is_set():
            overlap.append(1)
        gate.wait(0.05)
        return original(pair, X, adv, carries)

    monkeypatch.setattr(trainer, "layer_gradients", slow)
    results = []
    threads = [threading.Thread(target=lambda: results.append(sched.force_learn())) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    statuses = sorted(r.status for r in results)
    assert statuses.count(trainer.COMPLETED) == 1
    assert set(statuses) <= {trainer.COMPLETED, trainer.BUSY, trainer.NOTHING_TO_LEARN}
    assert len(buffer) == 0
