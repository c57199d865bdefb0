from __future__ import annotations

import asyncio

import pytest

from goalengine.agent.resources import ResourceManager
from goalengine.errors import ResourceExhausted
from tests.fakes import MutableSampler, make_settings


def test_admission_is_capped_at_max_executing_goals() -> None:
    manager = ResourceManager(make_settings(MAX_EXECUTING_GOALS=2), sampler=MutableSampler())

    first = manager.acquire("g1")
    manager.acquire("g2")

    assert manager.active_count == 2
    assert manager.admit() is False
    with pytest.raises(ResourceExhausted, match="limit 2"):
        manager.acquire("g3")

    first.release()
    assert manager.admit() is True


def test_release_is_idempotent_and_notifies() -> None:
    manager = ResourceManager(make_settings(), sampler=MutableSampler())
    released = []
    manager.on_release = lambda: released.append(True)
    token = manager.acquire("g1")

    token.release()
    token.release()

    assert manager.active_count == 0
    assert released == [True]


@pytest.mark.parametrize(
    "cpu, memory, reason",
    [
        (0.1, 0.95, "memory"),
        (0.99, 0.2, "cpu"),
    ],
)
def test_pressure_above_ceiling_refuses_admission(cpu: float, memory: float, reason: str) -> None:
    sampler = MutableSampler(cpu=cpu, memory=memory)
    manager = ResourceManager(
        make_settings(RESOURCE_MEMORY_CEILING=0.9, RESOURCE_CPU_CEILING=0.95),
        sampler=sampler,
    )

    assert reason in manager.refusal_reason()

    sampler.cpu, sampler.memory = 0.1, 0.2
    manager.sample()
    assert manager.refusal_reason() is None


def test_snapshot_is_sampled_lazily() -> None:
    manager = ResourceManager(make_settings(), sampler=MutableSampler(cpu=0.5, memory=0.25))

    snapshot = manager.snapshot

    assert snapshot.cpu_fraction == 0.5
    assert snapshot.to_dict()["memory_fraction"] == 0.25


@pytest.mark.asyncio
async def test_poll_task_refreshes_snapshot() -> None:
    sampler = MutableSampler()
    manager = ResourceManager(make_settings(RESOURCE_POLL_INTERVAL_SECONDS=0.01), sampler=sampler)
    await manager.start()
    try:
        sampler.memory = 0.99
        for _ in range(100):
            if manager.snapshot.memory_fraction == 0.99:
                break
            await asyncio.sleep(0.01)
        assert manager.snapshot.memory_fraction == 0.99
    finally:
        await manager.stop()
