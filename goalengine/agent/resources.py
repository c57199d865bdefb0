"""
Resource Manager — host pressure sampling and goal admission

Samples CPU and memory with psutil on a fixed interval. A goal may start
planning only while it holds an AdmissionToken; tokens are refused when the
host is over its ceilings or too many goals are already admitted. Admission
is advisory backpressure: admitted goals are never preempted.
"""
from typing import Callable, Optional, Set
from dataclasses import dataclass
import asyncio
import logging
import time

import psutil

from goalengine.config import Settings
from goalengine.errors import ResourceExhausted

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSnapshot:
    cpu_fraction: float
    memory_fraction: float
    sampled_at: float

    def to_dict(self):
        return {
            "cpu_fraction": round(self.cpu_fraction, 4),
            "memory_fraction": round(self.memory_fraction, 4),
            "sampled_at": self.sampled_at,
        }


def psutil_sampler() -> ResourceSnapshot:
    """Non-blocking sample; the first cpu reading after start-up is 0.0"""
    return ResourceSnapshot(
        cpu_fraction=psutil.cpu_percent(interval=None) / 100.0,
        memory_fraction=psutil.virtual_memory().percent / 100.0,
        sampled_at=time.time(),
    )


class AdmissionToken:
    """Held by a goal from admission until it is terminal. release() is idempotent."""

    def __init__(self, manager: "ResourceManager", goal_id: Optional[str] = None):
        self._manager = manager
        self.goal_id = goal_id
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._manager._release(self)


class ResourceManager:
    def __init__(
        self,
        settings: Settings,
        sampler: Optional[Callable[[], ResourceSnapshot]] = None,
    ):
        self.settings = settings
        self._sampler = sampler or psutil_sampler
        self._snapshot: Optional[ResourceSnapshot] = None
        self._active: Set[AdmissionToken] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self.on_release: Optional[Callable[[], None]] = None

    @property
    def active_count(self) -> int:
        return len(self._active)

    def sample(self) -> ResourceSnapshot:
        self._snapshot = self._sampler()
        return self._snapshot

    @property
    def snapshot(self) -> ResourceSnapshot:
        return self._snapshot if self._snapshot is not None else self.sample()

    async def start(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self.sample()
            self._poll_task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.settings.RESOURCE_POLL_INTERVAL_SECONDS)
            try:
                self.sample()
            except psutil.Error:
                logger.exception("Resource sampling failed, keeping the previous snapshot")

    def refusal_reason(self) -> Optional[str]:
        if self.active_count >= self.settings.MAX_EXECUTING_GOALS:
            return f"{self.active_count} goals already admitted (limit {self.settings.MAX_EXECUTING_GOALS})"
        snap = self.snapshot
        if snap.memory_fraction > self.settings.RESOURCE_MEMORY_CEILING:
            return f"memory at {snap.memory_fraction:.0%} (ceiling {self.settings.RESOURCE_MEMORY_CEILING:.0%})"
        if snap.cpu_fraction > self.settings.RESOURCE_CPU_CEILING:
            return f"cpu at {snap.cpu_fraction:.0%} (ceiling {self.settings.RESOURCE_CPU_CEILING:.0%})"
        return None

    def admit(self) -> bool:
        return self.refusal_reason() is None

    def acquire(self, goal_id: Optional[str] = None) -> AdmissionToken:
        reason = self.refusal_reason()
        if reason is not None:
            raise ResourceExhausted(f"Admission refused: {reason}", goal_id=goal_id)
        token = AdmissionToken(self, goal_id)
        self._active.add(token)
        return token

    def _release(self, token: AdmissionToken) -> None:
        self._active.discard(token)
        if self.on_release is not None:
            self.on_release()
