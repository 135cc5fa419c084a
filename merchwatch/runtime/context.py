from __future__ import annotations

import random
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from merchwatch.config.models import DelayConfig


class RunCancelled(RuntimeError):
    """Raised when a run is stopped by cancellation or by its deadline."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RunContext:
    """Shared state of one crawl/SERP/metrics invocation.

    Every politeness delay goes through :meth:`sleep`, which wakes up early
    when the run is cancelled so that in-flight work can stop between items.
    """

    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=_utcnow)
    deadline: datetime | None = None
    dry_run: bool = False
    clock: Callable[[], datetime] = _utcnow
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def create(
        cls,
        *,
        deadline_minutes: float | None = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> "RunContext":
        clock = clock or _utcnow
        started = clock()
        deadline = started + timedelta(minutes=deadline_minutes) if deadline_minutes else None
        return cls(started_at=started, deadline=deadline, dry_run=dry_run, clock=clock)

    def now(self) -> datetime:
        return self.clock()

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def should_stop(self) -> bool:
        if self.cancel_event.is_set():
            return True
        return self.deadline is not None and self.clock() >= self.deadline

    def check(self) -> None:
        if self.should_stop:
            raise RunCancelled(f"Run {self.run_id} stopped")

    def sleep(self, seconds: float) -> bool:
        """Waits up to ``seconds``; returns False when the run was stopped meanwhile."""
        if self.should_stop:
            return False
        if seconds > 0:
            self.cancel_event.wait(seconds)
        return not self.should_stop

    def jitter_sleep(self, delay: DelayConfig) -> bool:
        return self.sleep(random.uniform(delay.min_sec, delay.max_sec))
