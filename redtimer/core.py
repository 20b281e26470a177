from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable
import time


RECENT_ISSUES_LIMIT = 10

TickListener = Callable[[int], None]


def now_local() -> datetime:
    return datetime.now().astimezone()


def format_duration(seconds: int) -> str:
    seconds = max(int(seconds), 0)
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


@dataclass(frozen=True)
class Issue:
    id: int
    subject: str = ""
    activity_id: int | None = None
    status_id: int | None = None
    status_name: str = ""
    project_name: str = ""

    @property
    def title(self) -> str:
        return f"#{self.id} {self.subject}".strip()


@dataclass(frozen=True)
class Activity:
    id: int
    name: str
    is_default: bool = False


@dataclass(frozen=True)
class IssueStatus:
    id: int
    name: str
    is_closed: bool = False


@dataclass(frozen=True)
class TimeEntry:
    issue_id: int
    activity_id: int | None
    duration_seconds: int
    spent_at: datetime

    @property
    def hours(self) -> float:
        return round(self.duration_seconds / 3600.0, 4)


@dataclass(frozen=True)
class TimerState:
    running: bool = False
    elapsed_seconds: int = 0
    active_issue: Issue | None = None
    activity_id: int | None = None
    saving: bool = False

    @property
    def phase(self) -> str:
        if self.running:
            return "running"
        if self.active_issue is not None:
            return "loaded"
        return "idle"


class ElapsedCounter:
    """Whole-second counter advanced by ticks while active.

    The presentation loop calls ``poll()`` frequently; every full second of
    clock time since the last tick is turned into one ``tick()``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._value = 0
        self._active = False
        self._last_tick_at: float | None = None
        self._listeners: list[TickListener] = []

    @property
    def is_running(self) -> bool:
        return self._active

    def subscribe(self, listener: TickListener) -> None:
        self._listeners.append(listener)

    def value(self) -> int:
        return self._value

    def start(self) -> None:
        if self._active:
            return
        self._active = True
        self._last_tick_at = self._clock()

    def stop(self) -> None:
        self._active = False
        self._last_tick_at = None

    def reset(self) -> None:
        self._value = 0
        if self._active:
            self._last_tick_at = self._clock()

    def add(self, seconds: int) -> None:
        self._value = max(self._value + int(seconds), 0)

    def tick(self) -> None:
        if not self._active:
            return
        self._value += 1
        for listener in list(self._listeners):
            listener(self._value)

    def poll(self) -> int:
        if not self._active or self._last_tick_at is None:
            return 0
        now = self._clock()
        ticks = 0
        while now - self._last_tick_at >= 1.0 and self._active:
            self._last_tick_at += 1.0
            self.tick()
            ticks += 1
        return ticks


@dataclass
class RecentIssueRegistry:
    capacity: int = RECENT_ISSUES_LIMIT
    _issues: list[Issue] = field(default_factory=list)

    @classmethod
    def from_issues(cls, issues: Iterable[Issue], capacity: int = RECENT_ISSUES_LIMIT) -> "RecentIssueRegistry":
        registry = cls(capacity=capacity)
        # Oldest first so the first element of the input ends up in front.
        for issue in reversed(list(issues)):
            registry.add(issue)
        return registry

    def add(self, issue: Issue) -> None:
        self._issues = [i for i in self._issues if i.id != issue.id]
        self._issues.insert(0, issue)
        del self._issues[self.capacity :]

    def list(self) -> list[Issue]:
        return list(self._issues)

    def get(self, index: int) -> Issue | None:
        if 0 <= index < len(self._issues):
            return self._issues[index]
        return None

    def __len__(self) -> int:
        return len(self._issues)
