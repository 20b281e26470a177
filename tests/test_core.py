from datetime import datetime

from redtimer.core import (
    ElapsedCounter,
    Issue,
    RecentIssueRegistry,
    TimeEntry,
    TimerState,
    format_duration,
)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_format_duration():
    assert format_duration(0) == "00:00:00"
    assert format_duration(125) == "00:02:05"
    assert format_duration(3600 * 12 + 61) == "12:01:01"
    assert format_duration(-5) == "00:00:00"


def test_time_entry_hours_rounded():
    entry = TimeEntry(issue_id=1, activity_id=None, duration_seconds=125, spent_at=datetime(2024, 1, 2))
    assert entry.hours == 0.0347


def test_timer_state_phase():
    assert TimerState().phase == "idle"
    assert TimerState(active_issue=Issue(id=1)).phase == "loaded"
    assert TimerState(running=True, active_issue=Issue(id=1)).phase == "running"


def test_issue_title():
    assert Issue(id=42, subject="Fix login").title == "#42 Fix login"
    assert Issue(id=7).title == "#7"


def test_counter_ticks_only_while_active():
    counter = ElapsedCounter(clock=FakeClock())
    counter.tick()
    assert counter.value() == 0
    counter.start()
    counter.tick()
    counter.tick()
    assert counter.value() == 2
    counter.stop()
    counter.tick()
    assert counter.value() == 2


def test_counter_start_is_idempotent_and_resume_keeps_value():
    counter = ElapsedCounter(clock=FakeClock())
    counter.start()
    counter.tick()
    counter.start()
    assert counter.is_running
    counter.stop()
    counter.start()
    counter.tick()
    assert counter.value() == 2


def test_counter_reset_keeps_running_flag():
    counter = ElapsedCounter(clock=FakeClock())
    counter.start()
    counter.tick()
    counter.reset()
    assert counter.value() == 0
    assert counter.is_running
    counter.stop()
    counter.reset()
    assert not counter.is_running


def test_counter_add_never_goes_negative():
    counter = ElapsedCounter(clock=FakeClock())
    counter.add(30)
    assert counter.value() == 30
    counter.add(-100)
    assert counter.value() == 0


def test_counter_poll_turns_clock_seconds_into_ticks():
    clock = FakeClock()
    counter = ElapsedCounter(clock=clock)
    seen: list[int] = []
    counter.subscribe(seen.append)
    counter.start()
    clock.advance(0.6)
    assert counter.poll() == 0
    clock.advance(0.6)
    assert counter.poll() == 1
    clock.advance(2.5)
    assert counter.poll() == 2
    assert counter.value() == 3
    assert seen == [1, 2, 3]


def test_counter_poll_does_nothing_when_stopped():
    clock = FakeClock()
    counter = ElapsedCounter(clock=clock)
    clock.advance(10)
    assert counter.poll() == 0
    counter.start()
    counter.stop()
    clock.advance(10)
    assert counter.poll() == 0
    assert counter.value() == 0


def test_recent_registry_moves_existing_issue_to_front():
    registry = RecentIssueRegistry()
    registry.add(Issue(id=1, subject="one"))
    registry.add(Issue(id=2, subject="two"))
    registry.add(Issue(id=1, subject="one, renamed"))
    ids = [i.id for i in registry.list()]
    assert ids == [1, 2]
    assert registry.list()[0].subject == "one, renamed"


def test_recent_registry_caps_at_ten():
    registry = RecentIssueRegistry()
    for issue_id in range(1, 13):
        registry.add(Issue(id=issue_id))
    ids = [i.id for i in registry.list()]
    assert len(ids) == 10
    assert ids[0] == 12
    assert 1 not in ids and 2 not in ids


def test_recent_registry_list_is_a_copy():
    registry = RecentIssueRegistry()
    registry.add(Issue(id=1))
    snapshot = registry.list()
    snapshot.clear()
    assert len(registry) == 1


def test_recent_registry_from_issues_keeps_order():
    registry = RecentIssueRegistry.from_issues([Issue(id=3), Issue(id=2), Issue(id=1)])
    assert [i.id for i in registry.list()] == [3, 2, 1]
    assert registry.get(0).id == 3
    assert registry.get(5) is None
    assert registry.get(-1) is None
