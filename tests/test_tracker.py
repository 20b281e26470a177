from datetime import datetime

import pytest

from redtimer.core import Activity, ElapsedCounter, Issue, IssueStatus
from redtimer.redmine import NetworkFailure, RemoteIssueGateway, RemoteRejection
from redtimer.tracker import (
    SEVERITY_ERROR,
    SEVERITY_WARNING,
    ExitChoice,
    InvalidLocalState,
    TimeTrackingController,
    parse_issue_ref,
)


FIXED_NOW = datetime(2024, 3, 5, 14, 30)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeGateway(RemoteIssueGateway):
    """Records every call; tests complete them explicitly."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple, object, object]] = []
        self.history: list[tuple[str, tuple]] = []

    def _record(self, name, args, on_success, on_error) -> None:
        self.calls.append((name, args, on_success, on_error))
        self.history.append((name, args))

    def fetch_issue(self, issue_id, on_success, on_error):
        self._record("fetch_issue", (issue_id,), on_success, on_error)

    def fetch_activities(self, on_success, on_error):
        self._record("fetch_activities", (), on_success, on_error)

    def fetch_issue_statuses(self, on_success, on_error):
        self._record("fetch_issue_statuses", (), on_success, on_error)

    def fetch_latest_activity(self, issue_id, on_success, on_error):
        self._record("fetch_latest_activity", (issue_id,), on_success, on_error)

    def fetch_assigned_issues(self, on_success, on_error):
        self._record("fetch_assigned_issues", (), on_success, on_error)

    def create_time_entry(self, entry, on_success, on_error):
        self._record("create_time_entry", (entry,), on_success, on_error)

    def update_issue_status(self, issue_id, status_id, on_success, on_error):
        self._record("update_issue_status", (issue_id, status_id), on_success, on_error)

    def create_issue(self, project_id, subject, on_success, on_error):
        self._record("create_issue", (project_id, subject), on_success, on_error)

    def pending(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    def _take(self, name: str, index: int) -> tuple:
        call = self.pending(name)[index]
        self.calls = [c for c in self.calls if c is not call]
        return call

    def succeed(self, name: str, result=None, index: int = 0) -> None:
        self._take(name, index)[2](result)

    def fail(self, name: str, exc, index: int = 0) -> None:
        self._take(name, index)[3](exc)


def _make_controller():
    gateway = FakeGateway()
    counter = ElapsedCounter(clock=FakeClock())
    controller = TimeTrackingController(gateway, counter=counter, now=lambda: FIXED_NOW)
    messages: list[tuple[str, str, int]] = []
    controller.subscribe("message", lambda text, severity, timeout: messages.append((text, severity, timeout)))
    return controller, gateway, counter, messages


def _load(controller, gateway, issue: Issue, auto_start: bool = True) -> None:
    controller.load_issue(issue.id, auto_start=auto_start)
    gateway.succeed("fetch_issue", issue, index=-1)


def _ticks(counter: ElapsedCounter, n: int) -> None:
    for _ in range(n):
        counter.tick()


def test_load_track_and_save_issue_42():
    controller, gateway, counter, _messages = _make_controller()
    saved: list[bool] = []
    controller.subscribe("time_entry_saved", lambda: saved.append(True))

    _load(controller, gateway, Issue(id=42, subject="Fix login", activity_id=9))
    assert controller.is_running
    _ticks(counter, 125)

    assert controller.stop() == "saving"
    entry = gateway.pending("create_time_entry")[0][1][0]
    assert entry.issue_id == 42
    assert entry.activity_id == 9
    assert entry.duration_seconds == 125
    assert entry.spent_at == FIXED_NOW

    gateway.succeed("create_time_entry", 1001)
    state = controller.snapshot()
    assert state.phase == "loaded"
    assert state.elapsed_seconds == 0
    assert state.active_issue.id == 42
    assert saved == [True]


def test_switching_issue_saves_previous_before_fetching_next():
    controller, gateway, counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=1, subject="First"))
    _ticks(counter, 30)

    controller.load_issue(2)
    names = [name for name, _args in gateway.history]
    assert names.index("create_time_entry") < len(names) - 1
    assert gateway.history[-1] == ("fetch_issue", (2,))
    entry = gateway.pending("create_time_entry")[0][1][0]
    assert (entry.issue_id, entry.duration_seconds) == (1, 30)

    gateway.succeed("fetch_issue", Issue(id=2, subject="Second"))
    assert controller.active_issue.id == 2
    assert controller.is_running
    assert counter.value() == 0

    _ticks(counter, 4)
    gateway.succeed("create_time_entry")
    # The late save must not wipe the new run.
    assert counter.value() == 4
    assert [i.id for i in controller.recent_issues()] == [2, 1]


def test_failed_issue_load_reports_error_and_keeps_state():
    controller, gateway, _counter, messages = _make_controller()
    controller.load_issue(99)
    gateway.fail("fetch_issue", NetworkFailure("Cannot connect to Redmine"))

    assert messages[-1][1] == SEVERITY_ERROR
    assert "#99" in messages[-1][0]
    state = controller.snapshot()
    assert state.phase == "idle"
    assert state.active_issue is None


def test_failed_issue_load_keeps_loaded_issue():
    controller, gateway, _counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=5), auto_start=False)
    controller.load_issue(5)
    gateway.fail("fetch_issue", RemoteRejection("Not found"))
    assert controller.active_issue.id == 5
    assert not controller.is_running


def test_start_without_issue_is_refused():
    controller, gateway, _counter, messages = _make_controller()
    with pytest.raises(InvalidLocalState):
        controller.start()
    assert controller.snapshot().phase == "idle"
    assert messages[-1][1] == SEVERITY_WARNING
    assert gateway.calls == []


def test_stop_when_idle_is_noop():
    controller, gateway, _counter, _messages = _make_controller()
    assert controller.stop() == "noop"
    assert gateway.calls == []


def test_stop_with_zero_elapsed_skips_save():
    controller, gateway, _counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=3))
    assert controller.stop() == "stopped"
    assert gateway.pending("create_time_entry") == []
    assert controller.snapshot().phase == "loaded"


def test_failed_save_resets_counter_by_default():
    controller, gateway, counter, messages = _make_controller()
    _load(controller, gateway, Issue(id=3))
    _ticks(counter, 12)
    controller.stop()
    gateway.fail("create_time_entry", NetworkFailure("timeout"))
    assert counter.value() == 0
    assert messages[-1][1] == SEVERITY_ERROR
    assert not controller.has_unsaved_time()


def test_failed_save_can_keep_time_and_retry():
    controller, gateway, counter, messages = _make_controller()
    _load(controller, gateway, Issue(id=3))
    _ticks(counter, 10)
    controller.stop(reset_timer_on_error=False)
    gateway.fail("create_time_entry", RemoteRejection("Activity cannot be blank", errors=["Activity cannot be blank"]))

    assert counter.value() == 10
    assert not controller.is_running
    assert controller.has_unsaved_time()
    assert "retry" in messages[-1][0]

    assert controller.stop() == "saving"
    entry = gateway.pending("create_time_entry")[0][1][0]
    assert entry.duration_seconds == 10
    gateway.succeed("create_time_entry")
    assert counter.value() == 0


def test_stop_does_not_resend_time_already_in_flight():
    controller, gateway, counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=3))
    _ticks(counter, 10)
    controller.stop()
    assert controller.stop() == "noop"
    assert len(gateway.pending("create_time_entry")) == 1


def test_start_while_running_saves_and_restarts():
    controller, gateway, counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=8))
    _ticks(counter, 20)

    assert controller.start() == "restarted"
    assert controller.is_running
    assert counter.value() == 0
    _ticks(counter, 3)
    gateway.succeed("create_time_entry")
    assert counter.value() == 3


def test_reload_same_issue_keeps_running_timer():
    controller, gateway, counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=1, activity_id=4))
    _ticks(counter, 5)
    _load(controller, gateway, Issue(id=1, subject="renamed"))
    assert controller.is_running
    assert counter.value() == 5
    assert controller.activity_id == 4
    assert gateway.pending("create_time_entry") == []


def test_stale_issue_response_is_discarded():
    controller, gateway, _counter, _messages = _make_controller()
    controller.load_issue(1, auto_start=False)
    controller.load_issue(2, auto_start=False)
    gateway.succeed("fetch_issue", Issue(id=1), index=0)
    assert controller.active_issue is None
    gateway.succeed("fetch_issue", Issue(id=2))
    assert controller.active_issue.id == 2


def test_load_issue_from_text_rejects_garbage():
    controller, gateway, _counter, _messages = _make_controller()
    with pytest.raises(InvalidLocalState):
        controller.load_issue_from_text("not an issue")
    assert gateway.calls == []
    controller.load_issue_from_text("https://redmine.example.com/issues/77")
    assert gateway.history[-1] == ("fetch_issue", (77,))


def test_load_recent_issue_by_index():
    controller, gateway, _counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=10), auto_start=False)
    _load(controller, gateway, Issue(id=11), auto_start=False)
    controller.load_recent_issue(1, auto_start=False)
    assert gateway.history[-1] == ("fetch_issue", (10,))
    with pytest.raises(InvalidLocalState):
        controller.load_recent_issue(9)


def test_activities_prefer_default_and_validate_selection():
    controller, gateway, _counter, _messages = _make_controller()
    controller.refresh()
    gateway.succeed("fetch_activities", [Activity(1, "Development"), Activity(2, "Testing", is_default=True)])
    assert controller.activity_id == 2

    controller.select_activity(1)
    assert controller.activity_id == 1
    with pytest.raises(InvalidLocalState):
        controller.select_activity(99)
    assert controller.activity_id == 1


def test_latest_activity_applies_to_issue_without_activity():
    controller, gateway, _counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=4), auto_start=False)
    gateway.succeed("fetch_activities", [Activity(1, "Development"), Activity(2, "Testing")])
    assert gateway.pending("fetch_latest_activity")[0][1] == (4,)
    gateway.succeed("fetch_latest_activity", 2)
    assert controller.activity_id == 2
    assert controller.active_issue.activity_id == 2


def test_update_issue_status_success_and_failure():
    controller, gateway, _counter, messages = _make_controller()
    with pytest.raises(InvalidLocalState):
        controller.update_issue_status(2)

    _load(controller, gateway, Issue(id=6, status_id=1, status_name="New"), auto_start=False)
    gateway.succeed("fetch_issue_statuses", [IssueStatus(1, "New"), IssueStatus(2, "In Progress")])

    controller.update_issue_status(2)
    assert gateway.pending("update_issue_status")[0][1] == (6, 2)
    gateway.succeed("update_issue_status")
    assert controller.active_issue.status_id == 2
    assert controller.active_issue.status_name == "In Progress"

    controller.update_issue_status(1)
    gateway.fail("update_issue_status", RemoteRejection("Status transition not allowed"))
    assert controller.active_issue.status_id == 2
    assert messages[-1][1] == SEVERITY_ERROR


def test_exit_cancel_keeps_running():
    controller, gateway, counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=1))
    _ticks(counter, 5)
    assert controller.request_exit(ExitChoice.CANCEL) is False
    assert controller.is_running
    assert gateway.pending("create_time_entry") == []


def test_exit_discard_drops_time():
    controller, gateway, counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=1))
    _ticks(counter, 5)
    assert controller.request_exit(ExitChoice.DISCARD_AND_EXIT) is True
    assert counter.value() == 0
    assert gateway.pending("create_time_entry") == []


def test_exit_save_waits_for_time_entry():
    controller, gateway, counter, _messages = _make_controller()
    ready: list[bool] = []
    controller.subscribe("exit_ready", lambda: ready.append(True))
    _load(controller, gateway, Issue(id=1))
    _ticks(counter, 5)

    assert controller.request_exit(ExitChoice.SAVE_AND_EXIT) is False
    assert ready == []
    gateway.succeed("create_time_entry")
    assert ready == [True]


def test_exit_save_failure_cancels_exit_and_keeps_time():
    controller, gateway, counter, messages = _make_controller()
    ready: list[bool] = []
    controller.subscribe("exit_ready", lambda: ready.append(True))
    _load(controller, gateway, Issue(id=1))
    _ticks(counter, 5)

    controller.request_exit(ExitChoice.SAVE_AND_EXIT)
    gateway.fail("create_time_entry", NetworkFailure("offline"))
    assert ready == []
    assert counter.value() == 5
    assert messages[-1][1] == SEVERITY_WARNING


def test_exit_when_idle_is_immediate():
    controller, _gateway, _counter, _messages = _make_controller()
    assert controller.request_exit(ExitChoice.SAVE_AND_EXIT) is True



def test_exit_after_stop_waits_for_save_in_flight():
    controller, gateway, counter, _messages = _make_controller()
    ready: list[bool] = []
    controller.subscribe("exit_ready", lambda: ready.append(True))
    _load(controller, gateway, Issue(id=1))
    _ticks(counter, 30)
    controller.stop()
    assert not controller.has_unsaved_time()
    assert controller.snapshot().saving

    assert controller.request_exit(ExitChoice.SAVE_AND_EXIT) is False
    assert len(gateway.pending("create_time_entry")) == 1
    assert ready == []
    gateway.succeed("create_time_entry")
    assert ready == [True]


def test_exit_discard_still_waits_for_dispatched_save():
    controller, gateway, counter, _messages = _make_controller()
    ready: list[bool] = []
    controller.subscribe("exit_ready", lambda: ready.append(True))
    _load(controller, gateway, Issue(id=1))
    _ticks(counter, 30)
    controller.load_issue(2)
    gateway.succeed("fetch_issue", Issue(id=2))
    _ticks(counter, 4)

    assert controller.request_exit(ExitChoice.DISCARD_AND_EXIT) is False
    assert counter.value() == 0
    assert not controller.is_running
    gateway.succeed("create_time_entry")
    assert ready == [True]


def test_switch_with_discard_sends_no_time_entry():
    controller, gateway, counter, messages = _make_controller()
    _load(controller, gateway, Issue(id=1))
    _ticks(counter, 30)

    controller.load_issue(2, save_current_before_switch=False)
    assert gateway.pending("create_time_entry") == []
    assert counter.value() == 0
    assert not controller.is_running
    assert messages[-1][1] == SEVERITY_WARNING
    assert "00:00:30" in messages[-1][0]

    gateway.succeed("fetch_issue", Issue(id=2))
    assert controller.active_issue.id == 2
    assert controller.is_running
    assert counter.value() == 0
    assert gateway.pending("create_time_entry") == []


def test_switch_with_discard_drops_time_kept_after_failed_save():
    controller, gateway, counter, _messages = _make_controller()
    _load(controller, gateway, Issue(id=1))
    _ticks(counter, 10)
    controller.stop(reset_timer_on_error=False)
    gateway.fail("create_time_entry", NetworkFailure("offline"))
    assert controller.has_unsaved_time()

    controller.load_issue(2, save_current_before_switch=False)
    gateway.succeed("fetch_issue", Issue(id=2))
    assert gateway.pending("create_time_entry") == []
    assert controller.active_issue.id == 2
    assert counter.value() == 0
    assert controller.is_running


def test_switch_with_discard_and_no_time_is_silent():
    controller, gateway, _counter, messages = _make_controller()
    _load(controller, gateway, Issue(id=1))
    messages.clear()

    controller.load_issue(2, save_current_before_switch=False)
    assert all(severity != SEVERITY_WARNING for _text, severity, _timeout in messages)
    assert gateway.pending("create_time_entry") == []


def test_create_issue_then_loads_it():
    controller, gateway, _counter, messages = _make_controller()
    controller.create_issue("12", "Write release notes", auto_start=False)
    assert gateway.pending("create_issue")[0][1] == (12, "Write release notes")

    gateway.succeed("create_issue", Issue(id=501, subject="Write release notes"))
    assert "#501" in messages[-1][0]
    assert gateway.history[-1] == ("fetch_issue", (501,))
    gateway.succeed("fetch_issue", Issue(id=501, subject="Write release notes"))
    assert controller.active_issue.id == 501
    assert not controller.is_running


def test_create_issue_keeps_project_identifier():
    controller, gateway, _counter, _messages = _make_controller()
    controller.create_issue(" portal ", "Fix footer")
    assert gateway.pending("create_issue")[0][1] == ("portal", "Fix footer")


def test_create_issue_requires_project_and_subject():
    controller, gateway, _counter, _messages = _make_controller()
    with pytest.raises(InvalidLocalState):
        controller.create_issue("", "subject")
    with pytest.raises(InvalidLocalState):
        controller.create_issue("portal", "   ")
    assert gateway.calls == []


def test_create_issue_failure_is_reported():
    controller, gateway, _counter, messages = _make_controller()
    controller.create_issue("portal", "Fix footer")
    gateway.fail("create_issue", RemoteRejection("Subject cannot be blank", errors=["Subject cannot be blank"]))
    assert messages[-1][1] == SEVERITY_ERROR
    assert controller.active_issue is None
    assert gateway.pending("fetch_issue") == []


def test_subscribe_unknown_event():
    controller, _gateway, _counter, _messages = _make_controller()
    with pytest.raises(ValueError):
        controller.subscribe("nope", lambda: None)


def test_state_changed_emitted_on_tick():
    controller, gateway, counter, _messages = _make_controller()
    states = []
    controller.subscribe("state_changed", states.append)
    _load(controller, gateway, Issue(id=1))
    states.clear()
    _ticks(counter, 2)
    assert [s.elapsed_seconds for s in states] == [1, 2]


@pytest.mark.parametrize(
    "text, expected",
    [
        ("42", 42),
        ("#42", 42),
        (" # 7 ", 7),
        ("https://redmine.example.com/issues/1234", 1234),
        ("https://redmine.example.com/issues/55?tab=history", 55),
        ("abc", None),
        ("", None),
    ],
)
def test_parse_issue_ref(text, expected):
    assert parse_issue_ref(text) == expected
