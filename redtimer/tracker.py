"""Time tracking state machine.

The controller is Idle (no issue), Loaded (issue, counter halted) or Running
(issue, counter ticking). It is the only writer of the active issue and the
counter. All gateway completions arrive through ``poll()`` on the thread that
owns the controller.
"""

from __future__ import annotations

from dataclasses import replace
from enum import Enum
from typing import Callable
import logging
import re

from .core import (
    Activity,
    ElapsedCounter,
    Issue,
    IssueStatus,
    RecentIssueRegistry,
    TimeEntry,
    TimerState,
    format_duration,
    now_local,
)
from .redmine import GatewayError, RemoteIssueGateway


SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"
MESSAGE_TIMEOUT_MS = 5000

EVENTS = (
    "state_changed",
    "message",
    "time_entry_saved",
    "recent_issues_changed",
    "activities_changed",
    "statuses_changed",
    "exit_ready",
)

_LOG_LEVELS = {
    SEVERITY_INFO: logging.INFO,
    SEVERITY_WARNING: logging.WARNING,
    SEVERITY_ERROR: logging.ERROR,
}

_ISSUE_REF = re.compile(r"^(?:#\s*)?(\d+)$|/issues/(\d+)(?:[/?#].*)?$")


class InvalidLocalState(Exception):
    pass


class StaleResponse(Exception):
    pass


class ExitChoice(Enum):
    CANCEL = "cancel"
    SAVE_AND_EXIT = "save_and_exit"
    DISCARD_AND_EXIT = "discard_and_exit"


def parse_issue_ref(text: str) -> int | None:
    m = _ISSUE_REF.search(text.strip())
    if not m:
        return None
    return int(m.group(1) or m.group(2))


class TimeTrackingController:
    def __init__(
        self,
        gateway: RemoteIssueGateway,
        counter: ElapsedCounter | None = None,
        recent: RecentIssueRegistry | None = None,
        activity_id: int | None = None,
        now: Callable = now_local,
    ) -> None:
        self.gateway = gateway
        self.counter = counter if counter is not None else ElapsedCounter()
        self.recent = recent if recent is not None else RecentIssueRegistry()
        self.log = logging.getLogger("redtimer.tracker")
        self._now = now
        self._issue: Issue | None = None
        self._activity_id = activity_id
        self._activities: list[Activity] = []
        self._statuses: list[IssueStatus] = []
        self._requested_issue_id: int | None = None
        # Each fresh run gets a new epoch; a save completion only touches the
        # counter when its epoch is still the current one.
        self._run_epoch = 0
        self._saves_in_flight: dict[int, TimeEntry] = {}
        self._exit_pending = False
        self._listeners: dict[str, list[Callable]] = {name: [] for name in EVENTS}
        self.counter.subscribe(self._on_tick)

    # -- queries --------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.counter.is_running

    @property
    def active_issue(self) -> Issue | None:
        return self._issue

    @property
    def activity_id(self) -> int | None:
        return self._activity_id

    def snapshot(self) -> TimerState:
        return TimerState(
            running=self.counter.is_running,
            elapsed_seconds=self.counter.value(),
            active_issue=self._issue,
            activity_id=self._activity_id,
            saving=bool(self._saves_in_flight),
        )

    def recent_issues(self) -> list[Issue]:
        return self.recent.list()

    def activities(self) -> list[Activity]:
        return list(self._activities)

    def issue_statuses(self) -> list[IssueStatus]:
        return list(self._statuses)

    def has_unsaved_time(self) -> bool:
        return self.counter.is_running or self._holds_unsaved_time()

    # -- events ---------------------------------------------------------------

    def subscribe(self, event: str, callback: Callable) -> None:
        if event not in self._listeners:
            raise ValueError(f"unknown event {event!r}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args: object) -> None:
        for callback in list(self._listeners[event]):
            callback(*args)

    def _notify_state(self) -> None:
        self._emit("state_changed", self.snapshot())

    def message(self, text: str, severity: str = SEVERITY_INFO, timeout_ms: int = MESSAGE_TIMEOUT_MS) -> None:
        self.log.log(_LOG_LEVELS.get(severity, logging.INFO), "message severity=%s text=%s", severity, text)
        self._emit("message", text, severity, timeout_ms)

    def _refuse(self, text: str) -> None:
        self.message(text, SEVERITY_WARNING)
        raise InvalidLocalState(text)

    def _on_tick(self, value: int) -> None:
        self._notify_state()

    def poll(self) -> None:
        """Apply finished gateway calls and advance the counter."""
        self.gateway.drain()
        self.counter.poll()

    # -- issue loading ----------------------------------------------------------

    def load_issue(self, issue_id: int, auto_start: bool = True, save_current_before_switch: bool = True) -> None:
        issue_id = int(issue_id)
        previous = self._issue
        if previous is not None and previous.id != issue_id:
            self._settle_before_switch(save_current_before_switch)

        self._requested_issue_id = issue_id
        self.log.info(
            "issue_load_requested issue=%s auto_start=%s previous=%s",
            issue_id,
            auto_start,
            previous.id if previous else None,
        )
        self.gateway.fetch_issue(
            issue_id,
            on_success=lambda issue: self._issue_loaded(issue_id, issue, auto_start),
            on_error=lambda exc: self._issue_load_failed(issue_id, exc),
        )

    def load_issue_from_text(self, text: str, auto_start: bool = True) -> None:
        issue_id = parse_issue_ref(text)
        if issue_id is None:
            self._refuse(f"'{text.strip()}' is not a valid issue number.")
            return
        self.load_issue(issue_id, auto_start=auto_start)

    def load_recent_issue(self, index: int, auto_start: bool = True) -> None:
        issue = self.recent.get(index)
        if issue is None:
            self._refuse("No recent issue at that position.")
            return
        self.load_issue(issue.id, auto_start=auto_start)

    def create_issue(self, project_id: int | str, subject: str, auto_start: bool = True) -> None:
        project = str(project_id).strip()
        subject = subject.strip()
        if not project or not subject:
            self._refuse("A project and a subject are required to create an issue.")
            return
        self.log.info("issue_create_requested project=%s subject=%r", project, subject)
        self.gateway.create_issue(
            int(project) if project.isdigit() else project,
            subject,
            on_success=lambda issue: self._issue_created(issue, auto_start),
            on_error=lambda exc: self._gateway_failed("Could not create the issue", exc),
        )

    def _issue_created(self, issue: Issue, auto_start: bool) -> None:
        self.log.info("issue_created issue=%s subject=%r", issue.id, issue.subject)
        self.message(f"Created issue {issue.title}")
        self.load_issue(issue.id, auto_start=auto_start)

    def _settle_before_switch(self, save: bool) -> None:
        previous = self._issue
        if self.counter.is_running or self._holds_unsaved_time():
            if save:
                self.stop()
            else:
                seconds = self.counter.value()
                self.counter.stop()
                if seconds > 0:
                    self.message(f"Discarded {format_duration(seconds)} tracked on #{previous.id}.", SEVERITY_WARNING)
                    self.log.info("time_discarded issue=%s seconds=%s", previous.id, seconds)
        if self.counter.value() or self._run_epoch in self._saves_in_flight:
            self._begin_epoch()
        self._notify_state()

    def _check_current_load(self, requested_id: int) -> None:
        if requested_id != self._requested_issue_id:
            raise StaleResponse(f"issue {requested_id} superseded by {self._requested_issue_id}")

    def _issue_loaded(self, requested_id: int, issue: Issue, auto_start: bool) -> None:
        try:
            self._check_current_load(requested_id)
            if issue.id != requested_id:
                raise StaleResponse(f"response for issue {issue.id} while waiting for {requested_id}")
        except StaleResponse as exc:
            self.log.info("stale_response_discarded op=fetch_issue reason=%s", exc)
            return

        self._requested_issue_id = None
        previous = self._issue
        if self.counter.is_running and previous is not None and previous.id != issue.id:
            # The timer was restarted on the old issue while this load was in flight.
            self._settle_before_switch(save=True)

        if previous is not None and previous.id == issue.id and previous.activity_id is not None:
            issue = replace(issue, activity_id=previous.activity_id)
        self._issue = issue
        if issue.activity_id is not None:
            self._activity_id = issue.activity_id
        self.recent.add(issue)
        self.log.info("issue_loaded issue=%s subject=%r status=%s", issue.id, issue.subject, issue.status_id)
        self._emit("recent_issues_changed", self.recent.list())
        self._refresh_issue_metadata(issue)
        self.message(f"Loaded issue {issue.title}")
        self._notify_state()

        if auto_start and not self.counter.is_running:
            self.start()

    def _issue_load_failed(self, requested_id: int, exc: GatewayError) -> None:
        try:
            self._check_current_load(requested_id)
        except StaleResponse as stale:
            self.log.info("stale_response_discarded op=fetch_issue reason=%s", stale)
            return
        self._requested_issue_id = None
        self.log.warning("issue_load_failed issue=%s kind=%s error=%s", requested_id, exc.kind, exc.message)
        self.message(f"Could not load issue #{requested_id}: {exc.message}", SEVERITY_ERROR)

    def _refresh_issue_metadata(self, issue: Issue) -> None:
        self.refresh()
        if issue.activity_id is None:
            self.gateway.fetch_latest_activity(
                issue.id,
                on_success=lambda activity_id: self._latest_activity_loaded(issue.id, activity_id),
                on_error=lambda exc: self.log.warning(
                    "latest_activity_failed issue=%s error=%s", issue.id, exc.message
                ),
            )

    def refresh(self) -> None:
        self.gateway.fetch_activities(
            on_success=self._activities_loaded,
            on_error=lambda exc: self._gateway_failed("Could not load activities", exc),
        )
        self.gateway.fetch_issue_statuses(
            on_success=self._statuses_loaded,
            on_error=lambda exc: self._gateway_failed("Could not load issue statuses", exc),
        )

    def _activities_loaded(self, activities: list[Activity]) -> None:
        self._activities = list(activities)
        known = {a.id for a in self._activities}
        if self._activity_id not in known:
            preferred = self._issue.activity_id if self._issue is not None else None
            if preferred in known:
                self._activity_id = preferred
            else:
                default = next((a for a in self._activities if a.is_default), None)
                fallback = default or (self._activities[0] if self._activities else None)
                self._activity_id = fallback.id if fallback else None
        self.log.info("activities_loaded count=%s selected=%s", len(self._activities), self._activity_id)
        self._emit("activities_changed", self.activities())
        self._notify_state()

    def _statuses_loaded(self, statuses: list[IssueStatus]) -> None:
        self._statuses = list(statuses)
        self.log.info("issue_statuses_loaded count=%s", len(self._statuses))
        self._emit("statuses_changed", self.issue_statuses())

    def _latest_activity_loaded(self, issue_id: int, activity_id: int | None) -> None:
        if self._issue is None or self._issue.id != issue_id:
            self.log.info("stale_response_discarded op=fetch_latest_activity issue=%s", issue_id)
            return
        if activity_id is None:
            return
        if self._activities and activity_id not in {a.id for a in self._activities}:
            return
        self._activity_id = activity_id
        self._issue = replace(self._issue, activity_id=activity_id)
        self.log.info("latest_activity_applied issue=%s activity=%s", issue_id, activity_id)
        self._notify_state()

    # -- timer --------------------------------------------------------------------

    def start(self) -> str:
        """Start tracking on the active issue.

        While already running the tracked time is saved first and a fresh run
        begins, so a resume never merges unrelated durations.
        """
        if self._issue is None:
            self._refuse("Please select an issue before starting the timer.")
        if self.counter.is_running:
            self.stop(stop_timer_after_saving=False)
            self.log.info("timer_restarted issue=%s", self._issue.id)
            return "restarted"
        if self._run_epoch in self._saves_in_flight:
            # The halted value is already on its way to Redmine.
            self._begin_epoch()
        self.counter.start()
        self.log.info("timer_started issue=%s elapsed=%s", self._issue.id, self.counter.value())
        self.message(f"Time tracking started for #{self._issue.id}.")
        self._notify_state()
        return "started"

    def stop(self, reset_timer_on_error: bool = True, stop_timer_after_saving: bool = True) -> str:
        if not self.counter.is_running and not self._holds_unsaved_time():
            return "noop"

        self.counter.stop()
        issue = self._issue
        elapsed = self.counter.value()
        if elapsed == 0:
            result = "stopped"
            self.log.info("timer_stopped issue=%s elapsed=0 save=skipped", issue.id)
        else:
            self._dispatch_save(issue, elapsed, reset_timer_on_error)
            result = "saving"

        if not stop_timer_after_saving:
            self._begin_epoch()
            self.counter.start()
        self._notify_state()
        return result

    def start_stop(self) -> str:
        if self.counter.is_running:
            return self.stop()
        return self.start()

    def _holds_unsaved_time(self) -> bool:
        return (
            self._issue is not None
            and self.counter.value() > 0
            and self._run_epoch not in self._saves_in_flight
        )

    def _begin_epoch(self) -> None:
        self._run_epoch += 1
        self.counter.reset()

    def _dispatch_save(self, issue: Issue, elapsed: int, reset_timer_on_error: bool) -> None:
        epoch = self._run_epoch
        entry = TimeEntry(
            issue_id=issue.id,
            activity_id=self._activity_id,
            duration_seconds=elapsed,
            spent_at=self._now(),
        )
        self._saves_in_flight[epoch] = entry
        self.log.info(
            "time_entry_dispatched issue=%s activity=%s seconds=%s epoch=%s",
            entry.issue_id,
            entry.activity_id,
            entry.duration_seconds,
            epoch,
        )
        self.gateway.create_time_entry(
            entry,
            on_success=lambda _result: self._time_entry_saved(epoch, entry),
            on_error=lambda exc: self._time_entry_failed(epoch, entry, exc, reset_timer_on_error),
        )

    def _time_entry_saved(self, epoch: int, entry: TimeEntry) -> None:
        self._saves_in_flight.pop(epoch, None)
        if epoch == self._run_epoch:
            self.counter.reset()
        self.log.info("time_entry_saved issue=%s seconds=%s", entry.issue_id, entry.duration_seconds)
        self.message(f"Saved {format_duration(entry.duration_seconds)} on #{entry.issue_id}.")
        self._emit("time_entry_saved")
        self._notify_state()
        if self._exit_pending and not self._saves_in_flight:
            self._exit_pending = False
            self.log.info("exit_ready")
            self._emit("exit_ready")

    def _time_entry_failed(self, epoch: int, entry: TimeEntry, exc: GatewayError, reset_timer_on_error: bool) -> None:
        self._saves_in_flight.pop(epoch, None)
        current = epoch == self._run_epoch
        kept = False
        if reset_timer_on_error:
            if current:
                self.counter.reset()
        elif current:
            kept = True
        elif self._issue is not None and self._issue.id == entry.issue_id:
            # A fresh run already started on the same issue; fold the time back in.
            self.counter.add(entry.duration_seconds)
            kept = True

        self.log.warning(
            "time_entry_failed issue=%s seconds=%s kind=%s retryable=%s kept=%s error=%s",
            entry.issue_id,
            entry.duration_seconds,
            exc.kind,
            exc.retryable,
            kept,
            exc.message,
        )
        text = f"Could not save {format_duration(entry.duration_seconds)} on #{entry.issue_id}: {exc.message}"
        if kept:
            text += " The tracked time was kept; stop again to retry."
        self.message(text, SEVERITY_ERROR)
        if self._exit_pending:
            self._exit_pending = False
            self.message("Exit cancelled because the tracked time could not be saved.", SEVERITY_WARNING)
        self._notify_state()

    # -- issue status and activity ---------------------------------------------------

    def update_issue_status(self, status_id: int) -> None:
        issue = self._issue
        if issue is None:
            self._refuse("Please select an issue before changing its status.")
            return
        status_id = int(status_id)
        self.log.info("issue_status_update_requested issue=%s status=%s", issue.id, status_id)
        self.gateway.update_issue_status(
            issue.id,
            status_id,
            on_success=lambda _result: self._issue_status_updated(issue.id, status_id),
            on_error=lambda exc: self._gateway_failed(f"Could not update the status of #{issue.id}", exc),
        )

    def _issue_status_updated(self, issue_id: int, status_id: int) -> None:
        if self._issue is None or self._issue.id != issue_id:
            self.log.info("stale_response_discarded op=update_issue_status issue=%s", issue_id)
            return
        name = next((s.name for s in self._statuses if s.id == status_id), self._issue.status_name)
        self._issue = replace(self._issue, status_id=status_id, status_name=name)
        self.recent.add(self._issue)
        self.log.info("issue_status_updated issue=%s status=%s", issue_id, status_id)
        self.message(f"Issue #{issue_id} status changed to {name or status_id}.")
        self._emit("recent_issues_changed", self.recent.list())
        self._notify_state()

    def select_activity(self, activity_id: int) -> None:
        activity_id = int(activity_id)
        if activity_id not in {a.id for a in self._activities}:
            self._refuse(f"Activity {activity_id} is not available.")
            return
        self._activity_id = activity_id
        if self._issue is not None:
            self._issue = replace(self._issue, activity_id=activity_id)
        self.log.info("activity_selected activity=%s", activity_id)
        self._notify_state()

    def _gateway_failed(self, context: str, exc: GatewayError) -> None:
        self.log.warning("gateway_call_failed context=%r kind=%s error=%s", context, exc.kind, exc.message)
        self.message(f"{context}: {exc.message}", SEVERITY_ERROR)

    # -- exit -----------------------------------------------------------------------

    def request_exit(self, choice: ExitChoice) -> bool:
        """Return True when the process may terminate right away.

        While any time entry is still in flight, ``exit_ready`` is emitted
        once every pending entry has been stored. Discarding drops only the
        unsaved time, never a save that was already dispatched.
        """
        self.log.info(
            "exit_requested choice=%s running=%s saving=%s",
            choice.value,
            self.counter.is_running,
            bool(self._saves_in_flight),
        )
        if choice is ExitChoice.CANCEL:
            return False
        if choice is ExitChoice.DISCARD_AND_EXIT:
            self.counter.stop()
            if self._saves_in_flight:
                self._begin_epoch()
            else:
                self.counter.reset()
        else:
            self.stop(reset_timer_on_error=False)
        if self._saves_in_flight:
            self._exit_pending = True
            return False
        return True
