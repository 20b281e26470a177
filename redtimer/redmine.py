"""Redmine access: the gateway interface the tracker talks to, a blocking REST
client built on ``requests`` and a worker thread that runs the client calls
off the UI thread.

Completions never run on the worker. They are queued and applied when the
owner calls ``drain()`` from its event loop, so callbacks may touch tracker
state without locking.
"""

from __future__ import annotations

from queue import Empty, Queue
from typing import Any, Callable
import logging
import threading

import requests

from .core import Activity, Issue, IssueStatus, TimeEntry


SuccessCallback = Callable[[Any], None]
ErrorCallback = Callable[["GatewayError"], None]


class GatewayError(Exception):
    kind = "gateway_error"

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.status_code = status_code


class NetworkFailure(GatewayError):
    kind = "network_failure"

    def __init__(self, message: str, *, retryable: bool = True, status_code: int | None = None) -> None:
        super().__init__(message, retryable=retryable, status_code=status_code)


class RemoteRejection(GatewayError):
    kind = "remote_rejection"

    def __init__(
        self,
        message: str,
        *,
        errors: list[str] | None = None,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable, status_code=status_code)
        self.errors = list(errors or [])


class RemoteIssueGateway:
    """Asynchronous view of the issue tracker.

    Every call returns immediately; exactly one of ``on_success`` or
    ``on_error`` is invoked later from ``drain()``.
    """

    def fetch_issue(self, issue_id: int, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        raise NotImplementedError

    def fetch_activities(self, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        raise NotImplementedError

    def fetch_issue_statuses(self, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        raise NotImplementedError

    def fetch_latest_activity(self, issue_id: int, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        raise NotImplementedError

    def fetch_assigned_issues(self, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        raise NotImplementedError

    def create_time_entry(self, entry: TimeEntry, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        raise NotImplementedError

    def update_issue_status(
        self,
        issue_id: int,
        status_id: int,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        raise NotImplementedError

    def create_issue(
        self,
        project_id: int | str,
        subject: str,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        raise NotImplementedError

    def drain(self) -> int:
        return 0

    def close(self) -> None:
        return None


def _error_messages(response: requests.Response) -> list[str]:
    try:
        payload = response.json()
    except ValueError:
        return []
    if not isinstance(payload, dict):
        return []
    errors = payload.get("errors", [])
    if isinstance(errors, str):
        return [errors]
    return [str(e) for e in errors]


def _issue_from_payload(data: dict[str, Any]) -> Issue:
    status = data.get("status") or {}
    project = data.get("project") or {}
    return Issue(
        id=int(data["id"]),
        subject=str(data.get("subject", "")),
        status_id=int(status["id"]) if "id" in status else None,
        status_name=str(status.get("name", "")),
        project_name=str(project.get("name", "")),
    )


class RedmineClient:
    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        verify: bool = True,
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.verify = verify
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"X-Redmine-API-Key": api_key, "Accept": "application/json"})
        self.log = logging.getLogger("redtimer.redmine")

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if not self.url:
            raise RemoteRejection("Redmine URL is not configured.")
        url = f"{self.url}/{path.lstrip('/')}"
        self.log.info("redmine_request method=%s path=%s", method, path)
        try:
            response = self.session.request(method, url, timeout=self.timeout, verify=self.verify, **kwargs)
        except requests.exceptions.Timeout as exc:
            raise NetworkFailure(f"Redmine request timed out: {method} {path}") from exc
        except requests.exceptions.ConnectionError as exc:
            raise NetworkFailure(f"Cannot connect to Redmine at {self.url}") from exc
        except requests.exceptions.RequestException as exc:
            raise NetworkFailure(f"Redmine request failed: {exc}") from exc

        status = response.status_code
        self.log.info("redmine_response method=%s path=%s status=%s", method, path, status)
        if status >= 500:
            raise NetworkFailure(f"Redmine server error {status} for {method} {path}", status_code=status)
        if status >= 400:
            errors = _error_messages(response)
            if status in (401, 403):
                message = "Redmine refused the request; check the API key and permissions."
            elif status == 404:
                message = f"Not found on Redmine: {path}"
            else:
                message = f"Redmine rejected {method} {path} ({status})"
            if errors:
                message = f"{message}: {'; '.join(errors)}"
            raise RemoteRejection(message, errors=errors, status_code=status)
        if status == 204 or not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteRejection(f"Unexpected non-JSON response for {method} {path}", status_code=status) from exc
        return data if isinstance(data, dict) else {}

    def fetch_issue(self, issue_id: int) -> Issue:
        data = self._request("GET", f"issues/{int(issue_id)}.json")
        if "issue" not in data:
            raise RemoteRejection(f"Issue #{issue_id} missing from Redmine response")
        return _issue_from_payload(data["issue"])

    def fetch_activities(self) -> list[Activity]:
        data = self._request("GET", "enumerations/time_entry_activities.json")
        return [
            Activity(id=int(a["id"]), name=str(a.get("name", "")), is_default=bool(a.get("is_default", False)))
            for a in data.get("time_entry_activities", [])
            if a.get("active", True)
        ]

    def fetch_issue_statuses(self) -> list[IssueStatus]:
        data = self._request("GET", "issue_statuses.json")
        return [
            IssueStatus(id=int(s["id"]), name=str(s.get("name", "")), is_closed=bool(s.get("is_closed", False)))
            for s in data.get("issue_statuses", [])
        ]

    def fetch_latest_activity(self, issue_id: int) -> int | None:
        data = self._request("GET", "time_entries.json", params={"issue_id": int(issue_id), "limit": 1})
        entries = data.get("time_entries", [])
        if not entries:
            return None
        activity = entries[0].get("activity") or {}
        return int(activity["id"]) if "id" in activity else None

    def fetch_assigned_issues(self, limit: int = 100) -> list[Issue]:
        data = self._request(
            "GET",
            "issues.json",
            params={"assigned_to_id": "me", "status_id": "open", "sort": "updated_on:desc", "limit": limit},
        )
        return [_issue_from_payload(i) for i in data.get("issues", [])]

    def create_time_entry(self, entry: TimeEntry) -> int | None:
        body: dict[str, Any] = {
            "issue_id": entry.issue_id,
            "hours": entry.hours,
            "spent_on": entry.spent_at.date().isoformat(),
            "comments": "",
        }
        if entry.activity_id is not None:
            body["activity_id"] = entry.activity_id
        data = self._request("POST", "time_entries.json", json={"time_entry": body})
        created = data.get("time_entry") or {}
        return int(created["id"]) if "id" in created else None

    def update_issue_status(self, issue_id: int, status_id: int) -> None:
        self._request("PUT", f"issues/{int(issue_id)}.json", json={"issue": {"status_id": int(status_id)}})

    def create_issue(self, project_id: int | str, subject: str, description: str = "") -> Issue:
        body: dict[str, Any] = {"project_id": project_id, "subject": subject}
        if description:
            body["description"] = description
        data = self._request("POST", "issues.json", json={"issue": body})
        if "issue" not in data:
            raise RemoteRejection("Created issue missing from Redmine response")
        return _issue_from_payload(data["issue"])


Job = tuple[str, Callable[[], Any], SuccessCallback, ErrorCallback]


class BackgroundGateway(RemoteIssueGateway):
    """Runs ``RedmineClient`` calls on a single worker thread.

    One worker keeps requests in submission order, so a save dispatched before
    a fetch also reaches the server first.
    """

    def __init__(self, client: RedmineClient) -> None:
        self.client = client
        self.log = logging.getLogger("redtimer.redmine")
        self._jobs: Queue[Job | None] = Queue()
        self._results: Queue[tuple[Callable[[Any], None], Any]] = Queue()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="redtimer-gateway", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._jobs.put(None)
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def close(self) -> None:
        self.stop()

    def reconfigure(self, client: RedmineClient) -> None:
        self.client = client
        self.log.info("gateway_reconfigured url=%s", client.url)

    def _submit(self, label: str, func: Callable[[], Any], on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        self.log.info("gateway_job_queued job=%s", label)
        self._jobs.put((label, func, on_success, on_error))

    def _run(self) -> None:
        while True:
            job = self._jobs.get()
            if job is None:
                break
            label, func, on_success, on_error = job
            try:
                result = func()
            except GatewayError as exc:
                self.log.warning("gateway_job_failed job=%s kind=%s error=%s", label, exc.kind, exc.message)
                self._results.put((on_error, exc))
            except Exception as exc:
                self.log.exception("gateway_job_crashed job=%s", label)
                self._results.put((on_error, GatewayError(f"Unexpected error during {label}: {exc}")))
            else:
                self._results.put((on_success, result))

    def drain(self) -> int:
        applied = 0
        while True:
            try:
                callback, payload = self._results.get_nowait()
            except Empty:
                break
            callback(payload)
            applied += 1
        return applied

    def fetch_issue(self, issue_id: int, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        client = self.client
        self._submit(f"fetch_issue:{issue_id}", lambda: client.fetch_issue(issue_id), on_success, on_error)

    def fetch_activities(self, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        self._submit("fetch_activities", self.client.fetch_activities, on_success, on_error)

    def fetch_issue_statuses(self, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        self._submit("fetch_issue_statuses", self.client.fetch_issue_statuses, on_success, on_error)

    def fetch_latest_activity(self, issue_id: int, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        client = self.client
        self._submit(
            f"fetch_latest_activity:{issue_id}",
            lambda: client.fetch_latest_activity(issue_id),
            on_success,
            on_error,
        )

    def fetch_assigned_issues(self, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        self._submit("fetch_assigned_issues", self.client.fetch_assigned_issues, on_success, on_error)

    def create_time_entry(self, entry: TimeEntry, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        client = self.client
        self._submit(
            f"create_time_entry:{entry.issue_id}",
            lambda: client.create_time_entry(entry),
            on_success,
            on_error,
        )

    def update_issue_status(
        self,
        issue_id: int,
        status_id: int,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        client = self.client
        self._submit(
            f"update_issue_status:{issue_id}",
            lambda: client.update_issue_status(issue_id, status_id),
            on_success,
            on_error,
        )

    def create_issue(
        self,
        project_id: int | str,
        subject: str,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        client = self.client
        self._submit(
            f"create_issue:{project_id}",
            lambda: client.create_issue(project_id, subject),
            on_success,
            on_error,
        )
