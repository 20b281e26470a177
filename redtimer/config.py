from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import json
import logging
import sys

from .core import Issue, RECENT_ISSUES_LIMIT


HOTKEY_ACTIONS = ("start_stop", "start", "stop", "show_window")


def default_keyboard_map() -> dict[str, str]:
    mod = "cmd+alt" if sys.platform == "darwin" else "ctrl+alt"
    return {
        "start_stop": f"{mod}+t",
        "start": "",
        "stop": f"{mod}+s",
        "show_window": f"{mod}+r",
    }


@dataclass
class Settings:
    url: str = ""
    api_key: str = ""
    ignore_ssl_errors: bool = False
    timeout_s: float = 15.0
    use_tray_icon: bool = True
    close_to_tray: bool = False
    hotkeys_enabled: bool = True
    keyboard_map: dict[str, str] = field(default_factory=default_keyboard_map)
    last_issue_id: int | None = None
    last_activity_id: int | None = None
    recent_issues: list[Issue] = field(default_factory=list)

    @property
    def is_connection_configured(self) -> bool:
        return bool(self.url.strip() and self.api_key.strip())


def default_settings_data() -> dict[str, object]:
    return {
        "url": "",
        "api_key": "",
        "ignore_ssl_errors": False,
        "timeout_s": 15.0,
        "use_tray_icon": True,
        "close_to_tray": False,
        "hotkeys_enabled": True,
        "keyboard_map": default_keyboard_map(),
        "last_issue_id": None,
        "last_activity_id": None,
        "recent_issues": [],
    }


def _optional_int(raw: object, name: str, logger: logging.Logger) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("settings_invalid_value field=%s value=%r fallback=None", name, raw)
        return None


def _recent_issues_from_raw(raw: object, logger: logging.Logger) -> list[Issue]:
    if not isinstance(raw, list):
        return []
    issues: list[Issue] = []
    seen: set[int] = set()
    for item in raw:
        if not isinstance(item, dict):
            continue
        issue_id = _optional_int(item.get("id"), "recent_issues.id", logger)
        if issue_id is None or issue_id in seen:
            continue
        seen.add(issue_id)
        issues.append(
            Issue(
                id=issue_id,
                subject=str(item.get("subject", "")),
                activity_id=_optional_int(item.get("activity_id"), "recent_issues.activity_id", logger),
                status_id=_optional_int(item.get("status_id"), "recent_issues.status_id", logger),
                status_name=str(item.get("status_name", "")),
                project_name=str(item.get("project_name", "")),
            )
        )
    return issues[:RECENT_ISSUES_LIMIT]


def load_settings(config_path: Path, log: logging.Logger | None = None) -> Settings:
    config_path = Path(config_path)
    logger = log or logging.getLogger("redtimer.config")

    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(json.dumps(default_settings_data(), indent=2), encoding="utf-8")
        logger.info("settings_created path=%s", config_path)

    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.warning("settings_unreadable path=%s error=%s fallback=defaults", config_path, exc)
        raw = {}
    if not isinstance(raw, dict):
        raw = {}

    keyboard_map_raw = raw.get("keyboard_map", {})
    if not isinstance(keyboard_map_raw, dict):
        keyboard_map_raw = {}
    defaults = default_keyboard_map()
    keyboard_map = {action: str(keyboard_map_raw.get(action, defaults[action])) for action in HOTKEY_ACTIONS}

    try:
        timeout_s = float(raw.get("timeout_s", 15.0))
    except (TypeError, ValueError):
        logger.warning("settings_invalid_value field=timeout_s value=%r fallback=15.0", raw.get("timeout_s"))
        timeout_s = 15.0
    if timeout_s <= 0:
        timeout_s = 15.0

    settings = Settings(
        url=str(raw.get("url", "")).strip(),
        api_key=str(raw.get("api_key", "")).strip(),
        ignore_ssl_errors=bool(raw.get("ignore_ssl_errors", False)),
        timeout_s=timeout_s,
        use_tray_icon=bool(raw.get("use_tray_icon", True)),
        close_to_tray=bool(raw.get("close_to_tray", False)),
        hotkeys_enabled=bool(raw.get("hotkeys_enabled", True)),
        keyboard_map=keyboard_map,
        last_issue_id=_optional_int(raw.get("last_issue_id"), "last_issue_id", logger),
        last_activity_id=_optional_int(raw.get("last_activity_id"), "last_activity_id", logger),
        recent_issues=_recent_issues_from_raw(raw.get("recent_issues", []), logger),
    )
    logger.info(
        "settings_loaded path=%s url=%s api_key_set=%s tray=%s hotkeys=%s recent=%s last_issue=%s",
        config_path,
        settings.url,
        bool(settings.api_key),
        settings.use_tray_icon,
        settings.hotkeys_enabled,
        len(settings.recent_issues),
        settings.last_issue_id,
    )
    return settings


def save_settings(config_path: Path, settings: Settings, log: logging.Logger | None = None) -> None:
    config_path = Path(config_path)
    logger = log or logging.getLogger("redtimer.config")
    payload = {
        "url": settings.url,
        "api_key": settings.api_key,
        "ignore_ssl_errors": settings.ignore_ssl_errors,
        "timeout_s": settings.timeout_s,
        "use_tray_icon": settings.use_tray_icon,
        "close_to_tray": settings.close_to_tray,
        "hotkeys_enabled": settings.hotkeys_enabled,
        "keyboard_map": {action: settings.keyboard_map.get(action, "") for action in HOTKEY_ACTIONS},
        "last_issue_id": settings.last_issue_id,
        "last_activity_id": settings.last_activity_id,
        "recent_issues": [
            {
                "id": issue.id,
                "subject": issue.subject,
                "activity_id": issue.activity_id,
                "status_id": issue.status_id,
                "status_name": issue.status_name,
                "project_name": issue.project_name,
            }
            for issue in settings.recent_issues[:RECENT_ISSUES_LIMIT]
        ],
    }
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.info(
        "settings_saved path=%s recent=%s last_issue=%s last_activity=%s",
        config_path,
        len(payload["recent_issues"]),
        settings.last_issue_id,
        settings.last_activity_id,
    )
