import json

from redtimer.config import HOTKEY_ACTIONS, Settings, default_keyboard_map, load_settings, save_settings
from redtimer.core import Issue


def test_missing_file_is_created_with_defaults(tmp_path):
    path = tmp_path / "nested" / "redtimer.json"
    settings = load_settings(path)
    assert path.exists()
    assert settings.url == ""
    assert not settings.is_connection_configured
    assert settings.keyboard_map == default_keyboard_map()
    assert settings.recent_issues == []
    assert json.loads(path.read_text(encoding="utf-8"))["use_tray_icon"] is True


def test_round_trip_keeps_session_state(tmp_path):
    path = tmp_path / "redtimer.json"
    settings = Settings(
        url="https://redmine.example.com",
        api_key="secret",
        ignore_ssl_errors=True,
        last_issue_id=42,
        last_activity_id=9,
        recent_issues=[Issue(id=42, subject="Fix login", status_id=2, status_name="In Progress")],
    )
    save_settings(path, settings)
    loaded = load_settings(path)
    assert loaded.is_connection_configured
    assert loaded.ignore_ssl_errors
    assert loaded.last_issue_id == 42
    assert loaded.last_activity_id == 9
    assert loaded.recent_issues == settings.recent_issues


def test_invalid_values_fall_back(tmp_path):
    path = tmp_path / "redtimer.json"
    path.write_text(
        json.dumps(
            {
                "timeout_s": "slow",
                "last_issue_id": "abc",
                "keyboard_map": {"start_stop": "ctrl+shift+x"},
                "recent_issues": [{"id": 1}, {"id": 1}, {"subject": "no id"}, "junk"],
            }
        ),
        encoding="utf-8",
    )
    settings = load_settings(path)
    assert settings.timeout_s == 15.0
    assert settings.last_issue_id is None
    assert settings.keyboard_map["start_stop"] == "ctrl+shift+x"
    assert set(settings.keyboard_map) == set(HOTKEY_ACTIONS)
    assert [i.id for i in settings.recent_issues] == [1]


def test_unreadable_json_uses_defaults(tmp_path):
    path = tmp_path / "redtimer.json"
    path.write_text("{not json", encoding="utf-8")
    settings = load_settings(path)
    assert settings.url == ""
    assert settings.hotkeys_enabled


def test_recent_issues_are_capped(tmp_path):
    path = tmp_path / "redtimer.json"
    path.write_text(json.dumps({"recent_issues": [{"id": i} for i in range(1, 20)]}), encoding="utf-8")
    assert len(load_settings(path).recent_issues) == 10
