from __future__ import annotations

import logging
from typing import Callable
import sys
import time

from .config import HOTKEY_ACTIONS


HotkeyHandler = Callable[[str], None]
ParsedCombo = tuple[frozenset[str], str]

ACTION_TITLES = {
    "start_stop": "Start/Stop",
    "start": "Start",
    "stop": "Stop",
    "show_window": "Show Window",
}

MODIFIERS = ("cmd", "ctrl", "alt", "shift")


def normalize_combo_string(combo: str) -> str:
    parts = [p.strip().lower() for p in combo.split("+") if p.strip()]
    if not parts:
        return ""
    mods: list[str] = []
    key = ""
    for part in parts:
        p = {"command": "cmd", "win": "cmd", "super": "cmd", "option": "alt", "control": "ctrl"}.get(part, part)
        if p in MODIFIERS:
            if p not in mods:
                mods.append(p)
        else:
            key = p
    mods.sort(key=MODIFIERS.index)
    if not key:
        return "+".join(mods)
    return "+".join([*mods, key])


def parse_combo_string(combo: str) -> ParsedCombo | None:
    norm = normalize_combo_string(combo)
    if not norm:
        return None
    parts = norm.split("+")
    key = parts[-1]
    if key in MODIFIERS:
        return None
    return frozenset(parts[:-1]), key


def human_combo_label(combo: str) -> str:
    norm = normalize_combo_string(combo)
    if not norm:
        return ""
    parts = norm.split("+")
    if sys.platform == "darwin":
        return "".join({"cmd": "⌘", "alt": "⌥", "ctrl": "⌃", "shift": "⇧"}.get(p, p.upper()) for p in parts)
    return "+".join({"cmd": "Win", "alt": "Alt", "ctrl": "Ctrl", "shift": "Shift"}.get(p, p.upper()) for p in parts)


def find_duplicate_bindings(keyboard_map: dict[str, str]) -> tuple[str, list[str]] | None:
    seen: dict[str, list[str]] = {}
    for action, combo in keyboard_map.items():
        norm = normalize_combo_string(combo)
        if not norm:
            continue
        seen.setdefault(norm, []).append(ACTION_TITLES.get(action, action))
    for combo, actions in seen.items():
        if len(actions) > 1:
            return combo, actions
    return None


class HotkeyBackend:
    """Global keyboard shortcuts through a ``pynput`` listener thread.

    Matched actions are handed to ``on_action`` from the listener thread; the
    owner queues them for its own loop.
    """

    def __init__(self, on_action: HotkeyHandler, keyboard_map: dict[str, str], enabled: bool = True) -> None:
        self.on_action = on_action
        self._listener = None
        self.available = False
        self.error: str | None = None
        self.log = logging.getLogger("redtimer.hotkeys")
        self._pressed_mods: set[str] = set()
        self._fired_keys: set[str] = set()
        self._last_action_at: dict[str, float] = {}
        self._repeat_guard_ms = 700
        self.enabled = bool(enabled)
        self.keyboard_map = dict(keyboard_map)
        self._parsed_bindings: dict[str, ParsedCombo] = {}
        self._reload_parsed_bindings()

    def start(self) -> None:
        if not self.enabled:
            self.available = False
            self.error = "keyboard hotkeys disabled in settings"
            self.log.info("hotkeys_disabled")
            return
        try:
            from pynput import keyboard  # type: ignore
        except Exception as exc:  # pragma: no cover
            self.error = f"pynput unavailable: {exc}"
            self.available = False
            return

        self.log.info("hotkeys_backend_start platform=%s bindings=%s", sys.platform, self.keyboard_map)
        try:
            self._listener = keyboard.Listener(
                on_press=self._make_on_press(keyboard),
                on_release=self._make_on_release(keyboard),
            )
            self._listener.start()
            self.available = True
        except Exception as exc:  # pragma: no cover
            self.error = f"global hotkeys unavailable: {exc}"
            self.log.exception("hotkeys_backend_failed")
            self.available = False

    def reload_bindings(self, keyboard_map: dict[str, str], enabled: bool | None = None) -> None:
        if enabled is not None:
            self.enabled = bool(enabled)
        self.keyboard_map = dict(keyboard_map)
        self._reload_parsed_bindings()
        self.log.info("hotkeys_bindings_reloaded enabled=%s %s", self.enabled, self.keyboard_map)

    def stop(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
        self.available = False

    def _reload_parsed_bindings(self) -> None:
        parsed: dict[str, ParsedCombo] = {}
        for action in HOTKEY_ACTIONS:
            combo = self.keyboard_map.get(action, "")
            if not combo:
                continue
            p = parse_combo_string(combo)
            if p is None:
                self.log.warning("hotkey_binding_invalid action=%s combo=%r", action, combo)
                continue
            parsed[action] = p
        self._parsed_bindings = parsed

    def match(self, token: str) -> str | None:
        for action, (req_mods, req_key) in self._parsed_bindings.items():
            if req_key == token and req_mods == frozenset(self._pressed_mods):
                return action
        return None

    def _modifier_name(self, key: object, keyboard_module: object) -> str | None:
        Key = getattr(keyboard_module, "Key")
        if key in {Key.cmd, Key.cmd_l, Key.cmd_r}:
            return "cmd"
        if key in {Key.alt, Key.alt_l, Key.alt_r, getattr(Key, "alt_gr", None)}:
            return "alt"
        if key in {Key.ctrl, Key.ctrl_l, Key.ctrl_r}:
            return "ctrl"
        if key in {Key.shift, Key.shift_l, Key.shift_r}:
            return "shift"
        return None

    def _key_token(self, key: object, keyboard_module: object) -> str | None:
        # Modifier state changes the reported char (ctrl+t -> '\x14', option+t -> '†').
        if self._listener is not None:
            try:
                key = self._listener.canonical(key)
            except Exception:
                pass
        KeyCode = getattr(keyboard_module, "KeyCode")
        if isinstance(key, KeyCode):
            ch = getattr(key, "char", None)
            return str(ch).lower() if ch else None
        key_name = getattr(key, "name", None)
        return str(key_name).lower() if key_name else None

    def _make_on_press(self, keyboard_module: object):
        def _on_press(key: object) -> None:
            mod = self._modifier_name(key, keyboard_module)
            if mod:
                self._pressed_mods.add(mod)
                return
            token = self._key_token(key, keyboard_module)
            if not token or token in self._fired_keys:
                return
            action = self.match(token)
            if action is None:
                return
            self._fired_keys.add(token)
            if self._should_throttle_action(action):
                self.log.info("hotkey_throttled key=%s action=%s", token, action)
                return
            self.log.info("hotkey_matched key=%s mods=%s action=%s", token, sorted(self._pressed_mods), action)
            self.on_action(action)

        return _on_press

    def _make_on_release(self, keyboard_module: object):
        def _on_release(key: object) -> None:
            mod = self._modifier_name(key, keyboard_module)
            if mod:
                self._pressed_mods.discard(mod)
                if not self._pressed_mods:
                    self._fired_keys.clear()
                return
            token = self._key_token(key, keyboard_module)
            if token:
                self._fired_keys.discard(token)

        return _on_release

    def _should_throttle_action(self, action: str) -> bool:
        now = time.monotonic()
        last = self._last_action_at.get(action)
        self._last_action_at[action] = now
        if last is None:
            return False
        return (now - last) * 1000 < self._repeat_guard_ms
