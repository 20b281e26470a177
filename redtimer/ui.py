from __future__ import annotations

import logging
from pathlib import Path
from queue import Empty, Queue
import sys
import tkinter as tk
from tkinter import messagebox, ttk

from .config import HOTKEY_ACTIONS, load_settings, save_settings
from .core import Activity, Issue, IssueStatus, RecentIssueRegistry, TimerState, format_duration
from .hotkeys import ACTION_TITLES, HotkeyBackend, find_duplicate_bindings, human_combo_label, normalize_combo_string
from .redmine import BackgroundGateway, RedmineClient
from .tracker import SEVERITY_ERROR, SEVERITY_WARNING, ExitChoice, InvalidLocalState, TimeTrackingController


class RedTimerApp:
    def __init__(self, config_path: Path) -> None:
        self.root = tk.Tk()
        self.root.title("RedTimer")
        self.root.resizable(False, False)
        self.ttk_style = ttk.Style()
        self.ui = self._build_platform_ui_theme()
        self._configure_platform_styles()

        self.log = logging.getLogger("redtimer")
        self.command_queue: Queue[tuple[str, str]] = Queue()
        self.config_path = Path(config_path)
        self.settings = load_settings(self.config_path, self.log)
        self.gateway = BackgroundGateway(self._make_client())
        self.controller = TimeTrackingController(
            self.gateway,
            recent=RecentIssueRegistry.from_issues(self.settings.recent_issues),
            activity_id=self.settings.last_activity_id,
        )
        self.controller.subscribe("state_changed", self._on_state_changed)
        self.controller.subscribe("message", self._on_message)
        self.controller.subscribe("recent_issues_changed", self._on_recent_issues_changed)
        self.controller.subscribe("activities_changed", self._on_activities_changed)
        self.controller.subscribe("statuses_changed", self._on_statuses_changed)
        self.controller.subscribe("time_entry_saved", self._persist_session)
        self.controller.subscribe("exit_ready", self._shutdown)
        self.hotkeys = HotkeyBackend(
            lambda action: self.command_queue.put(("global_hotkey", action)),
            self.settings.keyboard_map,
            enabled=self.settings.hotkeys_enabled,
        )

        self.timer_var = tk.StringVar(value=format_duration(0))
        self.issue_var = tk.StringVar(value="No issue selected")
        self.meta_var = tk.StringVar(value="")
        self.state_var = tk.StringVar(value="Idle")
        self.status_var = tk.StringVar(value="Ready")
        self.entry_var = tk.StringVar()
        self.recent_var = tk.StringVar()
        self.activity_var = tk.StringVar()
        self.issue_status_var = tk.StringVar()

        self._recent: list[Issue] = []
        self._activities: list[Activity] = []
        self._statuses: list[IssueStatus] = []
        self._message_serial = 0
        self._quitting = False
        self._last_project = ""

        self._build_ui()
        self._bound_local_sequences: set[str] = set()
        self._bind_local_hotkeys()
        self._on_recent_issues_changed(self.controller.recent_issues())
        self._on_state_changed(self.controller.snapshot())

    def _make_client(self) -> RedmineClient:
        return RedmineClient(
            self.settings.url,
            self.settings.api_key,
            verify=not self.settings.ignore_ssl_errors,
            timeout=self.settings.timeout_s,
        )

    def _build_platform_ui_theme(self) -> dict[str, object]:
        if sys.platform == "darwin":
            fonts = {"font_ui": ("Inter", 13), "font_small": ("Inter", 12), "font_timer": ("SF Mono", 36, "bold")}
        elif sys.platform.startswith("win"):
            fonts = {"font_ui": ("Segoe UI", 10), "font_small": ("Segoe UI", 9), "font_timer": ("Consolas", 24, "bold")}
        else:
            fonts = {
                "font_ui": ("TkDefaultFont", 10),
                "font_small": ("TkDefaultFont", 9),
                "font_timer": ("Courier", 22, "bold"),
            }
        return {
            **fonts,
            "bg_app": "#EFEFEF",
            "bg_card": "#FFFFFF",
            "bg_subtle": "#F6F6F6",
            "fg_primary": "#222222",
            "fg_secondary": "#555555",
            "line": "#DDDDDD",
            "accent": "#1E88E5",
            "accent_press": "#1565C0",
            "danger": "#C62828",
            "danger_press": "#B71C1C",
            "running_bg": "#E8F5E9",
            "running_fg": "#2E7D32",
            "loaded_bg": "#FFF8E1",
            "loaded_fg": "#8D6E00",
            "idle_bg": "#F1F3F4",
            "idle_fg": "#444444",
            "error_fg": "#A61B1B",
            "warning_fg": "#8D6E00",
            "status_bg": "#F8F8F8",
            "status_fg": "#2A2A2A",
        }

    def _configure_platform_styles(self) -> None:
        self.root.configure(bg=self.ui["bg_app"])
        preferred_theme = "aqua" if sys.platform == "darwin" else "vista" if sys.platform.startswith("win") else None
        if preferred_theme:
            try:
                self.ttk_style.theme_use(preferred_theme)
            except tk.TclError:
                self.log.info("tk_theme_unavailable theme=%s", preferred_theme)

    def _tk_button_colors(self, role: str = "neutral") -> dict[str, object]:
        if role == "accent":
            bg, active, fg = self.ui["accent"], self.ui["accent_press"], "#FFFFFF"
        elif role == "danger":
            bg, active, fg = self.ui["danger"], self.ui["danger_press"], "#FFFFFF"
        else:
            bg, active, fg = self.ui["bg_subtle"], self.ui["line"], self.ui["fg_primary"]
        return {
            "bg": bg,
            "fg": fg,
            "activebackground": active,
            "activeforeground": fg,
            "relief": tk.FLAT,
            "bd": 0,
            "highlightthickness": 0,
            "font": self.ui["font_small"],
            "padx": 10,
            "pady": 6,
            "cursor": "hand2",
        }

    def _label(self, parent: tk.Widget, role: str = "primary", **kwargs: object) -> tk.Label:
        return tk.Label(
            parent,
            bg=self.ui["bg_card"],
            fg=self.ui["fg_primary"] if role == "primary" else self.ui["fg_secondary"],
            font=self.ui["font_small"],
            **kwargs,
        )

    def _build_ui(self) -> None:
        self.frame = tk.Frame(
            self.root,
            bg=self.ui["bg_card"],
            highlightthickness=1,
            highlightbackground=self.ui["line"],
        )
        self.frame.pack(padx=12, pady=12)
        self.frame.grid_columnconfigure(1, weight=1)

        tk.Label(
            self.frame,
            textvariable=self.issue_var,
            font=(self.ui["font_ui"][0], self.ui["font_ui"][1], "bold"),
            bg=self.ui["bg_card"],
            fg=self.ui["fg_primary"],
            wraplength=380,
            justify="left",
        ).grid(row=0, column=0, columnspan=3, sticky="w", padx=10, pady=(10, 0))
        self._label(self.frame, "secondary", textvariable=self.meta_var).grid(
            row=1, column=0, columnspan=3, sticky="w", padx=10
        )

        timer_card = tk.Frame(self.frame, bg=self.ui["bg_subtle"], highlightthickness=1, highlightbackground=self.ui["line"])
        timer_card.grid(row=2, column=0, columnspan=3, sticky="we", padx=10, pady=6)
        tk.Label(
            timer_card,
            textvariable=self.timer_var,
            font=self.ui["font_timer"],
            bg=self.ui["bg_subtle"],
            fg=self.ui["fg_primary"],
            anchor="w",
            padx=10,
            pady=8,
        ).pack(fill="x")
        self.state_label = tk.Label(
            timer_card,
            textvariable=self.state_var,
            font=self.ui["font_small"],
            bg=self.ui["idle_bg"],
            fg=self.ui["idle_fg"],
            padx=10,
            pady=4,
            anchor="w",
        )
        self.state_label.pack(fill="x", padx=10, pady=(0, 10))

        self.btn_start_stop = tk.Button(
            self.frame,
            text="Start",
            command=lambda: self.handle_action("start_stop", source="button"),
            **self._tk_button_colors("accent"),
        )
        self.btn_start_stop.grid(row=3, column=0, columnspan=3, sticky="we", padx=10, pady=(0, 6))

        pad = {"padx": (10, 4), "pady": 3}
        self._label(self.frame, text="Issue").grid(row=4, column=0, sticky="w", **pad)
        entry = tk.Entry(self.frame, textvariable=self.entry_var, width=28, font=self.ui["font_small"])
        entry.grid(row=4, column=1, sticky="we", pady=3)
        entry.bind("<Return>", lambda _e: self._load_issue_from_entry())
        tk.Button(self.frame, text="Load", command=self._load_issue_from_entry, **self._tk_button_colors()).grid(
            row=4, column=2, sticky="we", padx=(4, 10), pady=3
        )

        self._label(self.frame, text="Recent").grid(row=5, column=0, sticky="w", **pad)
        self.recent_box = ttk.Combobox(self.frame, textvariable=self.recent_var, state="readonly", width=34)
        self.recent_box.grid(row=5, column=1, columnspan=2, sticky="we", padx=(0, 10), pady=3)
        self.recent_box.bind("<<ComboboxSelected>>", self._on_recent_selected)

        self._label(self.frame, text="Activity").grid(row=6, column=0, sticky="w", **pad)
        self.activity_box = ttk.Combobox(self.frame, textvariable=self.activity_var, state="readonly", width=34)
        self.activity_box.grid(row=6, column=1, columnspan=2, sticky="we", padx=(0, 10), pady=3)
        self.activity_box.bind("<<ComboboxSelected>>", self._on_activity_selected)

        self._label(self.frame, text="Status").grid(row=7, column=0, sticky="w", **pad)
        self.status_box = ttk.Combobox(self.frame, textvariable=self.issue_status_var, state="readonly", width=34)
        self.status_box.grid(row=7, column=1, columnspan=2, sticky="we", padx=(0, 10), pady=3)
        self.status_box.bind("<<ComboboxSelected>>", self._on_status_selected)

        buttons = tk.Frame(self.frame, bg=self.ui["bg_card"])
        buttons.grid(row=8, column=0, columnspan=3, sticky="we", padx=10, pady=6)
        tk.Button(buttons, text="Refresh", command=self.controller.refresh, **self._tk_button_colors()).pack(side="left")
        tk.Button(buttons, text="New Issue", command=self._open_create_issue_dialog, **self._tk_button_colors()).pack(
            side="left", padx=(4, 0)
        )
        tk.Button(buttons, text="Settings", command=self._open_settings_dialog, **self._tk_button_colors()).pack(
            side="left", padx=(4, 0)
        )

        self.status_label = tk.Label(
            self.frame,
            textvariable=self.status_var,
            anchor="w",
            justify="left",
            wraplength=380,
            font=self.ui["font_small"],
            bg=self.ui["status_bg"],
            fg=self.ui["status_fg"],
            padx=10,
            pady=8,
        )
        self.status_label.grid(row=9, column=0, columnspan=3, sticky="we", padx=10, pady=(2, 10))

    def _bind_local_hotkeys(self) -> None:
        for seq in self._bound_local_sequences:
            self.root.unbind(seq)
        self._bound_local_sequences = set()
        for action in HOTKEY_ACTIONS:
            for sequence in self._tk_sequences_for_combo(self.settings.keyboard_map.get(action, "")):
                self.root.bind(sequence, lambda _e, a=action: self.handle_action(a, source="local_hotkey"))
                self._bound_local_sequences.add(sequence)
        self.root.protocol("WM_DELETE_WINDOW", self._on_close)
        label = human_combo_label(self.settings.keyboard_map.get("start_stop", ""))
        self.btn_start_stop.configure(text=self._start_stop_text(self.controller.is_running, label))

    def _tk_sequences_for_combo(self, combo: str) -> list[str]:
        combo = normalize_combo_string(combo)
        if not combo:
            return []
        parts = combo.split("+")
        key = parts[-1]
        mod_map = {"cmd": "Command", "alt": "Option", "ctrl": "Control", "shift": "Shift"}
        if sys.platform != "darwin":
            mod_map.update({"cmd": "Meta", "alt": "Alt"})
        tk_mods = [mod_map[m] for m in parts[:-1] if m in mod_map]
        if key in mod_map:
            return []
        if key.startswith("f") and key[1:].isdigit():
            return ["<" + "-".join([*tk_mods, key.upper()]) + ">"]
        seq = "<" + "-".join([*tk_mods, f"Key-{key}"]) + ">"
        seqs = [seq]
        if sys.platform == "darwin" and "Option" in tk_mods:
            seqs.append(seq.replace("Option", "Alt"))
        return list(dict.fromkeys(seqs))

    @staticmethod
    def _start_stop_text(running: bool, hotkey_label: str = "") -> str:
        text = "Stop" if running else "Start"
        return f"{text} ({hotkey_label})" if hotkey_label else text

    # -- controller events ---------------------------------------------------------

    def _on_state_changed(self, state: TimerState) -> None:
        self.timer_var.set(format_duration(state.elapsed_seconds))
        issue = state.active_issue
        if issue is None:
            self.issue_var.set("No issue selected")
            self.meta_var.set("")
        else:
            self.issue_var.set(issue.title)
            self.meta_var.set(" · ".join(m for m in (issue.project_name, issue.status_name) if m))
        phase = state.phase
        text = {"running": "Running", "loaded": "Stopped", "idle": "Idle"}[phase]
        self.state_var.set(f"{text} · saving" if state.saving else text)
        self.state_label.configure(bg=self.ui[f"{phase}_bg"], fg=self.ui[f"{phase}_fg"])
        label = human_combo_label(self.settings.keyboard_map.get("start_stop", ""))
        self.btn_start_stop.configure(
            text=self._start_stop_text(state.running, label),
            **self._tk_button_colors("danger" if state.running else "accent"),
        )
        self.activity_var.set(next((a.name for a in self._activities if a.id == state.activity_id), ""))
        status_id = issue.status_id if issue else None
        self.issue_status_var.set(next((s.name for s in self._statuses if s.id == status_id), ""))

    def _on_message(self, text: str, severity: str, timeout_ms: int) -> None:
        self._message_serial += 1
        serial = self._message_serial
        self.status_var.set(text)
        fg = {SEVERITY_ERROR: "error_fg", SEVERITY_WARNING: "warning_fg"}.get(severity, "status_fg")
        self.status_label.configure(fg=self.ui[fg])
        if timeout_ms > 0:
            self.root.after(timeout_ms, lambda: self._clear_status(serial))

    def _clear_status(self, serial: int) -> None:
        if serial == self._message_serial:
            self.status_var.set("")
            self.status_label.configure(fg=self.ui["status_fg"])

    def _on_recent_issues_changed(self, issues: list[Issue]) -> None:
        self._recent = list(issues)
        self.recent_box.configure(values=[i.title for i in self._recent])
        self.recent_var.set("")
        self._persist_session()

    def _on_activities_changed(self, activities: list[Activity]) -> None:
        self._activities = list(activities)
        self.activity_box.configure(values=[a.name for a in self._activities])
        self._on_state_changed(self.controller.snapshot())

    def _on_statuses_changed(self, statuses: list[IssueStatus]) -> None:
        self._statuses = list(statuses)
        self.status_box.configure(values=[s.name for s in self._statuses])
        self._on_state_changed(self.controller.snapshot())

    # -- user input -------------------------------------------------------------------

    def _load_issue_from_entry(self) -> None:
        text = self.entry_var.get()
        try:
            self.controller.load_issue_from_text(text)
        except InvalidLocalState:
            self.log.info("issue_entry_rejected text=%r", text)
            return
        self.entry_var.set("")

    def _on_recent_selected(self, _event: tk.Event) -> None:
        index = self.recent_box.current()
        if index >= 0:
            self.controller.load_recent_issue(index)

    def _on_activity_selected(self, _event: tk.Event) -> None:
        index = self.activity_box.current()
        if index < 0:
            return
        try:
            self.controller.select_activity(self._activities[index].id)
        except InvalidLocalState:
            self.log.info("activity_selection_refused index=%s", index)

    def _on_status_selected(self, _event: tk.Event) -> None:
        index = self.status_box.current()
        if index < 0:
            return
        try:
            self.controller.update_issue_status(self._statuses[index].id)
        except InvalidLocalState:
            self.log.info("status_update_refused index=%s", index)

    def handle_action(self, action: str, source: str = "unknown") -> None:
        self.log.info("action_received source=%s action=%s", source, action)
        try:
            if action == "start_stop":
                result = self.controller.start_stop()
            elif action == "start":
                result = self.controller.start()
            elif action == "stop":
                result = self.controller.stop()
            elif action == "show_window":
                self.root.deiconify()
                self.root.lift()
                result = "shown"
            else:
                self.log.warning("action_unknown source=%s action=%s", source, action)
                return
        except InvalidLocalState as exc:
            self.log.info("action_refused source=%s action=%s reason=%s", source, action, exc)
            return
        state = self.controller.snapshot()
        self.log.info(
            "action_applied source=%s action=%s result=%s running=%s elapsed=%s issue=%s",
            source,
            action,
            result,
            state.running,
            state.elapsed_seconds,
            state.active_issue.id if state.active_issue else None,
        )

    # -- settings ---------------------------------------------------------------------

    def _persist_session(self) -> None:
        issue = self.controller.active_issue
        if issue is not None:
            self.settings.last_issue_id = issue.id
        self.settings.last_activity_id = self.controller.activity_id
        self.settings.recent_issues = self.controller.recent_issues()
        try:
            save_settings(self.config_path, self.settings, self.log)
        except OSError:
            self.log.exception("settings_save_failed path=%s", self.config_path)

    def _open_create_issue_dialog(self) -> None:
        win = tk.Toplevel(self.root)
        win.title("New Issue")
        win.transient(self.root)
        win.grab_set()
        frame = tk.Frame(win, bg=self.ui["bg_card"], padx=12, pady=12)
        frame.pack(fill="both", expand=True)
        project_var = tk.StringVar(value=self._last_project)
        subject_var = tk.StringVar()
        self._label(frame, text="Project").grid(row=0, column=0, sticky="w", pady=2)
        tk.Entry(frame, textvariable=project_var, width=36, font=self.ui["font_small"]).grid(row=0, column=1, sticky="w")
        self._label(frame, text="Subject").grid(row=1, column=0, sticky="w", pady=2)
        tk.Entry(frame, textvariable=subject_var, width=36, font=self.ui["font_small"]).grid(row=1, column=1, sticky="w")

        def _create() -> None:
            try:
                self.controller.create_issue(project_var.get(), subject_var.get())
            except InvalidLocalState as exc:
                messagebox.showwarning("New Issue", str(exc), parent=win)
                return
            self._last_project = project_var.get().strip()
            win.destroy()

        buttons = tk.Frame(frame, bg=self.ui["bg_card"])
        buttons.grid(row=2, column=0, columnspan=2, sticky="e", pady=(8, 0))
        tk.Button(buttons, text="Cancel", command=win.destroy).pack(side="left")
        tk.Button(buttons, text="Create", command=_create).pack(side="left", padx=(6, 0))

    def _open_settings_dialog(self) -> None:
        win = tk.Toplevel(self.root)
        win.title("Settings")
        win.transient(self.root)
        win.grab_set()
        frame = tk.Frame(win, bg=self.ui["bg_card"], padx=12, pady=12)
        frame.pack(fill="both", expand=True)

        url_var = tk.StringVar(value=self.settings.url)
        key_var = tk.StringVar(value=self.settings.api_key)
        ssl_var = tk.BooleanVar(value=self.settings.ignore_ssl_errors)
        hotkeys_var = tk.BooleanVar(value=self.settings.hotkeys_enabled)
        keyboard_vars = {a: tk.StringVar(value=self.settings.keyboard_map.get(a, "")) for a in HOTKEY_ACTIONS}

        row = 0
        self._label(frame, text="Redmine URL").grid(row=row, column=0, sticky="w", pady=2)
        tk.Entry(frame, textvariable=url_var, width=36, font=self.ui["font_small"]).grid(row=row, column=1, sticky="w")
        row += 1
        self._label(frame, text="API key").grid(row=row, column=0, sticky="w", pady=2)
        tk.Entry(frame, textvariable=key_var, width=36, show="*", font=self.ui["font_small"]).grid(
            row=row, column=1, sticky="w"
        )
        row += 1
        for text, var in (("Ignore SSL errors", ssl_var), ("Enable global hotkeys", hotkeys_var)):
            tk.Checkbutton(
                frame,
                text=text,
                variable=var,
                bg=self.ui["bg_card"],
                fg=self.ui["fg_primary"],
                selectcolor=self.ui["bg_card"],
                activebackground=self.ui["bg_card"],
                font=self.ui["font_small"],
            ).grid(row=row, column=0, columnspan=2, sticky="w")
            row += 1
        for action in HOTKEY_ACTIONS:
            self._label(frame, text=ACTION_TITLES[action]).grid(row=row, column=0, sticky="w", pady=2)
            tk.Entry(frame, textvariable=keyboard_vars[action], width=18, font=self.ui["font_small"]).grid(
                row=row, column=1, sticky="w"
            )
            row += 1

        def _save_and_close() -> None:
            try:
                keyboard_map = {a: normalize_combo_string(v.get()) for a, v in keyboard_vars.items()}
                dup = find_duplicate_bindings(keyboard_map)
                if dup:
                    combo, actions = dup
                    raise ValueError(f"Duplicate keyboard binding '{combo}' for: {', '.join(actions)}")
                self.settings.url = url_var.get().strip()
                self.settings.api_key = key_var.get().strip()
                self.settings.ignore_ssl_errors = ssl_var.get()
                self.settings.hotkeys_enabled = hotkeys_var.get()
                self.settings.keyboard_map = keyboard_map
                save_settings(self.config_path, self.settings, self.log)
                self.settings = load_settings(self.config_path, self.log)
                self.gateway.reconfigure(self._make_client())
                self.hotkeys.stop()
                self.hotkeys.reload_bindings(self.settings.keyboard_map, enabled=self.settings.hotkeys_enabled)
                self.hotkeys.start()
                self._bind_local_hotkeys()
                self.controller.refresh()
                self.status_var.set("Settings saved and reloaded.")
                win.destroy()
            except Exception as exc:
                self.log.exception("tk_settings_save_failed")
                messagebox.showerror("Settings Error", str(exc), parent=win)

        buttons = tk.Frame(frame, bg=self.ui["bg_card"])
        buttons.grid(row=row, column=0, columnspan=2, sticky="e", pady=(8, 0))
        tk.Button(buttons, text="Cancel", command=win.destroy).pack(side="left")
        tk.Button(buttons, text="Save", command=_save_and_close).pack(side="left", padx=(6, 0))

    # -- lifecycle ------------------------------------------------------------------------

    def _on_close(self) -> None:
        if self._quitting:
            return
        choice = ExitChoice.SAVE_AND_EXIT
        if self.controller.has_unsaved_time():
            answer = messagebox.askyesnocancel(
                "Timer running",
                "Time is still being tracked.\n\nSave it to Redmine before exiting?",
                parent=self.root,
            )
            if answer is None:
                choice = ExitChoice.CANCEL
            elif answer:
                choice = ExitChoice.SAVE_AND_EXIT
            else:
                choice = ExitChoice.DISCARD_AND_EXIT
        if not self.controller.request_exit(choice):
            if choice is not ExitChoice.CANCEL:
                self.status_var.set("Waiting for tracked time to reach Redmine before exit…")
            return
        self._shutdown()

    def _shutdown(self) -> None:
        if self._quitting:
            return
        self._quitting = True
        self.log.info("app_shutdown")
        self._persist_session()
        self.root.destroy()

    def _drain_queue(self) -> None:
        while True:
            try:
                source, action = self.command_queue.get_nowait()
            except Empty:
                break
            self.handle_action(action, source=source)

    def _tick(self) -> None:
        if self._quitting:
            return
        self._drain_queue()
        try:
            self.controller.poll()
        except Exception:
            self.log.exception("controller_poll_failed")
        if not self._quitting:
            self.root.after(100, self._tick)

    def run(self) -> None:
        self.gateway.start()
        self.hotkeys.start()
        if self.hotkeys.available:
            self.status_var.set("Global hotkeys active.")
        elif self.hotkeys.error:
            self.status_var.set(f"{self.hotkeys.error} (window hotkeys still work)")
            self.log.warning("global_hotkeys_unavailable error=%s", self.hotkeys.error)
        if not self.settings.is_connection_configured:
            self.status_var.set("Configure the Redmine URL and API key in Settings.")
        else:
            self.controller.refresh()
            if self.settings.last_issue_id is not None:
                self.controller.load_issue(self.settings.last_issue_id, auto_start=False)
        self._tick()
        try:
            self.root.mainloop()
        finally:
            self.hotkeys.stop()
            self.gateway.close()
