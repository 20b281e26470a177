from __future__ import annotations

import logging
from pathlib import Path
from queue import Empty, Queue
import sys

from .config import HOTKEY_ACTIONS, Settings, load_settings, save_settings
from .core import Activity, Issue, IssueStatus, RecentIssueRegistry, TimerState, format_duration
from .hotkeys import ACTION_TITLES, HotkeyBackend, find_duplicate_bindings, human_combo_label, normalize_combo_string
from .redmine import BackgroundGateway, RedmineClient
from .tracker import (
    SEVERITY_ERROR,
    SEVERITY_WARNING,
    ExitChoice,
    InvalidLocalState,
    TimeTrackingController,
)


def _qt_imports():
    from PySide6.QtCore import QTimer, Qt
    from PySide6.QtGui import QAction, QKeySequence, QShortcut
    from PySide6.QtWidgets import (
        QApplication,
        QCheckBox,
        QComboBox,
        QDialog,
        QFrame,
        QGridLayout,
        QHBoxLayout,
        QKeySequenceEdit,
        QLabel,
        QLineEdit,
        QMessageBox,
        QMenu,
        QPushButton,
        QStyle,
        QSystemTrayIcon,
        QVBoxLayout,
        QWidget,
    )

    class MainWindow(QWidget):
        def __init__(self, on_close) -> None:
            super().__init__()
            self._on_close = on_close

        def closeEvent(self, event) -> None:  # noqa: N802
            if self._on_close():
                event.accept()
            else:
                event.ignore()

    return {
        "QAction": QAction,
        "QApplication": QApplication,
        "QCheckBox": QCheckBox,
        "QComboBox": QComboBox,
        "QDialog": QDialog,
        "QFrame": QFrame,
        "QGridLayout": QGridLayout,
        "QHBoxLayout": QHBoxLayout,
        "QKeySequence": QKeySequence,
        "QKeySequenceEdit": QKeySequenceEdit,
        "QLabel": QLabel,
        "QLineEdit": QLineEdit,
        "QMessageBox": QMessageBox,
        "QMenu": QMenu,
        "QPushButton": QPushButton,
        "QShortcut": QShortcut,
        "QStyle": QStyle,
        "QSystemTrayIcon": QSystemTrayIcon,
        "QTimer": QTimer,
        "Qt": Qt,
        "QVBoxLayout": QVBoxLayout,
        "QWidget": QWidget,
        "MainWindow": MainWindow,
    }


def _internal_combo_to_qt_portable(combo: str) -> str:
    combo = normalize_combo_string(combo)
    if not combo:
        return ""
    out: list[str] = []
    for p in combo.split("+"):
        out.append(
            {
                "cmd": "Meta",
                "ctrl": "Ctrl",
                "alt": "Alt",
                "shift": "Shift",
                "enter": "Return",
                "esc": "Esc",
                "space": "Space",
            }.get(p, p.upper() if len(p) == 1 else p.title())
        )
    return "+".join(out)


def _qt_portable_to_internal(portable: str) -> str:
    if not portable:
        return ""
    mapped: list[str] = []
    for p in (p.strip() for p in portable.split("+") if p.strip()):
        pl = p.lower()
        mapped.append({"meta": "cmd", "return": "enter"}.get(pl, pl))
    return normalize_combo_string("+".join(mapped))


def build_gateway(settings: Settings) -> BackgroundGateway:
    return BackgroundGateway(_client_for(settings))


def _client_for(settings: Settings) -> RedmineClient:
    return RedmineClient(
        settings.url,
        settings.api_key,
        verify=not settings.ignore_ssl_errors,
        timeout=settings.timeout_s,
    )


_STYLE = (
    "QWidget#MainWindow { background: #f5f5f7; color: #1d1d1f;"
    "  font-family: Inter, -apple-system, 'Segoe UI', sans-serif; font-size: 13px; }"
    "QFrame#Card { background: #ffffff; border: 1px solid rgba(0,0,0,0.08); border-radius: 12px; }"
    "QLabel#Issue { font-weight: 700; font-size: 15px; }"
    "QLabel#Meta { color: rgba(29,29,31,140); font-size: 12px; }"
    "QLabel#Timer { font-size: 34px; font-weight: 700; font-family: 'SF Mono', Menlo, Consolas, monospace; }"
    "QLabel#StateChip { border-radius: 10px; padding: 4px 12px; font-weight: 600; font-size: 12px; }"
    "QLabel#Status { border-radius: 10px; padding: 6px 10px; }"
    "QPushButton { border-radius: 8px; border: 1px solid rgba(0,0,0,0.08); padding: 0 14px;"
    "  min-height: 28px; background: #ffffff; }"
    "QPushButton:hover { background: #f0f0f0; }"
    "QPushButton#Primary { background: rgba(0,122,255,235); color: white; border: none; font-weight: 600; }"
    "QPushButton#Primary[running=\"true\"] { background: rgba(215,58,73,235); }"
    "QComboBox, QLineEdit { border: 1px solid rgba(0,0,0,0.1); border-radius: 6px; padding: 3px 8px;"
    "  min-height: 24px; background: #ffffff; }"
)

_CHIP_COLORS = {
    "running": ("rgba(232, 245, 233, 220)", "#1B5E20"),
    "loaded": ("rgba(255, 248, 225, 220)", "#8D6E00"),
    "idle": ("rgba(243, 244, 246, 200)", "#86868b"),
}

_STATUS_COLORS = {
    SEVERITY_ERROR: "background: rgba(253,236,236,180); color: #A61B1B;",
    SEVERITY_WARNING: "background: rgba(255,248,225,180); color: #8D6E00;",
}


class RedTimerQtApp:
    def __init__(self, config_path: Path, use_tray: bool = True) -> None:
        self.qt = _qt_imports()
        self.QTimer = self.qt["QTimer"]
        self.Qt = self.qt["Qt"]
        self.QApplication = self.qt["QApplication"]
        self.QAction = self.qt["QAction"]
        self.QVBoxLayout = self.qt["QVBoxLayout"]
        self.QHBoxLayout = self.qt["QHBoxLayout"]
        self.QGridLayout = self.qt["QGridLayout"]
        self.QFrame = self.qt["QFrame"]
        self.QLabel = self.qt["QLabel"]
        self.QLineEdit = self.qt["QLineEdit"]
        self.QPushButton = self.qt["QPushButton"]
        self.QShortcut = self.qt["QShortcut"]
        self.QKeySequence = self.qt["QKeySequence"]
        self.QKeySequenceEdit = self.qt["QKeySequenceEdit"]
        self.QDialog = self.qt["QDialog"]
        self.QComboBox = self.qt["QComboBox"]
        self.QCheckBox = self.qt["QCheckBox"]
        self.QMenu = self.qt["QMenu"]
        self.QStyle = self.qt["QStyle"]
        self.QSystemTrayIcon = self.qt["QSystemTrayIcon"]
        self.QMessageBox = self.qt["QMessageBox"]

        self.log = logging.getLogger("redtimer")
        self.command_queue: Queue[tuple[str, str]] = Queue()
        self.config_path = Path(config_path)
        self.settings = load_settings(self.config_path, self.log)
        self.use_tray = use_tray and self.settings.use_tray_icon

        self.gateway = build_gateway(self.settings)
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

        self.qt_app = self.QApplication.instance() or self.QApplication(sys.argv)
        self.qt_app.setQuitOnLastWindowClosed(False)
        self.window = self.qt["MainWindow"](self._on_window_close)
        self.window.setObjectName("MainWindow")
        self.window.setWindowTitle("RedTimer")
        self.window.setMinimumWidth(460)
        self.window.setStyleSheet(_STYLE)

        self._qt_shortcuts: list[object] = []
        self._tray = None
        self._tray_enabled = False
        self._quitting = False
        self._message_serial = 0
        self._assigned_issues: list[Issue] = []
        self._last_project = ""
        self._build_ui()
        if self.use_tray:
            self._setup_tray()
        self._rebuild_qt_shortcuts()
        self._on_recent_issues_changed(self.controller.recent_issues())
        self._on_state_changed(self.controller.snapshot())

        self.ui_timer = self.QTimer(self.window)
        self.ui_timer.timeout.connect(self._tick)  # type: ignore[attr-defined]
        self.ui_timer.start(100)

    def _build_ui(self) -> None:
        vbox = self.QVBoxLayout(self.window)
        vbox.setContentsMargins(12, 12, 12, 12)
        vbox.setSpacing(10)

        self.card = self.QFrame()
        self.card.setObjectName("Card")
        card_layout = self.QVBoxLayout(self.card)
        card_layout.setContentsMargins(16, 16, 16, 16)
        card_layout.setSpacing(10)
        vbox.addWidget(self.card)

        self.issue_label = self.QLabel("No issue selected")
        self.issue_label.setObjectName("Issue")
        self.issue_label.setWordWrap(True)
        card_layout.addWidget(self.issue_label)
        self.project_label = self.QLabel("")
        self.project_label.setObjectName("Meta")
        card_layout.addWidget(self.project_label)

        timer_row = self.QHBoxLayout()
        self.timer_label = self.QLabel(format_duration(0))
        self.timer_label.setObjectName("Timer")
        timer_row.addWidget(self.timer_label)
        timer_row.addStretch(1)
        self.state_chip = self.QLabel("Idle")
        self.state_chip.setObjectName("StateChip")
        timer_row.addWidget(self.state_chip, 0, self.Qt.AlignVCenter)
        card_layout.addLayout(timer_row)

        self.btn_start_stop = self.QPushButton("Start")
        self.btn_start_stop.setObjectName("Primary")
        self.btn_start_stop.clicked.connect(lambda: self.handle_action("start_stop", "button"))  # type: ignore[attr-defined]
        card_layout.addWidget(self.btn_start_stop)

        grid = self.QGridLayout()
        grid.setHorizontalSpacing(10)
        grid.setVerticalSpacing(8)
        grid.setColumnStretch(1, 1)
        card_layout.addLayout(grid)

        grid.addWidget(self.QLabel("Issue"), 0, 0)
        self.issue_entry = self.QLineEdit()
        self.issue_entry.setPlaceholderText("Issue number, #id or issue URL")
        self.issue_entry.returnPressed.connect(self._load_issue_from_entry)  # type: ignore[attr-defined]
        grid.addWidget(self.issue_entry, 0, 1)
        self.btn_load = self.QPushButton("Load")
        self.btn_load.clicked.connect(self._load_issue_from_entry)  # type: ignore[attr-defined]
        grid.addWidget(self.btn_load, 0, 2)

        grid.addWidget(self.QLabel("Recent"), 1, 0)
        self.recent_box = self.QComboBox()
        self.recent_box.activated.connect(self._on_recent_selected)  # type: ignore[attr-defined]
        grid.addWidget(self.recent_box, 1, 1)
        self.btn_my_issues = self.QPushButton("My Issues")
        self.btn_my_issues.clicked.connect(self._load_assigned_issues)  # type: ignore[attr-defined]
        grid.addWidget(self.btn_my_issues, 1, 2)

        grid.addWidget(self.QLabel("Activity"), 2, 0)
        self.activity_box = self.QComboBox()
        self.activity_box.activated.connect(self._on_activity_selected)  # type: ignore[attr-defined]
        grid.addWidget(self.activity_box, 2, 1, 1, 2)

        grid.addWidget(self.QLabel("Status"), 3, 0)
        self.status_box = self.QComboBox()
        self.status_box.activated.connect(self._on_status_selected)  # type: ignore[attr-defined]
        grid.addWidget(self.status_box, 3, 1, 1, 2)

        row = self.QHBoxLayout()
        row.setSpacing(8)
        self.btn_refresh = self.QPushButton("Refresh")
        self.btn_refresh.clicked.connect(self.controller.refresh)  # type: ignore[attr-defined]
        row.addWidget(self.btn_refresh)
        self.btn_new_issue = self.QPushButton("New Issue")
        self.btn_new_issue.clicked.connect(self._open_create_issue_dialog)  # type: ignore[attr-defined]
        row.addWidget(self.btn_new_issue)
        self.btn_settings = self.QPushButton("Settings")
        self.btn_settings.clicked.connect(self._open_settings_dialog)  # type: ignore[attr-defined]
        row.addWidget(self.btn_settings)
        self.btn_hide_tray = self.QPushButton("Hide to Tray")
        self.btn_hide_tray.clicked.connect(self._hide_to_tray)  # type: ignore[attr-defined]
        row.addWidget(self.btn_hide_tray)
        row.addStretch(1)
        card_layout.addLayout(row)

        self.status_label = self.QLabel("")
        self.status_label.setObjectName("Status")
        self.status_label.setWordWrap(True)
        vbox.addWidget(self.status_label)

    def _setup_tray(self) -> None:
        try:
            if not self.QSystemTrayIcon.isSystemTrayAvailable():
                self.log.warning("system_tray_unavailable")
                return
            icon = self.window.windowIcon()
            if icon.isNull():
                icon = self.qt_app.style().standardIcon(self.QStyle.SP_ComputerIcon)
            tray = self.QSystemTrayIcon(icon, self.window)
            tray.setToolTip("RedTimer")

            menu = self.QMenu()
            act_show = self.QAction("Show Window", menu)
            act_start_stop = self.QAction("Start/Stop", menu)
            act_quit = self.QAction("Quit", menu)
            act_show.triggered.connect(self._show_from_tray)  # type: ignore[attr-defined]
            act_start_stop.triggered.connect(lambda: self.handle_action("start_stop", "tray"))  # type: ignore[attr-defined]
            act_quit.triggered.connect(self._quit_from_tray)  # type: ignore[attr-defined]
            menu.addAction(act_show)
            menu.addAction(act_start_stop)
            menu.addSeparator()
            menu.addAction(act_quit)
            tray.setContextMenu(menu)
            tray.activated.connect(self._on_tray_activated)  # type: ignore[attr-defined]
            tray.show()
            self._tray_menu = menu
            self._tray = tray
            self._tray_enabled = True
            self.log.info("system_tray_enabled")
        except Exception:
            self.log.exception("system_tray_setup_failed")
            self._tray = None
            self._tray_enabled = False

    def _hide_to_tray(self) -> None:
        if not self._tray_enabled:
            self.log.warning("hide_to_tray_requested_but_unavailable")
            self._show_status("System tray unavailable on this system.", SEVERITY_WARNING)
            return
        self.window.hide()
        self.log.info("window_hidden_to_tray")

    def _show_from_tray(self) -> None:
        self.window.show()
        self.window.raise_()
        self.window.activateWindow()
        self.log.info("window_restored")

    def _on_tray_activated(self, reason) -> None:
        # Trigger/DoubleClick behavior varies by OS; accept both.
        try:
            if reason in (self.QSystemTrayIcon.Trigger, self.QSystemTrayIcon.DoubleClick):
                if self.window.isVisible():
                    self._hide_to_tray()
                else:
                    self._show_from_tray()
        except Exception:
            self.log.exception("tray_activate_handler_failed")

    def _quit_from_tray(self) -> None:
        self.log.info("quit_requested_from_tray")
        self._request_quit()

    def _rebuild_qt_shortcuts(self) -> None:
        for sc in self._qt_shortcuts:
            sc.setEnabled(False)
            sc.deleteLater()
        self._qt_shortcuts = []

        for action in HOTKEY_ACTIONS:
            portable = _internal_combo_to_qt_portable(self.settings.keyboard_map.get(action, ""))
            if not portable:
                continue
            seq = self.QKeySequence(portable)
            if seq.isEmpty():
                continue
            sc = self.QShortcut(seq, self.window)
            sc.setContext(self.Qt.WidgetWithChildrenShortcut)
            sc.activated.connect(lambda a=action: self.handle_action(a, "local_hotkey"))  # type: ignore[attr-defined]
            self._qt_shortcuts.append(sc)
        combo = self.settings.keyboard_map.get("start_stop", "")
        label = human_combo_label(combo)
        self.btn_start_stop.setToolTip(f"{ACTION_TITLES['start_stop']} ({label})" if label else "")

    # -- controller events ---------------------------------------------------------

    def _on_state_changed(self, state: TimerState) -> None:
        self.timer_label.setText(format_duration(state.elapsed_seconds))
        issue = state.active_issue
        if issue is None:
            self.issue_label.setText("No issue selected")
            self.project_label.setText("")
        else:
            self.issue_label.setText(issue.title)
            meta = [issue.project_name, issue.status_name]
            self.project_label.setText(" · ".join(m for m in meta if m))
        phase = state.phase
        chip_text = {"running": "Running", "loaded": "Stopped", "idle": "Idle"}[phase]
        if state.saving:
            chip_text += " · saving"
        self.state_chip.setText(chip_text)
        bg, fg = _CHIP_COLORS[phase]
        self.state_chip.setStyleSheet(f"QLabel#StateChip {{ background: {bg}; color: {fg}; }}")

        self.btn_start_stop.setText("Stop" if state.running else "Start")
        self.btn_start_stop.setProperty("running", "true" if state.running else "false")
        self.btn_start_stop.style().unpolish(self.btn_start_stop)
        self.btn_start_stop.style().polish(self.btn_start_stop)

        self._select_data(self.activity_box, state.activity_id)
        self._select_data(self.status_box, issue.status_id if issue else None)
        if self._tray is not None:
            title = issue.title if issue else "No issue"
            self._tray.setToolTip(f"RedTimer: {title} {format_duration(state.elapsed_seconds)}")

    def _on_message(self, text: str, severity: str, timeout_ms: int) -> None:
        self._show_status(text, severity, timeout_ms)
        if severity == SEVERITY_ERROR and self._tray is not None and not self.window.isVisible():
            self._tray.showMessage("RedTimer", text, self.QSystemTrayIcon.Warning, timeout_ms)

    def _show_status(self, text: str, severity: str = "info", timeout_ms: int = 5000) -> None:
        self._message_serial += 1
        serial = self._message_serial
        self.status_label.setText(text)
        self.status_label.setStyleSheet(f"QLabel#Status {{ {_STATUS_COLORS.get(severity, '')} }}")
        if timeout_ms > 0:
            self.QTimer.singleShot(timeout_ms, lambda: self._clear_status(serial))

    def _clear_status(self, serial: int) -> None:
        if serial == self._message_serial:
            self.status_label.setText("")
            self.status_label.setStyleSheet("")

    def _on_recent_issues_changed(self, issues: list[Issue]) -> None:
        self.recent_box.blockSignals(True)
        self.recent_box.clear()
        for issue in issues:
            self.recent_box.addItem(issue.title, issue.id)
        for issue in self._assigned_issues:
            if all(issue.id != r.id for r in issues):
                self.recent_box.addItem(f"{issue.title} (assigned)", issue.id)
        self.recent_box.setCurrentIndex(-1)
        self.recent_box.blockSignals(False)
        self._persist_session()

    def _on_activities_changed(self, activities: list[Activity]) -> None:
        self._fill_combo(self.activity_box, [(a.name, a.id) for a in activities])
        self._select_data(self.activity_box, self.controller.activity_id)

    def _on_statuses_changed(self, statuses: list[IssueStatus]) -> None:
        self._fill_combo(self.status_box, [(s.name, s.id) for s in statuses])
        issue = self.controller.active_issue
        self._select_data(self.status_box, issue.status_id if issue else None)

    def _fill_combo(self, box, items: list[tuple[str, int]]) -> None:
        box.blockSignals(True)
        box.clear()
        for label, data in items:
            box.addItem(label, data)
        box.blockSignals(False)

    def _select_data(self, box, data: int | None) -> None:
        box.blockSignals(True)
        box.setCurrentIndex(box.findData(data) if data is not None else -1)
        box.blockSignals(False)

    # -- user input ------------------------------------------------------------------

    def _load_issue_from_entry(self) -> None:
        text = self.issue_entry.text()
        try:
            self.controller.load_issue_from_text(text)
        except InvalidLocalState:
            self.log.info("issue_entry_rejected text=%r", text)
            return
        self.issue_entry.clear()

    def _on_recent_selected(self, index: int) -> None:
        issue_id = self.recent_box.itemData(index)
        if issue_id is not None:
            self.controller.load_issue(int(issue_id))

    def _on_activity_selected(self, index: int) -> None:
        activity_id = self.activity_box.itemData(index)
        if activity_id is None:
            return
        try:
            self.controller.select_activity(int(activity_id))
        except InvalidLocalState:
            self.log.info("activity_selection_refused activity=%s", activity_id)

    def _on_status_selected(self, index: int) -> None:
        status_id = self.status_box.itemData(index)
        issue = self.controller.active_issue
        if status_id is None or (issue is not None and issue.status_id == status_id):
            return
        try:
            self.controller.update_issue_status(int(status_id))
        except InvalidLocalState:
            self.log.info("status_update_refused status=%s", status_id)

    def _load_assigned_issues(self) -> None:
        self._show_status("Loading issues assigned to you…")
        self.gateway.fetch_assigned_issues(
            on_success=self._assigned_issues_loaded,
            on_error=lambda exc: self._show_status(f"Could not load your issues: {exc.message}", SEVERITY_ERROR),
        )

    def _assigned_issues_loaded(self, issues: list[Issue]) -> None:
        self._assigned_issues = list(issues)
        self._on_recent_issues_changed(self.controller.recent_issues())
        self._show_status(f"{len(issues)} open issues assigned to you.")
        self.recent_box.showPopup()

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
                self._show_from_tray()
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

    def _drain_queue(self) -> None:
        while True:
            try:
                source, action = self.command_queue.get_nowait()
            except Empty:
                break
            self.handle_action(action, source)

    def _tick(self) -> None:
        self._drain_queue()
        try:
            self.controller.poll()
        except Exception:
            self.log.exception("controller_poll_failed")

    # -- settings ----------------------------------------------------------------------

    def _persist_session(self) -> None:
        issue = self.controller.active_issue
        self.settings.last_issue_id = issue.id if issue else self.settings.last_issue_id
        self.settings.last_activity_id = self.controller.activity_id
        self.settings.recent_issues = self.controller.recent_issues()
        try:
            save_settings(self.config_path, self.settings, self.log)
        except OSError:
            self.log.exception("settings_save_failed path=%s", self.config_path)

    def _open_create_issue_dialog(self) -> None:
        dlg = self.QDialog(self.window)
        dlg.setWindowTitle("New Issue")
        dlg.setModal(True)
        dlg.resize(420, 160)
        layout = self.QVBoxLayout(dlg)
        layout.setContentsMargins(20, 16, 20, 16)
        grid = self.QGridLayout()
        grid.setColumnStretch(1, 1)
        layout.addLayout(grid)
        grid.addWidget(self.QLabel("Project"), 0, 0)
        project_edit = self.QLineEdit(self._last_project)
        project_edit.setPlaceholderText("Project id or identifier")
        grid.addWidget(project_edit, 0, 1)
        grid.addWidget(self.QLabel("Subject"), 1, 0)
        subject_edit = self.QLineEdit()
        grid.addWidget(subject_edit, 1, 1)

        btn_row = self.QHBoxLayout()
        btn_row.addStretch(1)
        btn_cancel = self.QPushButton("Cancel")
        btn_cancel.clicked.connect(dlg.reject)  # type: ignore[attr-defined]
        btn_row.addWidget(btn_cancel)
        btn_create = self.QPushButton("Create")
        btn_create.setObjectName("Primary")
        btn_row.addWidget(btn_create)
        layout.addLayout(btn_row)

        def _create() -> None:
            try:
                self.controller.create_issue(project_edit.text(), subject_edit.text())
            except InvalidLocalState as exc:
                self.QMessageBox.warning(dlg, "New Issue", str(exc))
                return
            self._last_project = project_edit.text().strip()
            dlg.accept()

        btn_create.clicked.connect(_create)  # type: ignore[attr-defined]
        dlg.exec()

    def _open_settings_dialog(self) -> None:
        dlg = self.QDialog(self.window)
        dlg.setWindowTitle("Settings")
        dlg.setModal(True)
        dlg.resize(520, 420)
        layout = self.QVBoxLayout(dlg)
        layout.setContentsMargins(20, 16, 20, 16)
        layout.setSpacing(12)

        grid = self.QGridLayout()
        grid.setColumnStretch(1, 1)
        layout.addLayout(grid)
        grid.addWidget(self.QLabel("Redmine URL"), 0, 0)
        url_edit = self.QLineEdit(self.settings.url)
        url_edit.setPlaceholderText("https://redmine.example.com")
        grid.addWidget(url_edit, 0, 1)
        grid.addWidget(self.QLabel("API key"), 1, 0)
        key_edit = self.QLineEdit(self.settings.api_key)
        key_edit.setEchoMode(self.QLineEdit.Password)
        grid.addWidget(key_edit, 1, 1)

        ssl_cb = self.QCheckBox("Ignore SSL errors")
        ssl_cb.setChecked(self.settings.ignore_ssl_errors)
        grid.addWidget(ssl_cb, 2, 0, 1, 2)
        tray_cb = self.QCheckBox("Show tray icon (applies on restart)")
        tray_cb.setChecked(self.settings.use_tray_icon)
        grid.addWidget(tray_cb, 3, 0, 1, 2)
        close_cb = self.QCheckBox("Closing the window hides it to the tray")
        close_cb.setChecked(self.settings.close_to_tray)
        grid.addWidget(close_cb, 4, 0, 1, 2)
        hotkeys_cb = self.QCheckBox("Enable global hotkeys")
        hotkeys_cb.setChecked(self.settings.hotkeys_enabled)
        grid.addWidget(hotkeys_cb, 5, 0, 1, 2)

        key_edits: dict[str, object] = {}
        row = 6
        for action in HOTKEY_ACTIONS:
            grid.addWidget(self.QLabel(ACTION_TITLES[action]), row, 0)
            seq_edit = self.QKeySequenceEdit()
            seq_edit.setClearButtonEnabled(True)
            seq_edit.setKeySequence(
                self.QKeySequence(_internal_combo_to_qt_portable(self.settings.keyboard_map.get(action, "")))
            )
            grid.addWidget(seq_edit, row, 1)
            key_edits[action] = seq_edit
            row += 1

        btn_row = self.QHBoxLayout()
        btn_row.addStretch(1)
        btn_cancel = self.QPushButton("Cancel")
        btn_cancel.clicked.connect(dlg.reject)  # type: ignore[attr-defined]
        btn_row.addWidget(btn_cancel)
        btn_save = self.QPushButton("Save")
        btn_save.setObjectName("Primary")
        btn_row.addWidget(btn_save)
        layout.addLayout(btn_row)

        def _save() -> None:
            try:
                keyboard_map: dict[str, str] = {}
                for action in HOTKEY_ACTIONS:
                    portable = key_edits[action].keySequence().toString(self.QKeySequence.PortableText)
                    keyboard_map[action] = _qt_portable_to_internal(portable)
                dup = find_duplicate_bindings(keyboard_map)
                if dup:
                    combo, actions = dup
                    raise ValueError(f"Duplicate keyboard binding '{combo}' for: {', '.join(actions)}")

                self.settings.url = url_edit.text().strip()
                self.settings.api_key = key_edit.text().strip()
                self.settings.ignore_ssl_errors = ssl_cb.isChecked()
                self.settings.use_tray_icon = tray_cb.isChecked()
                self.settings.close_to_tray = close_cb.isChecked()
                self.settings.hotkeys_enabled = hotkeys_cb.isChecked()
                self.settings.keyboard_map = keyboard_map
                save_settings(self.config_path, self.settings, self.log)
                self.settings = load_settings(self.config_path, self.log)

                self.gateway.reconfigure(_client_for(self.settings))
                self.hotkeys.stop()
                self.hotkeys.reload_bindings(self.settings.keyboard_map, enabled=self.settings.hotkeys_enabled)
                self.hotkeys.start()
                self._rebuild_qt_shortcuts()
                self.controller.refresh()
                self._show_status("Settings saved and reloaded.")
                dlg.accept()
            except Exception as exc:
                self.log.exception("qt_settings_save_failed")
                self.QMessageBox.critical(dlg, "Settings Error", str(exc))

        btn_save.clicked.connect(_save)  # type: ignore[attr-defined]
        dlg.exec()

    # -- lifecycle ------------------------------------------------------------------------

    def _on_window_close(self) -> bool:
        if self._quitting:
            return True
        if self.settings.close_to_tray and self._tray_enabled:
            self._hide_to_tray()
            return False
        return self._request_quit()

    def _ask_exit_choice(self) -> ExitChoice:
        box = self.QMessageBox(self.window)
        box.setWindowTitle("Timer running")
        box.setText("Time is still being tracked.")
        box.setInformativeText("Save the tracked time to Redmine before exiting?")
        save_btn = box.addButton("Save and Exit", self.QMessageBox.AcceptRole)
        discard_btn = box.addButton("Discard and Exit", self.QMessageBox.DestructiveRole)
        box.addButton(self.QMessageBox.Cancel)
        box.setDefaultButton(save_btn)
        box.exec()
        clicked = box.clickedButton()
        if clicked is save_btn:
            return ExitChoice.SAVE_AND_EXIT
        if clicked is discard_btn:
            return ExitChoice.DISCARD_AND_EXIT
        return ExitChoice.CANCEL

    def _request_quit(self) -> bool:
        choice = ExitChoice.SAVE_AND_EXIT
        if self.controller.has_unsaved_time():
            self._show_from_tray()
            choice = self._ask_exit_choice()
        if not self.controller.request_exit(choice):
            if choice is not ExitChoice.CANCEL:
                self._show_status("Waiting for tracked time to reach Redmine before exit…", timeout_ms=0)
            return False
        self._shutdown()
        return True

    def _shutdown(self) -> None:
        if self._quitting:
            return
        self._quitting = True
        self.log.info("app_shutdown")
        self._persist_session()
        self.qt_app.quit()

    def run(self) -> None:
        self.gateway.start()
        self.hotkeys.start()
        if self.hotkeys.error:
            self.log.warning("global_hotkeys_unavailable error=%s", self.hotkeys.error)
        if not self.settings.is_connection_configured:
            self._show_status("Configure the Redmine URL and API key in Settings.", SEVERITY_WARNING, 0)
        else:
            self.controller.refresh()
            if self.settings.last_issue_id is not None:
                self.controller.load_issue(self.settings.last_issue_id, auto_start=False)

        self.window.show()
        try:
            self.qt_app.exec()
        finally:
            if self._tray is not None:
                self._tray.hide()
            self.hotkeys.stop()
            self.gateway.close()
