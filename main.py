from __future__ import annotations

from pathlib import Path
import argparse
import logging

def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Redmine time tracker with global hotkeys and tray icon")
    parser.add_argument(
        "--config",
        default="redtimer.json",
        help="Path to settings JSON (default: redtimer.json in current directory)",
    )
    parser.add_argument(
        "--log",
        default="redtimer.log",
        help="Path to app log file (default: redtimer.log in current directory)",
    )
    parser.add_argument(
        "--ui",
        default="auto",
        choices=["auto", "qt", "tk"],
        help="UI backend: auto (prefer Qt), qt, or tk",
    )
    parser.add_argument(
        "--no-tray",
        action="store_true",
        help="Do not create a system tray icon (Qt UI)",
    )
    return parser.parse_args()


def setup_logging(log_path: Path) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers.clear()

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)


def main() -> None:
    args = parse_args()
    setup_logging(Path(args.log))
    logging.getLogger("redtimer").info(
        "app_start config=%s log=%s ui=%s tray=%s",
        args.config,
        args.log,
        args.ui,
        not args.no_tray,
    )
    app = _build_ui_app(args.ui, Path(args.config), use_tray=not args.no_tray)
    app.run()


def _build_ui_app(ui_mode: str, config_path: Path, use_tray: bool = True):
    log = logging.getLogger("redtimer")
    if ui_mode in {"auto", "qt"}:
        try:
            from redtimer.ui_qt import RedTimerQtApp

            return RedTimerQtApp(config_path, use_tray=use_tray)
        except Exception as exc:
            if ui_mode == "qt":
                raise
            log.warning("qt_ui_unavailable fallback=tk error=%s", exc)
    from redtimer.ui import RedTimerApp

    if use_tray:
        log.info("tray_not_supported_in_tk")
    return RedTimerApp(config_path)


if __name__ == "__main__":
    main()
