# src/shiftops/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState and the Session, then runs:
- the session tick loop in a background thread,
- the console REPL in the main thread (optional).
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading

from ..cli.bootstrap import create_initial_state, create_session
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging
from ..session.session_runner import SessionBackgroundRunner, start_session_in_background

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="shiftops", description="Shift operations session.")
    parser.add_argument("--user", help="user id for this session (default: SHIFTOPS_USER_ID)")
    parser.add_argument("--role", help="role for this session (default: SHIFTOPS_ROLE)")
    parser.add_argument("--no-console", action="store_true", help="run the tick loop only")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)
    logging.getLogger("redis").setLevel(logging.WARNING)

    logger.info("Starting %s...", settings.app_name)

    state = create_initial_state(settings=settings, user_id=args.user, role=args.role)
    session = create_session(state)
    with state.lock:
        session.start()

    runner: SessionBackgroundRunner | None = start_session_in_background(
        session,
        interval_seconds=settings.tick_interval_seconds,
        lock=state.lock,
    )

    stop_main = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Signal %s received, shutting down...", signum)
        stop_main.set()

    try:
        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
    except (ValueError, OSError):
        logger.debug("Signal handlers not installed.", exc_info=True)

    try:
        if not args.no_console:
            run_console_loop(session)
            stop_main.set()
        else:
            logger.info("Console disabled. Running the tick loop only. Press Ctrl+C to stop.")
            stop_main.wait()
    finally:
        if runner is not None:
            runner.stop()
            runner.join(timeout=10.0)
        with state.lock:
            session.close()
        logger.info("Bye.")


if __name__ == "__main__":
    main()
