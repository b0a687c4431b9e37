# src/shiftops/connectors/console_connector.py

from __future__ import annotations

import logging
import sys
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..session.session_runner import Session
from .notifier import LoggingNotifier

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _rewrite_prev_line(line: str) -> None:
    """
    Replace the last terminal line with `line`.
    Best-effort: if not a TTY, just print a new line.
    """
    try:
        if sys.stdout.isatty():
            sys.stdout.write("\033[1A\033[2K\r")
            sys.stdout.write(line + "\n")
            sys.stdout.flush()
        else:
            print(line)
    except OSError:
        print(line)


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}")


def run_console_loop(session: Session) -> None:
    state = session.state
    ctx = session.context
    logger.info("Console connector started (user=%s role=%s).", ctx.user_id, ctx.role)
    _print_ts(f"[CONSOLE] Signed in as {ctx.user_id} ({ctx.role}). Use /help for commands, /exit to quit.\n")

    lock = getattr(state, "lock", None)

    def emit(text: str) -> None:
        print(f"[{_ts_local()}] {text}", flush=True)

    # Alerts raised by the background tick loop show up inline.
    if isinstance(state.notifier, LoggingNotifier) and state.notifier.emit is None:
        state.notifier.emit = emit

    while True:
        try:
            user_input = input(">>> ").strip()
            _rewrite_prev_line(f"[{_ts_local()}] >>> {user_input}")
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not user_input:
            continue

        if user_input.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        try:
            if lock:
                with lock:
                    reply = command_registry.handle(session, user_input, emit=emit)
            else:
                reply = command_registry.handle(session, user_input, emit=emit)
        except Exception:
            logger.exception("Command handler crashed.")
            reply = "Internal error while handling a command."

        if reply is None:
            reply = "Commands start with '/'. Use /help to list them."
        _print_ts(reply)

    logger.info("Console connector finished.")
