"""Terminal commands for an attended supervisor run."""
from __future__ import annotations

import logging
import sys
import threading
from typing import Callable, TextIO

LOGGER = logging.getLogger(__name__)

HELP_TEXT = "Commands: p=pause/resume, s=status, ENTER=stop"


class ConsoleCommands:
    """Reads one-letter commands from stdin on a daemon thread."""

    def __init__(
        self,
        *,
        on_stop: Callable[[], None],
        on_toggle_pause: Callable[[], object],
        on_status: Callable[[], str],
        stream: TextIO | None = None,
    ) -> None:
        self._on_stop = on_stop
        self._on_toggle_pause = on_toggle_pause
        self._on_status = on_status
        self._stream = stream
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> bool:
        stream = self._stream or sys.stdin
        if self._stream is None and (not stream or not stream.isatty()):
            LOGGER.info("Console commands disabled (STDIN not interactive)")
            return False
        self._stream = stream
        self._thread = threading.Thread(
            target=self._loop, name="supervisor-console", daemon=True
        )
        self._thread.start()
        print(HELP_TEXT)
        return True

    def stop(self) -> None:
        self._stop_event.set()

    def _loop(self) -> None:
        stream = self._stream
        if stream is None:
            return
        try:
            while not self._stop_event.is_set():
                line = stream.readline()
                if line == "":
                    return
                if not self.dispatch(line):
                    return
        except Exception as exc:  # pragma: no cover - terminal specific
            LOGGER.warning("Console command loop failed: %s", exc)

    def dispatch(self, line: str) -> bool:
        """Run one command; False once the loop should end."""
        command = line.strip().lower()
        if command == "":
            self._on_stop()
            return False
        if command == "p":
            self._on_toggle_pause()
        elif command == "s":
            print(self._on_status())
        elif command == "?":
            print(HELP_TEXT)
        return True
