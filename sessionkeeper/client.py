"""Client process control: launch on demand, terminate then kill."""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import IO, List

from sessionkeeper.config import SupervisorConfig

LOGGER = logging.getLogger(__name__)


class ProcessClient:
    """Owns the game client process for one supervised instance.

    Without a configured executable the client is assumed to be managed by
    something else: ``ensure_running`` only logs and ``kill_client`` does
    nothing.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        *,
        popen_cls=subprocess.Popen,
        log_dir: Path | None = None,
    ) -> None:
        self._executable = config.client_executable
        self._max_shutdown = config.max_shutdown_seconds
        self._popen_cls = popen_cls
        self._log_dir = log_dir or config.events_log.parent
        self._process: subprocess.Popen | None = None
        self._handles: List[IO[str]] = []
        self.launches = 0

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def ensure_running(self) -> None:
        if self.is_running:
            return
        if self._executable is None:
            LOGGER.info("No client executable configured; assuming the client is already running")
            return
        self._close_logs()
        self._log_dir.mkdir(parents=True, exist_ok=True)
        stdout_f = open(self._log_dir / "client_stdout.log", "a", encoding="utf-8", errors="replace")
        stderr_f = open(self._log_dir / "client_stderr.log", "a", encoding="utf-8", errors="replace")
        self._handles = [stdout_f, stderr_f]
        LOGGER.info("Starting client executable %s", self._executable)
        self._process = self._popen_cls(
            [str(self._executable)],
            stdout=stdout_f,
            stderr=stderr_f,
            cwd=str(self._executable.parent),
        )
        self.launches += 1

    def kill_client(self) -> int | None:
        """Stop the client; returns its exit code, None when nothing was running."""
        process = self._process
        if process is None:
            return None
        try:
            if process.poll() is not None:
                return process.returncode
            LOGGER.warning("Terminating client process %s", process.pid)
            process.terminate()
            try:
                return process.wait(timeout=self._max_shutdown)
            except subprocess.TimeoutExpired:
                LOGGER.error("Client process unresponsive; killing")
                process.kill()
                return process.wait()
        finally:
            self._process = None
            self._close_logs()

    def _close_logs(self) -> None:
        for handle in self._handles:
            handle.close()
        self._handles = []
