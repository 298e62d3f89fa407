"""Cancellation scopes, bounded calls and the per-instance bot context."""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, TypeVar

from sessionkeeper.config import SupervisorConfig
from sessionkeeper.errors import OperationTimeout, SessionTimedOut

if TYPE_CHECKING:  # pragma: no cover - typing only
    from sessionkeeper.events import EventBus
    from sessionkeeper.interfaces import (
        CharacterCapabilities,
        ClientController,
        GameplayExecutor,
        GameReader,
        MenuScreen,
        RemediationInput,
        SessionManager,
    )

LOGGER = logging.getLogger(__name__)
T = TypeVar("T")


class RunContext:
    """Cancellable scope shared by a control flow and its background threads.

    Cancelling a context cancels every child created from it. A context
    created with ``timeout`` cancels itself with :class:`SessionTimedOut`
    once the deadline passes. The first cancel wins and its ``cause`` is
    kept for the owner to inspect.
    """

    def __init__(
        self,
        *,
        parent: "RunContext | None" = None,
        timeout: float | None = None,
        name: str = "run",
    ) -> None:
        self.name = name
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._cause: BaseException | None = None
        self._children: List[RunContext] = []
        self._parent = parent
        self._timer: threading.Timer | None = None
        if timeout is not None and timeout > 0:
            self._timer = threading.Timer(
                timeout,
                self.cancel,
                kwargs={"cause": SessionTimedOut(f"{name} exceeded {timeout:.0f}s")},
            )
            self._timer.daemon = True
            self._timer.start()
        if parent is not None:
            parent._attach(self)

    def child(self, *, timeout: float | None = None, name: str = "child") -> "RunContext":
        return RunContext(parent=self, timeout=timeout, name=name)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> BaseException | None:
        with self._lock:
            return self._cause

    def wait(self, timeout: float | None = None) -> bool:
        """Block up to ``timeout`` seconds; True when the context was cancelled."""
        return self._event.wait(timeout)

    def cancel(self, cause: BaseException | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._cause = cause
            self._event.set()
            children = list(self._children)
            self._children.clear()
        if self._timer is not None:
            self._timer.cancel()
        for child in children:
            child.cancel(cause)
        if self._parent is not None:
            self._parent._detach(self)

    def _attach(self, child: "RunContext") -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
            cause = self._cause
        child.cancel(cause)

    def _detach(self, child: "RunContext") -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)


def call_with_timeout(
    func: Callable[[], T],
    timeout: float,
    *,
    description: str = "operation",
    timeout_error: Callable[[str], BaseException] = OperationTimeout,
) -> T:
    """Run ``func`` on a worker thread and wait at most ``timeout`` seconds.

    A call that overruns is abandoned (the worker is a daemon thread) and
    ``timeout_error`` is raised. Exceptions raised by ``func`` propagate.
    """
    results: "queue.Queue[tuple[bool, object]]" = queue.Queue(maxsize=1)

    def _worker() -> None:
        try:
            results.put((True, func()))
        except BaseException as exc:  # noqa: BLE001 - re-raised by the caller
            results.put((False, exc))

    worker = threading.Thread(target=_worker, name=f"timeout-{description}", daemon=True)
    worker.start()
    try:
        ok, value = results.get(timeout=timeout)
    except queue.Empty:
        raise timeout_error(f"{description} timed out after {timeout:g}s") from None
    if ok:
        return value  # type: ignore[return-value]
    raise value  # type: ignore[misc]


@dataclass
class GameAttempt:
    """Consecutive failure counters for the current attempt episode."""

    attempted_at: float | None = None
    failures: Dict[str, int] = field(default_factory=dict)

    def record_failure(self, kind: str) -> int:
        self.failures[kind] = self.failures.get(kind, 0) + 1
        return self.failures[kind]

    def reset(self, kind: str | None = None) -> None:
        if kind is None:
            self.failures.clear()
        else:
            self.failures.pop(kind, None)

    @property
    def consecutive_failure_count(self) -> int:
        return sum(self.failures.values())


@dataclass
class BotContext:
    """Everything one supervised instance needs, passed explicitly."""

    config: SupervisorConfig
    bus: "EventBus"
    manager: "SessionManager"
    screen: "MenuScreen"
    reader: "GameReader"
    client: "ClientController"
    executor: "GameplayExecutor"
    capabilities: "CharacterCapabilities"
    remediation: "RemediationInput"
    clock: Callable[[], float] = time.monotonic
    attempt: GameAttempt = field(default_factory=GameAttempt)
    last_buff_at: float | None = None
    public_game_counter: int = 0
    stop_event: threading.Event = field(default_factory=threading.Event)
    pause_event: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        if self.public_game_counter <= 0:
            self.public_game_counter = max(1, self.config.public_game_counter)

    @property
    def name(self) -> str:
        return self.config.character_name

    @property
    def timings(self):
        return self.config.timings

    @property
    def paused(self) -> bool:
        return self.pause_event.is_set()

    def sleep(self, seconds: float) -> bool:
        """Sleep unless stopped; True when a stop was requested meanwhile."""
        if seconds <= 0:
            return self.stop_event.is_set()
        return self.stop_event.wait(seconds)
