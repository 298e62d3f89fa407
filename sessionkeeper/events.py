"""Event payloads, the in-process event bus and the event journal."""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Type, TypeVar

from sessionkeeper.errors import FinishReason

LOGGER = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """Base class for everything published on the bus."""

    created_at: datetime = field(default_factory=_utc_now, compare=False, kw_only=True)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        return ""


@dataclass(frozen=True)
class LeaderHeartbeat(Event):
    leader: str
    game_name: str
    in_session: bool

    def describe(self) -> str:
        state = "in session" if self.in_session else "left session"
        return f"{self.leader} {state} {self.game_name}".strip()


@dataclass(frozen=True)
class JoinRequest(Event):
    leader: str
    name: str
    password: str

    def describe(self) -> str:
        return f"{self.leader} requests companions join {self.name}"


@dataclass(frozen=True)
class ResetSessionInfo(Event):
    leader: str

    def describe(self) -> str:
        return f"{self.leader} reset companion session info"


@dataclass(frozen=True)
class ShrineFound(Event):
    companion: str
    area_name: str
    area_id: int
    x: int
    y: int

    def describe(self) -> str:
        return f"{self.companion} found shrine in {self.area_name} at ({self.x}, {self.y})"


@dataclass(frozen=True)
class SessionCreated(Event):
    supervisor: str
    name: str
    password: str = ""

    def describe(self) -> str:
        return f"{self.supervisor} entered {self.name}"


@dataclass(frozen=True)
class SessionFinished(Event):
    supervisor: str
    reason: FinishReason
    message: str = ""

    def describe(self) -> str:
        return f"{self.supervisor} finished ({self.reason.value}) {self.message}".strip()


E = TypeVar("E", bound=Event)
Handler = Callable[[E], None]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    token: int
    event_type: Type[Event]
    bus: "EventBus" = field(repr=False, compare=False)

    def unsubscribe(self) -> bool:
        return self.bus.unsubscribe(self)


class EventBus:
    """Synchronous publish/subscribe mediator.

    Handlers run on the publishing thread, in subscription order, and
    receive every event that is an instance of the type they subscribed to.
    A failing handler is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[int, tuple[Type[Event], Callable[[Event], None]]] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Subscription:
        with self._lock:
            token = next(self._tokens)
            self._handlers[token] = (event_type, handler)  # type: ignore[assignment]
        return Subscription(token=token, event_type=event_type, bus=self)

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            return self._handlers.pop(subscription.token, None) is not None

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def publish(self, event: Event) -> int:
        """Deliver ``event``; returns the number of handlers that accepted it."""
        with self._lock:
            targets = [
                handler
                for event_type, handler in self._handlers.values()
                if isinstance(event, event_type)
            ]
        delivered = 0
        for handler in targets:
            try:
                handler(event)
                delivered += 1
            except Exception as exc:
                LOGGER.warning("Event handler failed for %s: %s", event.kind, exc)
        return delivered


class EventJournal:
    """Thread-safe journal that writes bus events to a tab-separated log."""

    def __init__(self, log_path: Path):
        self.log_path = log_path
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.log_path.exists():
            self.log_path.write_text("# Session Supervisor Events\n", encoding="utf-8")
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {}
        self._finish_counts: Dict[str, int] = {}
        self._subscription: Subscription | None = None

    def attach(self, bus: EventBus) -> Subscription:
        self._subscription = bus.subscribe(Event, self.record)
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def record(self, event: Event) -> None:
        self.log(event.kind, event.describe())
        if isinstance(event, SessionFinished):
            with self._lock:
                key = event.reason.value
                self._finish_counts[key] = self._finish_counts.get(key, 0) + 1

    def log(self, event_type: str, message: str | None = None) -> None:
        timestamp = _utc_now().isoformat()
        line = f"{timestamp}\t{event_type}\t{message or ''}\n"
        with self._lock:
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(line)
            self._counts[event_type] = self._counts.get(event_type, 0) + 1

    def count(self, event_type: str) -> int:
        with self._lock:
            return self._counts.get(event_type, 0)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def finish_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._finish_counts)

    def lines(self) -> List[str]:
        with self._lock:
            text = self.log_path.read_text(encoding="utf-8")
        return [line for line in text.splitlines() if line and not line.startswith("#")]
