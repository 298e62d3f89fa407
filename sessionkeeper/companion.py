"""Leader/follower coordination: heartbeats, join requests and shrine reports."""
from __future__ import annotations

import logging
import queue
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterator, List

from sessionkeeper.config import CompanionRole, SupervisorConfig
from sessionkeeper.context import BotContext, RunContext
from sessionkeeper.events import (
    Event,
    EventBus,
    JoinRequest,
    LeaderHeartbeat,
    ResetSessionInfo,
    ShrineFound,
    Subscription,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeartbeatRecord:
    last_seen_at: float | None = None
    leader_in_session: bool = False
    current_game_name: str = ""


@dataclass(frozen=True)
class SessionIdentity:
    name: str = ""
    password: str = ""

    def __bool__(self) -> bool:
        return bool(self.name)


@dataclass(frozen=True)
class ShrineReport:
    companion_name: str
    area_name: str
    area_id: int
    x: int
    y: int
    reported_at: datetime

    def to_dict(self) -> dict:
        return {
            "companion_name": self.companion_name,
            "area_name": self.area_name,
            "area_id": self.area_id,
            "x": self.x,
            "y": self.y,
            "reported_at": self.reported_at.isoformat(),
        }


class JoinDecision(str, Enum):
    MATCH = "match"
    DIFFERENT = "different"
    TIMEOUT = "timeout"


class _ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ExitSignal:
    """Receive-only view of the single-slot exit signal."""

    def __init__(self, slot: "queue.Queue[None]") -> None:
        self._slot = slot

    def wait(self, timeout: float | None = None) -> bool:
        try:
            self._slot.get(timeout=timeout)
        except queue.Empty:
            return False
        return True

    def poll(self) -> bool:
        try:
            self._slot.get_nowait()
        except queue.Empty:
            return False
        return True

    def pending(self) -> bool:
        return not self._slot.empty()

    def drain(self) -> bool:
        drained = False
        while self.poll():
            drained = True
        return drained


class CompanionCoordinator:
    """This instance's view of its leader (follower) or its companions (leader).

    The role is read once from configuration. Heartbeat, session identity
    and shrine state are guarded by one read/write lock and are only ever
    handed out as immutable copies.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.role = config.companion_role
        self.character_name = config.character_name
        self.leader_name = config.leader_name
        self._stale_after = config.timings.heartbeat_stale_after
        self._monitor_tick = config.timings.heartbeat_monitor_tick
        self._clock = clock
        self._lock = _ReadWriteLock()
        self._changed = threading.Condition()
        self._record = HeartbeatRecord()
        self._identity = SessionIdentity()
        self._playing = ""
        self._shrines: List[ShrineReport] = []
        self._exit_slot: "queue.Queue[None]" = queue.Queue(maxsize=1)
        self._exit_signal = ExitSignal(self._exit_slot)

    @property
    def is_follower(self) -> bool:
        return self.role is CompanionRole.FOLLOWER

    @property
    def is_leader(self) -> bool:
        return self.role is CompanionRole.LEADER

    def subscribe(self, bus: EventBus) -> List[Subscription]:
        return [
            bus.subscribe(event_type, self.handle)
            for event_type in (LeaderHeartbeat, JoinRequest, ResetSessionInfo, ShrineFound)
        ]

    def handle(self, event: Event) -> None:
        if isinstance(event, LeaderHeartbeat):
            self._on_heartbeat(event)
        elif isinstance(event, JoinRequest):
            self._on_join_request(event)
        elif isinstance(event, ResetSessionInfo):
            self._on_reset(event)
        elif isinstance(event, ShrineFound):
            self._on_shrine(event)

    # -- snapshot reads -------------------------------------------------

    def is_leader_in_session(self) -> bool:
        with self._lock.read():
            return self._record.leader_in_session

    def get_current_game_name(self) -> str:
        with self._lock.read():
            return self._record.current_game_name

    def heartbeat_snapshot(self) -> HeartbeatRecord:
        with self._lock.read():
            return self._record

    def stored_session(self) -> SessionIdentity:
        with self._lock.read():
            return self._identity

    def clear_stored_session(self, reason: str = "") -> None:
        with self._lock.write():
            previous = self._identity
            self._identity = SessionIdentity()
        if previous:
            LOGGER.info("[Companion] Cleared stored game %s %s", previous.name, reason)

    def track_session(self, game_name: str) -> None:
        """Remember the game this follower is playing right now."""
        with self._lock.write():
            self._playing = game_name

    def untrack_session(self) -> None:
        with self._lock.write():
            self._playing = ""

    def playing_session(self) -> str:
        with self._lock.read():
            return self._playing

    def get_shrine_reports(self) -> List[ShrineReport]:
        with self._lock.read():
            return list(self._shrines)

    def clear_shrine_reports(self) -> None:
        with self._lock.write():
            self._shrines.clear()

    def get_exit_signal(self) -> ExitSignal:
        return self._exit_signal

    # -- heartbeat monitor ----------------------------------------------

    def start_heartbeat_monitor(self, ctx: RunContext) -> threading.Thread | None:
        if not self.is_follower:
            return None
        thread = threading.Thread(
            target=self._monitor_loop,
            args=(ctx,),
            name="companion-heartbeat-monitor",
            daemon=True,
        )
        thread.start()
        return thread

    def _monitor_loop(self, ctx: RunContext) -> None:
        while not ctx.wait(self._monitor_tick):
            try:
                self.check_heartbeat(self._clock())
            except Exception:
                LOGGER.exception("Heartbeat monitor check failed")

    def check_heartbeat(self, now: float) -> bool:
        """Flip a silent leader to not-in-session; True when that happened."""
        with self._lock.read():
            record = self._record
        if record.last_seen_at is None or not record.leader_in_session:
            return False
        silence = now - record.last_seen_at
        if silence <= self._stale_after:
            return False
        with self._lock.write():
            if self._record != record:
                return False
            self._record = replace(record, leader_in_session=False)
        self._notify_changed()
        LOGGER.warning(
            "Leader heartbeat timeout (%.0fs since last heartbeat); leader may have crashed",
            silence,
        )
        self._raise_exit_signal()
        return True

    # -- join poll ------------------------------------------------------

    def await_leader_session(
        self,
        game_name: str,
        *,
        timeout: float,
        step: float,
        ctx: RunContext | None = None,
    ) -> JoinDecision:
        """Wait until the leader reports ``game_name`` or another session."""
        deadline = time.monotonic() + timeout
        while True:
            decision = self._join_decision(game_name)
            if decision is not None:
                return decision
            remaining = deadline - time.monotonic()
            if remaining <= 0 or (ctx is not None and ctx.cancelled):
                return JoinDecision.TIMEOUT
            with self._changed:
                self._changed.wait(timeout=min(step, remaining))

    def _join_decision(self, game_name: str) -> JoinDecision | None:
        record = self.heartbeat_snapshot()
        if not record.leader_in_session:
            return None
        if record.current_game_name == game_name:
            return JoinDecision.MATCH
        if record.current_game_name:
            return JoinDecision.DIFFERENT
        return None

    # -- event handlers -------------------------------------------------

    def _leader_matches(self, leader: str) -> bool:
        return not self.leader_name or leader == self.leader_name

    def _on_heartbeat(self, event: LeaderHeartbeat) -> None:
        if not self.is_follower or not self._leader_matches(event.leader):
            return
        with self._lock.write():
            was_in_session = self._record.leader_in_session
            # a reset may already have cleared the identity of the game being played
            tracked = self._playing or self._identity.name
            self._record = HeartbeatRecord(
                last_seen_at=self._clock(),
                leader_in_session=event.in_session,
                current_game_name=event.game_name,
            )
        self._notify_changed()
        if was_in_session and not event.in_session and tracked and event.game_name == tracked:
            LOGGER.info(
                "Leader %s exited game %s, companion will exit too",
                event.leader,
                event.game_name,
            )
            self._raise_exit_signal()

    def _on_join_request(self, event: JoinRequest) -> None:
        if not self.is_follower or not self._leader_matches(event.leader):
            return
        LOGGER.info("Companion join request from %s for game %s", event.leader, event.name)
        with self._lock.write():
            self._identity = SessionIdentity(name=event.name, password=event.password)
        self._notify_changed()

    def _on_reset(self, event: ResetSessionInfo) -> None:
        if not self.is_follower:
            return
        if not (self._leader_matches(event.leader) or event.leader == self.character_name):
            return
        LOGGER.info("Companion reset game info received from %s", event.leader)
        self.clear_stored_session("(reset requested)")

    def _on_shrine(self, event: ShrineFound) -> None:
        if not self.is_leader:
            return
        report = ShrineReport(
            companion_name=event.companion,
            area_name=event.area_name,
            area_id=event.area_id,
            x=event.x,
            y=event.y,
            reported_at=datetime.now(timezone.utc),
        )
        with self._lock.write():
            self._shrines.append(report)
        LOGGER.info(
            "Companion %s reported shrine in %s at (%d, %d)",
            event.companion,
            event.area_name,
            event.x,
            event.y,
        )

    def _notify_changed(self) -> None:
        with self._changed:
            self._changed.notify_all()

    def _raise_exit_signal(self) -> bool:
        try:
            self._exit_slot.put_nowait(None)
        except queue.Full:
            return False
        return True


class HeartbeatBroadcaster:
    """Leader-side ticker announcing the current session to companions.

    It never sends the terminal ``in_session=False`` heartbeat; the
    supervisor does that explicitly once the exit has been confirmed.
    """

    def __init__(self, bot: BotContext) -> None:
        self._bot = bot
        self._interval = bot.timings.heartbeat_interval
        self.sent = 0

    def start(self, ctx: RunContext) -> threading.Thread:
        thread = threading.Thread(
            target=self._loop, args=(ctx,), name="leader-heartbeat", daemon=True
        )
        thread.start()
        return thread

    def _loop(self, ctx: RunContext) -> None:
        while not ctx.wait(self._interval):
            try:
                self.beat()
            except Exception as exc:
                LOGGER.warning("Leader heartbeat failed: %s", exc)
        LOGGER.debug("[Companion] Leader session context closed; heartbeat stopped")

    def beat(self) -> bool:
        if not self._bot.manager.in_session():
            return False
        self._bot.bus.publish(
            LeaderHeartbeat(
                leader=self._bot.name,
                game_name=self._bot.reader.last_session_name(),
                in_session=True,
            )
        )
        self.sent += 1
        return True

    def send_exit(self, game_name: str) -> None:
        self._bot.bus.publish(
            LeaderHeartbeat(leader=self._bot.name, game_name=game_name, in_session=False)
        )
        LOGGER.info("[Companion] Leader sent exit heartbeat for %s", game_name)
