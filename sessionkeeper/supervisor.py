"""Session supervisor: keeps one instance cycling through sessions."""
from __future__ import annotations

import logging
import random
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, NoReturn

from sessionkeeper.companion import CompanionCoordinator, ExitSignal, HeartbeatBroadcaster
from sessionkeeper.context import BotContext, RunContext, call_with_timeout
from sessionkeeper.errors import (
    Disposition,
    FinishReason,
    LeaderLeftSession,
    MenuTransient,
    SupervisorError,
    SupervisorStopped,
    UnrecoverableClientState,
    classify_finish,
    disposition_of,
    is_emergency_retreat,
)
from sessionkeeper.events import JoinRequest, ResetSessionInfo, SessionCreated, SessionFinished
from sessionkeeper.menu import MenuNavigator
from sessionkeeper.plans import SessionPlan, build_session_plan
from sessionkeeper.watchdog import ActivityWatchdog

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    NOT_IN_SESSION = "not_in_session"
    TRANSITIONING = "transitioning"
    IN_SESSION = "in_session"
    STOPPED = "stopped"
    UNRECOVERABLE = "unrecoverable"


@dataclass(frozen=True)
class SessionRecord:
    game_name: str
    started_at: datetime
    finished_at: datetime
    reason: FinishReason
    message: str = ""

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "game_name": self.game_name,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 1),
            "reason": self.reason.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class SupervisorStatus:
    name: str
    state: SessionState
    role: str
    paused: bool
    current_game: str
    sessions: int
    finish_counts: Dict[str, int] = field(default_factory=dict)
    consecutive_failures: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "role": self.role,
            "paused": self.paused,
            "current_game": self.current_game,
            "sessions": self.sessions,
            "finish_counts": dict(self.finish_counts),
            "consecutive_failures": self.consecutive_failures,
        }


class _MenuFlowFrozen(Exception):
    """The whole menu flow overran its ceiling."""


class SessionSupervisor:
    """Drives the menu navigator, the gameplay executor and their watchdogs.

    ``start()`` blocks until ``stop()`` is called (returns normally) or the
    client reaches a state only a relaunch can fix (the client is killed and
    :class:`UnrecoverableClientState` is raised).
    """

    def __init__(
        self,
        bot: BotContext,
        coordinator: CompanionCoordinator,
        *,
        rng: random.Random | None = None,
        navigator: MenuNavigator | None = None,
    ) -> None:
        self._bot = bot
        self._coordinator = coordinator
        self._navigator = navigator or MenuNavigator(bot, coordinator)
        self._broadcaster = HeartbeatBroadcaster(bot) if coordinator.is_leader else None
        self._rng = rng
        self._ctx = RunContext(name=f"supervisor-{bot.name}")
        self._lock = threading.Lock()
        self._state = SessionState.NOT_IN_SESSION
        self._current_game = ""
        self._history: List[SessionRecord] = []
        self._first_session = True
        self._out_of_session_since = bot.clock()
        self.watchdog: ActivityWatchdog | None = None

    # -- public controls ------------------------------------------------

    @property
    def name(self) -> str:
        return self._bot.name

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def stopping(self) -> bool:
        return self._bot.stop_event.is_set()

    def start(self) -> None:
        bot = self._bot
        LOGGER.info(
            "[%s] Starting supervisor (role %s)", bot.name, self._coordinator.role.value
        )
        try:
            bot.client.ensure_running()
            self._wait_for_character_selection()
            self._run_loop()
        except UnrecoverableClientState:
            self._set_state(SessionState.UNRECOVERABLE)
            raise
        self._set_state(SessionState.STOPPED)
        LOGGER.info("[%s] Supervisor stopped", bot.name)

    def stop(self) -> None:
        if self.stopping:
            return
        LOGGER.info("[%s] Stop requested", self._bot.name)
        self._bot.stop_event.set()
        self._ctx.cancel(SupervisorStopped("stop requested"))
        if self.state is not SessionState.UNRECOVERABLE:
            self._set_state(SessionState.STOPPED)

    def toggle_pause(self) -> bool:
        pause = self._bot.pause_event
        if pause.is_set():
            pause.clear()
            LOGGER.info("[%s] Resuming supervisor", self._bot.name)
        else:
            pause.set()
            LOGGER.info("[%s] Pausing supervisor", self._bot.name)
        return pause.is_set()

    def status(self) -> SupervisorStatus:
        with self._lock:
            state = self._state
            current_game = self._current_game
            history = list(self._history)
        counts = Counter(record.reason.value for record in history)
        return SupervisorStatus(
            name=self._bot.name,
            state=state,
            role=self._coordinator.role.value,
            paused=self._bot.paused,
            current_game=current_game,
            sessions=len(history),
            finish_counts=dict(counts),
            consecutive_failures=self._bot.attempt.consecutive_failure_count,
        )

    def history(self) -> List[SessionRecord]:
        with self._lock:
            return list(self._history)

    # -- main loop ------------------------------------------------------

    def _wait_for_character_selection(self) -> None:
        bot = self._bot
        timings = bot.timings
        if bot.manager.in_session():
            return
        deadline = bot.clock() + timings.character_selection_wait
        LOGGER.debug("[%s] Waiting for character selection screen ...", bot.name)
        while not bot.screen.is_in_character_selection():
            if bot.clock() >= deadline:
                raise SupervisorError(
                    f"character selection screen not reached within "
                    f"{timings.character_selection_wait:.0f}s"
                )
            if bot.sleep(timings.loading_screen_sleep):
                return

    def _run_loop(self) -> None:
        bot = self._bot
        timings = bot.timings
        first_attempt = True
        self._out_of_session_since = bot.clock()
        while not self.stopping:
            if bot.paused:
                self._out_of_session_since = bot.clock()
                bot.sleep(timings.error_backoff)
                continue

            if not bot.manager.in_session():
                if not self._run_menu_flow():
                    continue
                if not bot.manager.in_session():
                    continue

            self._run_session(first_attempt)
            first_attempt = False
            self._out_of_session_since = bot.clock()

    def _run_menu_flow(self) -> bool:
        """One menu step; False when the loop should start over."""
        bot = self._bot
        timings = bot.timings
        out_for = bot.clock() - self._out_of_session_since
        if out_for > timings.max_time_out_of_session:
            self._escalate(
                f"Been out of game for {out_for:.0f}s "
                f"(limit {timings.max_time_out_of_session:.0f}s)"
            )

        self._set_state(SessionState.TRANSITIONING)
        try:
            call_with_timeout(
                self._navigator.handle,
                timings.menu_flow_ceiling,
                description="menu flow",
                timeout_error=_MenuFlowFrozen,
            )
        except _MenuFlowFrozen:
            self._escalate(
                f"Menu flow frozen for {timings.menu_flow_ceiling:.0f}s"
            )
        except MenuTransient:
            bot.sleep(timings.transient_sleep)
            return False
        except UnrecoverableClientState as exc:
            self._escalate(str(exc))
        except Exception as exc:
            LOGGER.error("[%s] Error during menu flow: %s", bot.name, exc)
            bot.sleep(timings.error_backoff)
            return False
        return True

    # -- one session ----------------------------------------------------

    def _run_session(self, first_attempt: bool) -> None:
        bot = self._bot
        coordinator = self._coordinator
        game_name = bot.reader.last_session_name()
        with self._lock:
            self._current_game = game_name
        self._set_state(SessionState.IN_SESSION)

        plan = build_session_plan(
            bot.config, bot.manager, bot.reader, bot.capabilities, rng=self._rng
        )
        if plan is None:
            self.stop()
            return

        bot.last_buff_at = None
        bot.attempt.reset()
        bot.attempt.attempted_at = bot.clock()

        password = bot.reader.last_session_password()
        bot.bus.publish(SessionCreated(supervisor=bot.name, name=game_name, password=password))
        if coordinator.is_leader:
            coordinator.clear_shrine_reports()
            bot.bus.publish(JoinRequest(leader=bot.name, name=game_name, password=password))

        if self._first_session:
            self._first_session = False
            missing = bot.capabilities.missing_keybindings()
            if missing:
                LOGGER.warning(
                    "[%s] Missing key bindings (%s); pausing until they are configured",
                    bot.name,
                    ", ".join(missing),
                )
                bot.pause_event.set()

        LOGGER.info("[%s] Starting game %s with runs: %s", bot.name, game_name, plan.describe())
        started_at = datetime.now(timezone.utc)
        error = self._play(first_attempt, plan, game_name)

        if self.stopping:
            LOGGER.info("[%s] Supervisor stopping, leaving game %s as is", bot.name, game_name)
            return

        disposition = disposition_of(error)
        if disposition is Disposition.RESTART:
            self._escalate(f"Game {game_name} ended in an unrecoverable state: {error}")
        if disposition is Disposition.STOP:
            LOGGER.info("[%s] Game %s asked the supervisor to stop: %s", bot.name, game_name, error)
            self.stop()
            return

        reason = classify_finish(error)
        if reason is FinishReason.OK:
            self._complete_session(game_name, started_at, error)
        else:
            self._fail_session(game_name, started_at, error, reason)

    def _play(self, first_attempt: bool, plan: SessionPlan, game_name: str) -> BaseException | None:
        bot = self._bot
        timeout = bot.config.max_game_length_seconds or None
        session_ctx = self._ctx.child(timeout=timeout, name=f"session-{game_name}")

        threads: List[threading.Thread] = []
        if self._broadcaster is not None:
            threads.append(self._broadcaster.start(session_ctx))
        self.watchdog = ActivityWatchdog(bot)
        threads.append(self.watchdog.start(session_ctx))
        if self._coordinator.is_follower:
            self._coordinator.track_session(game_name)
            signal = self._coordinator.get_exit_signal()
            if signal.drain():
                LOGGER.debug("[%s] Discarded stale leader exit signal", bot.name)
            relay = threading.Thread(
                target=self._relay_exit_signal,
                args=(session_ctx, signal, game_name),
                name="companion-exit-relay",
                daemon=True,
            )
            relay.start()
            threads.append(relay)

        error: BaseException | None = None
        try:
            bot.executor.run_session(session_ctx, first_attempt, plan)
        except Exception as exc:
            error = exc
        finally:
            cause = session_ctx.cause if session_ctx.cancelled else None
            session_ctx.cancel()
            for thread in threads:
                thread.join(timeout=bot.timings.background_join_timeout)
            if self._coordinator.is_follower:
                self._coordinator.untrack_session()

        # a cancelled session reports its cancel cause; a relaunch request still wins
        if cause is not None and disposition_of(error) is not Disposition.RESTART:
            error = cause
        return error

    def _relay_exit_signal(self, ctx: RunContext, signal: ExitSignal, game_name: str) -> None:
        poll = self._bot.timings.exit_confirm_poll
        while not ctx.cancelled:
            if signal.wait(timeout=poll):
                LOGGER.info(
                    "[%s] Leader left game %s, ending companion session",
                    self._bot.name,
                    game_name,
                )
                ctx.cancel(LeaderLeftSession(f"leader left {game_name}"))
                return

    def _fail_session(
        self,
        game_name: str,
        started_at: datetime,
        error: BaseException | None,
        reason: FinishReason,
    ) -> None:
        bot = self._bot
        timings = bot.timings
        coordinator = self._coordinator
        LOGGER.warning("[%s] Game %s finished with %s: %s", bot.name, game_name, reason.value, error)

        try:
            call_with_timeout(
                bot.manager.exit_session,
                timings.menu_action_timeout,
                description="exit session",
            )
        except Exception as exc:
            self._escalate(f"Failed to exit game after error: {exc}")

        if self._broadcaster is not None:
            self._broadcaster.send_exit(game_name)

        if bot.sleep(timings.exit_settle):
            return
        if not self._await_session_exit():
            return

        if coordinator.is_follower and not is_emergency_retreat(reason):
            coordinator.clear_stored_session("(game ended with error)")
        self._finish(game_name, started_at, reason, str(error or ""))

        if coordinator.is_follower and is_emergency_retreat(reason):
            self._decide_rejoin()

    def _await_session_exit(self) -> bool:
        """Poll until the client left the session; False when stopped meanwhile."""
        bot = self._bot
        timings = bot.timings
        deadline = bot.clock() + timings.exit_confirm_timeout
        while bot.manager.in_session():
            if bot.clock() >= deadline:
                self._escalate(
                    f"Still in game {timings.exit_confirm_timeout:.0f}s after exit request"
                )
            if bot.sleep(timings.exit_confirm_poll):
                return False
        return True

    def _decide_rejoin(self) -> None:
        bot = self._bot
        coordinator = self._coordinator
        LOGGER.info(
            "[%s] Companion retreated, waiting %.0fs before deciding to rejoin",
            bot.name,
            bot.timings.companion_recovery_wait,
        )
        if bot.sleep(bot.timings.companion_recovery_wait):
            return
        identity = coordinator.stored_session()
        record = coordinator.heartbeat_snapshot()
        if identity and record.leader_in_session and record.current_game_name == identity.name:
            LOGGER.info("[%s] Leader still in game %s, will rejoin", bot.name, identity.name)
            return
        coordinator.clear_stored_session("(leader no longer in the game after retreat)")

    def _complete_session(
        self, game_name: str, started_at: datetime, error: BaseException | None
    ) -> None:
        bot = self._bot
        coordinator = self._coordinator
        self._finish(game_name, started_at, FinishReason.OK, str(error or ""))
        if coordinator.is_leader:
            bot.bus.publish(ResetSessionInfo(leader=bot.name))

        try:
            call_with_timeout(
                bot.manager.exit_session,
                bot.timings.menu_action_timeout,
                description="exit session",
            )
        except Exception as exc:
            bot.bus.publish(
                SessionFinished(
                    supervisor=bot.name,
                    reason=FinishReason.ERROR,
                    message=f"exit failed: {exc}",
                )
            )
            self._escalate(f"Failed to exit game after completion: {exc}")

        if self._broadcaster is not None:
            self._broadcaster.send_exit(game_name)
        if coordinator.is_follower:
            coordinator.clear_stored_session("(game completed)")
        bot.sleep(bot.timings.success_settle)

    def _finish(
        self, game_name: str, started_at: datetime, reason: FinishReason, message: str
    ) -> None:
        record = SessionRecord(
            game_name=game_name,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            reason=reason,
            message=message,
        )
        with self._lock:
            self._history.append(record)
            self._current_game = ""
            if self._state is SessionState.IN_SESSION:
                self._state = SessionState.NOT_IN_SESSION
        self._bot.bus.publish(
            SessionFinished(supervisor=self._bot.name, reason=reason, message=message)
        )
        LOGGER.info(
            "[%s] Game %s finished: %s (%.0fs)",
            self._bot.name,
            game_name,
            reason.value,
            record.duration_seconds,
        )

    def _escalate(self, message: str) -> NoReturn:
        bot = self._bot
        self._set_state(SessionState.UNRECOVERABLE)
        LOGGER.error("[%s] %s. Killing client.", bot.name, message)
        try:
            bot.client.kill_client()
        except Exception as exc:
            LOGGER.error("[%s] Failed to kill client: %s", bot.name, exc)
        raise UnrecoverableClientState(message)

    def _set_state(self, state: SessionState) -> None:
        with self._lock:
            if self._state is SessionState.UNRECOVERABLE and state is not SessionState.UNRECOVERABLE:
                return
            self._state = state
