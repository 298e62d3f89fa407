"""In-session activity watchdog: stuck detection and tiered remediation."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from sessionkeeper.context import BotContext, RunContext
from sessionkeeper.errors import PlayerStuck
from sessionkeeper.interfaces import Position

LOGGER = logging.getLogger(__name__)


class WatchdogAction(str, Enum):
    NONE = "none"
    STUCK = "stuck"
    REMEDIATE = "remediate"
    RESTART = "restart"


@dataclass
class WatchdogState:
    last_position: Position | None = None
    last_sample_at: float | None = None
    stuck_since: float | None = None
    remediation_attempted: bool = False

    def reset_episode(self) -> None:
        self.stuck_since = None
        self.remediation_attempted = False


class ActivityWatchdog:
    """Samples the player position and escalates when it stops changing.

    An episode starts at the sample where the unchanged position was first
    seen. One remediation input is sent once the episode reaches
    ``remediate_after`` seconds; at ``max_stuck_duration`` the client is
    killed, the session context is cancelled and sampling stops.
    """

    def __init__(
        self,
        bot: BotContext,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._bot = bot
        self._clock = clock or bot.clock
        self._interval = bot.timings.watchdog_interval
        self._remediate_after = bot.timings.remediate_after
        self._max_stuck = bot.timings.max_stuck_duration
        self.state = WatchdogState()
        self.remediations = 0
        self.restarts = 0

    def start(self, ctx: RunContext) -> threading.Thread:
        thread = threading.Thread(
            target=self._loop, args=(ctx,), name="activity-watchdog", daemon=True
        )
        thread.start()
        return thread

    def _loop(self, ctx: RunContext) -> None:
        try:
            self._prime()
        except Exception as exc:
            LOGGER.warning("Activity watchdog could not read initial position: %s", exc)
        while not ctx.wait(self._interval):
            try:
                action = self.tick()
            except Exception as exc:
                LOGGER.warning("Activity watchdog sample failed: %s", exc)
                continue
            if action is WatchdogAction.RESTART:
                self._force_restart(ctx)
                return

    def _prime(self) -> None:
        if self._bot.manager.in_session() and self._bot.reader.player_present():
            self.state.last_position = self._bot.reader.player_position()
            self.state.last_sample_at = self._clock()

    def tick(self) -> WatchdogAction:
        if self._bot.paused:
            return WatchdogAction.NONE
        if not self._bot.manager.in_session() or not self._bot.reader.player_present():
            return WatchdogAction.NONE
        action = self.sample(self._bot.reader.player_position(), self._clock())
        if action is WatchdogAction.REMEDIATE:
            self._remediate()
        return action

    def sample(self, position: Position, now: float) -> WatchdogAction:
        state = self.state
        if state.last_position is None or position != state.last_position:
            state.reset_episode()
            state.last_position = position
            state.last_sample_at = now
            return WatchdogAction.NONE

        if state.stuck_since is None:
            state.stuck_since = state.last_sample_at if state.last_sample_at is not None else now
            state.remediation_attempted = False
        state.last_sample_at = now

        stuck_for = now - state.stuck_since
        if stuck_for >= self._max_stuck:
            return WatchdogAction.RESTART
        if stuck_for >= self._remediate_after and not state.remediation_attempted:
            state.remediation_attempted = True
            return WatchdogAction.REMEDIATE
        return WatchdogAction.STUCK

    def _remediate(self) -> None:
        LOGGER.warning(
            "Player stuck for %.0f seconds. Sending a corrective input...",
            self._remediate_after,
        )
        self.remediations += 1
        try:
            self._bot.remediation.nudge()
        except Exception as exc:
            LOGGER.warning("Corrective input failed: %s", exc)
            return
        LOGGER.info("Corrective input sent. Continuing to monitor for movement...")

    def _force_restart(self, ctx: RunContext) -> None:
        LOGGER.error(
            "Activity watchdog: player has been stuck for over %.0fs. Forcing client restart.",
            self._max_stuck,
        )
        self.restarts += 1
        try:
            self._bot.client.kill_client()
        except Exception as exc:
            LOGGER.error("Activity watchdog failed to kill client: %s", exc)
        ctx.cancel(PlayerStuck(f"no movement for {self._max_stuck:.0f}s"))
