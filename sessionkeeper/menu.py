"""Menu navigation: one step at a time towards being in a session."""
from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sessionkeeper.companion import CompanionCoordinator, JoinDecision, SessionIdentity
from sessionkeeper.context import BotContext, call_with_timeout
from sessionkeeper.errors import MenuError, MenuTransient, UnrecoverableClientState

LOGGER = logging.getLogger(__name__)
T = TypeVar("T")

MAX_MODAL_DISMISS_ATTEMPTS = 3
MAX_LOBBY_CLICKS = 5
MAX_LOBBY_ENTRY_FAILURES = 3
MAX_GAME_CREATE_ATTEMPTS = 5
MAX_GAME_CREATE_MODAL_ATTEMPTS = 3
CREATE_FAILURE_MARKERS = ("failed to create game", "unable to join")


class MenuNavigator:
    """Looks at the current screen and performs the single next step.

    Every call either makes progress and returns, or raises: MenuTransient
    for loading/idle states, MenuError for a failed step worth retrying,
    UnrecoverableClientState once a failure class exhausts its ceiling.
    """

    def __init__(self, bot: BotContext, coordinator: CompanionCoordinator) -> None:
        self._bot = bot
        self._coordinator = coordinator

    def handle(self) -> None:
        bot = self._bot
        screen = bot.screen
        if screen.is_loading_screen():
            bot.sleep(bot.timings.loading_screen_sleep)
            raise MenuTransient("loading screen")

        LOGGER.debug("[Menu Flow]: Starting menu flow ...")

        if screen.is_in_character_creation():
            LOGGER.debug("[Menu Flow]: We're in character creation screen, exiting ...")
            screen.back()
            bot.sleep(bot.timings.screen_settle)
            if screen.is_in_character_creation():
                raise MenuError("[Menu Flow]: Failed to exit character creation screen")

        if bot.manager.in_session():
            LOGGER.debug("[Menu Flow]: We're still in game, exiting ...")
            self._call(bot.manager.exit_session, "exit session")
            return

        modal_present, text = screen.is_dismissable_modal_present()
        if modal_present:
            self._dismiss_modal(text)
        else:
            bot.attempt.reset("modal")

        if self._coordinator.is_follower:
            self.handle_companion_flow()
            return
        self.handle_standard_flow()

    def handle_standard_flow(self) -> None:
        bot = self._bot
        cfg = bot.config
        screen = bot.screen
        at_selection = screen.is_in_character_selection()

        if at_selection and cfg.online and not cfg.create_lobby_games:
            LOGGER.debug("[Menu Flow]: At character selection, ensuring we're online ...")
            self._call(bot.manager.ensure_online, "ensure online")
            LOGGER.debug("[Menu Flow]: We're online, creating new game ...")
            self._call(bot.manager.new_session, "new session")
            return
        if at_selection and not cfg.online:
            LOGGER.debug("[Menu Flow]: Creating new game ...")
            self._call(bot.manager.new_session, "new session")
            return

        at_lobby = screen.is_in_lobby()
        if cfg.create_lobby_games:
            if not at_lobby:
                LOGGER.debug("[Menu Flow]: Not at the lobby screen, trying to enter lobby ...")
                self._enter_lobby()
            self._create_lobby_game()
            return

        if at_lobby:
            LOGGER.debug("[Menu Flow]: In lobby but lobby games are disabled, going back ...")
            screen.back()
            bot.sleep(bot.timings.screen_settle)
            if screen.is_in_lobby():
                raise MenuError("[Menu Flow]: Failed to exit lobby")
            if screen.is_in_character_selection():
                self._call(bot.manager.new_session, "new session")
                return

        raise MenuError("[Menu Flow]: Unhandled menu scenario")

    def handle_companion_flow(self) -> None:
        bot = self._bot
        timings = bot.timings
        identity = self._coordinator.stored_session()
        if not identity:
            LOGGER.debug("[Menu Flow]: Companion waiting for leader to create game ...")
            bot.sleep(timings.join_poll_step)
            raise MenuTransient("idle")

        LOGGER.debug("[Menu Flow]: Waiting for leader to be in game %s ...", identity.name)
        decision = self._coordinator.await_leader_session(
            identity.name,
            timeout=timings.join_poll_window,
            step=timings.join_poll_step,
        )
        if decision is JoinDecision.DIFFERENT:
            LOGGER.warning(
                "[Menu Flow]: Leader is in a different game (%s), clearing stale game name %s",
                self._coordinator.get_current_game_name(),
                identity.name,
            )
            self._coordinator.clear_stored_session("(leader in another game)")
            raise MenuTransient("idle")
        if decision is JoinDecision.TIMEOUT:
            record = self._coordinator.heartbeat_snapshot()
            if not (record.leader_in_session and record.current_game_name == identity.name):
                LOGGER.warning(
                    "[Menu Flow]: Leader heartbeat timeout or leader not in %s "
                    "(leader game %r, in game %s), clearing stale game name",
                    identity.name,
                    record.current_game_name,
                    record.leader_in_session,
                )
                self._coordinator.clear_stored_session("(leader not confirmed)")
                raise MenuTransient("idle")

        LOGGER.info("[Menu Flow]: Leader confirmed in game %s, joining now", identity.name)
        screen = bot.screen
        if screen.is_in_character_selection():
            self._call(bot.manager.ensure_online, "ensure online")
            self._enter_lobby()
            self._join(identity)
            return
        if screen.is_in_lobby():
            LOGGER.debug("[Menu Flow]: We're in lobby, joining game ...")
            self._join(identity)
            return
        raise MenuError("[Menu Flow]: Unhandled companion menu scenario")

    def _join(self, identity: SessionIdentity) -> None:
        self._call(
            lambda: self._bot.manager.join_online_session(identity.name, identity.password),
            "join game",
        )

    def _dismiss_modal(self, text: str) -> None:
        bot = self._bot
        LOGGER.debug("[Menu Flow]: Detected dismissable modal with text: %s", text)
        bot.screen.back()
        bot.sleep(bot.timings.modal_settle)
        still_present, _ = bot.screen.is_dismissable_modal_present()
        if not still_present:
            bot.attempt.reset("modal")
            return
        LOGGER.warning("[Menu Flow]: Dismissable modal still present after dismiss attempt: %s", text)
        failures = bot.attempt.record_failure("modal")
        if failures >= MAX_MODAL_DISMISS_ATTEMPTS:
            bot.attempt.reset("modal")
            LOGGER.error(
                "[Menu Flow]: Failed to dismiss modal '%s' %d times. Assuming unrecoverable state.",
                text,
                MAX_MODAL_DISMISS_ATTEMPTS,
            )
            raise UnrecoverableClientState(f"modal '{text}' cannot be dismissed")
        raise MenuError("[Menu Flow]: Failed to dismiss popup (still present)")

    def _enter_lobby(self) -> None:
        bot = self._bot
        screen = bot.screen
        if screen.is_in_lobby():
            LOGGER.debug("[Menu Flow]: We're already in lobby")
            return
        for _ in range(MAX_LOBBY_CLICKS):
            LOGGER.info("Entering lobby (%s)", bot.name)
            screen.open_lobby()
            bot.sleep(bot.timings.lobby_click_settle)
            if screen.is_in_lobby():
                bot.attempt.reset("lobby")
                return
        failures = bot.attempt.record_failure("lobby")
        if failures >= MAX_LOBBY_ENTRY_FAILURES:
            bot.attempt.reset("lobby")
            LOGGER.error("[Menu Flow]: Failed to enter lobby %d times in a row.", failures)
            raise UnrecoverableClientState("lobby cannot be entered")
        raise MenuError(f"[Menu Flow]: Failed to enter lobby after {MAX_LOBBY_CLICKS} retries")

    def _create_lobby_game(self) -> None:
        bot = self._bot
        counter = bot.public_game_counter
        LOGGER.debug("[Menu Flow]: Trying to create lobby game %d ...", counter)
        try:
            self._call(lambda: bot.manager.create_lobby_session(counter), "create lobby game")
        except UnrecoverableClientState:
            raise
        except Exception as exc:
            bot.public_game_counter += 1
            failures = bot.attempt.record_failure("create")
            if failures >= MAX_GAME_CREATE_ATTEMPTS:
                bot.attempt.reset("create")
                LOGGER.error(
                    "[Menu Flow]: Failed to create lobby game %d times. Forcing client restart.",
                    MAX_GAME_CREATE_ATTEMPTS,
                )
                raise UnrecoverableClientState("lobby game creation keeps failing") from exc
            raise MenuError(f"[Menu Flow]: Failed to create lobby game: {exc}") from exc

        modal_present, text = bot.screen.is_dismissable_modal_present()
        if modal_present:
            bot.public_game_counter += 1
            LOGGER.warning("[Menu Flow]: Modal present after game creation attempt: %s", text)
            lowered = text.lower()
            if any(marker in lowered for marker in CREATE_FAILURE_MARKERS):
                failures = bot.attempt.record_failure("create")
                if failures >= MAX_GAME_CREATE_MODAL_ATTEMPTS:
                    bot.attempt.reset("create")
                    LOGGER.error(
                        "[Menu Flow]: 'Failed to create game' modal detected %d times. "
                        "Forcing client restart.",
                        MAX_GAME_CREATE_MODAL_ATTEMPTS,
                    )
                    raise UnrecoverableClientState(f"game creation rejected: {text}")
            raise MenuError(f"[Menu Flow]: Failed to create lobby game: {text}")

        LOGGER.debug("[Menu Flow]: Lobby game created successfully")
        bot.public_game_counter += 1
        bot.attempt.reset("create")

    def _call(self, func: Callable[[], T], description: str) -> T:
        return call_with_timeout(
            func,
            self._bot.timings.menu_action_timeout,
            description=description,
        )
