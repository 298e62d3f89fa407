"""Tests for the menu navigator."""
from __future__ import annotations

import time

import pytest

from sessionkeeper.companion import CompanionCoordinator
from sessionkeeper.errors import MenuError, MenuTransient, UnrecoverableClientState
from sessionkeeper.events import JoinRequest, LeaderHeartbeat
from sessionkeeper.menu import MenuNavigator


def _navigator(bot) -> MenuNavigator:
    return MenuNavigator(bot, CompanionCoordinator(bot.config))


def _follower(make_bot):
    bot = make_bot(companion_enabled=True, leader_name="Pally", auth_method="Token")
    coordinator = CompanionCoordinator(bot.config)
    return bot, coordinator, MenuNavigator(bot, coordinator)


def test_loading_screen_is_transient(make_bot) -> None:
    bot = make_bot()
    bot.screen.loading = True
    with pytest.raises(MenuTransient):
        _navigator(bot).handle()
    assert bot.manager.calls == []


def test_still_in_session_exits_first(make_bot) -> None:
    bot = make_bot()
    bot.manager.in_game = True
    _navigator(bot).handle()
    assert bot.manager.calls == ["exit_session"]


def test_character_creation_is_left(make_bot) -> None:
    bot = make_bot()
    bot.screen.creation = True
    _navigator(bot).handle()
    assert bot.screen.back_presses == 1
    assert bot.manager.calls == ["new_session"]


def test_offline_creates_new_session(make_bot) -> None:
    bot = make_bot()
    _navigator(bot).handle()
    assert bot.manager.calls == ["new_session"]


def test_online_ensures_online_first(make_bot) -> None:
    bot = make_bot(auth_method="Token")
    _navigator(bot).handle()
    assert bot.manager.calls == ["ensure_online", "new_session"]


def test_dismissed_modal_continues_flow(make_bot) -> None:
    bot = make_bot()
    bot.screen.modal_text = "Connection interrupted"
    _navigator(bot).handle()
    assert bot.screen.back_presses == 1
    assert bot.manager.calls == ["new_session"]
    assert bot.attempt.failures == {}


def test_sticky_modal_escalates_on_third_failure(make_bot) -> None:
    bot = make_bot()
    bot.screen.modal_text = "Please wait"
    bot.screen.modal_sticky = True
    navigator = _navigator(bot)

    for expected in (1, 2):
        with pytest.raises(MenuError):
            navigator.handle()
        assert bot.attempt.failures["modal"] == expected
    with pytest.raises(UnrecoverableClientState):
        navigator.handle()
    assert "modal" not in bot.attempt.failures
    assert bot.manager.calls == []


def test_modal_counter_resets_once_screen_is_clear(make_bot) -> None:
    bot = make_bot()
    bot.screen.modal_text = "Please wait"
    bot.screen.modal_sticky = True
    navigator = _navigator(bot)
    with pytest.raises(MenuError):
        navigator.handle()
    bot.screen.modal_text = ""
    navigator.handle()
    assert "modal" not in bot.attempt.failures


def test_lobby_game_uses_and_advances_counter(make_bot) -> None:
    bot = make_bot(auth_method="Token", create_lobby_games=True, public_game_counter=7)
    _navigator(bot).handle()
    assert bot.screen.lobby_clicks == 1
    assert bot.manager.created == [7]
    assert bot.public_game_counter == 8


def test_lobby_game_failures_escalate_after_five(make_bot) -> None:
    bot = make_bot(auth_method="Token", create_lobby_games=True)
    bot.manager.create_errors = [RuntimeError("server busy") for _ in range(5)]
    navigator = _navigator(bot)
    for _ in range(4):
        with pytest.raises(MenuError, match="server busy"):
            navigator.handle()
    with pytest.raises(UnrecoverableClientState):
        navigator.handle()
    assert bot.manager.created == [1, 2, 3, 4, 5]
    assert bot.public_game_counter == 6
    assert "create" not in bot.attempt.failures


def test_failed_to_create_modal_escalates_after_three(make_bot) -> None:
    bot = make_bot(auth_method="Token", create_lobby_games=True)
    bot.screen.lobby = True
    bot.screen.selection = False
    bot.screen.modal_text = "Failed to create game"
    bot.screen.modal_sticky = True
    navigator = _navigator(bot)
    for _ in range(2):
        with pytest.raises(MenuError, match="Failed to create game"):
            navigator.handle_standard_flow()
    with pytest.raises(UnrecoverableClientState):
        navigator.handle_standard_flow()
    assert bot.public_game_counter == 4


def test_lobby_entry_failures_escalate_after_three(make_bot) -> None:
    bot = make_bot(auth_method="Token", create_lobby_games=True)
    bot.screen.lobby_after_clicks = None
    navigator = _navigator(bot)
    for _ in range(2):
        with pytest.raises(MenuError, match="enter lobby"):
            navigator.handle()
    with pytest.raises(UnrecoverableClientState):
        navigator.handle()
    assert bot.screen.lobby_clicks == 15
    assert bot.manager.created == []


def test_lobby_without_lobby_games_goes_back(make_bot) -> None:
    bot = make_bot(auth_method="Token")
    bot.screen.selection = False
    bot.screen.lobby = True

    def _back() -> None:
        bot.screen.back_presses += 1
        bot.screen.lobby = False
        bot.screen.selection = True

    bot.screen.back = _back
    _navigator(bot).handle()
    assert bot.screen.back_presses == 1
    assert bot.manager.calls == ["new_session"]


def test_unhandled_screen_is_a_menu_error(make_bot) -> None:
    bot = make_bot()
    bot.screen.selection = False
    with pytest.raises(MenuError, match="Unhandled"):
        _navigator(bot).handle()


def test_companion_without_identity_idles_quickly(make_bot) -> None:
    bot, _, navigator = _follower(make_bot)
    started = time.monotonic()
    with pytest.raises(MenuTransient, match="idle"):
        navigator.handle()
    assert time.monotonic() - started < 0.5
    assert bot.manager.joined == []


def test_companion_clears_identity_when_leader_in_other_game(make_bot) -> None:
    bot, coordinator, navigator = _follower(make_bot)
    coordinator.handle(JoinRequest(leader="Pally", name="G1", password="pw"))
    coordinator.handle(LeaderHeartbeat(leader="Pally", game_name="G2", in_session=True))

    with pytest.raises(MenuTransient, match="idle"):
        navigator.handle()
    assert not coordinator.stored_session()
    assert bot.manager.joined == []
    assert "ensure_online" not in bot.manager.calls


def test_companion_clears_identity_when_leader_never_confirms(make_bot) -> None:
    bot, coordinator, navigator = _follower(make_bot)
    coordinator.handle(JoinRequest(leader="Pally", name="G1", password="pw"))
    with pytest.raises(MenuTransient, match="idle"):
        navigator.handle()
    assert not coordinator.stored_session()
    assert bot.manager.joined == []


def test_companion_joins_confirmed_game_from_character_selection(make_bot) -> None:
    bot, coordinator, navigator = _follower(make_bot)
    coordinator.handle(JoinRequest(leader="Pally", name="G1", password="pw"))
    coordinator.handle(LeaderHeartbeat(leader="Pally", game_name="G1", in_session=True))

    navigator.handle()
    assert bot.manager.calls == ["ensure_online", "join"]
    assert bot.manager.joined == [("G1", "pw")]
    assert bot.screen.lobby_clicks == 1


def test_companion_joins_from_lobby(make_bot) -> None:
    bot, coordinator, navigator = _follower(make_bot)
    bot.screen.selection = False
    bot.screen.lobby = True
    coordinator.handle(JoinRequest(leader="Pally", name="G1", password="pw"))
    coordinator.handle(LeaderHeartbeat(leader="Pally", game_name="G1", in_session=True))

    navigator.handle()
    assert bot.manager.calls == ["join"]
