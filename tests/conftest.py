"""Shared fakes for supervisor tests."""
from __future__ import annotations

from typing import Callable, List

import pytest

from sessionkeeper.config import SupervisorConfig, SupervisorTimings
from sessionkeeper.context import BotContext
from sessionkeeper.events import EventBus
from sessionkeeper.interfaces import Position

FAST_TIMINGS = SupervisorTimings(
    menu_action_timeout=1.0,
    menu_flow_ceiling=2.0,
    max_time_out_of_session=5.0,
    exit_confirm_timeout=0.3,
    exit_confirm_poll=0.01,
    exit_settle=0.0,
    success_settle=0.0,
    companion_recovery_wait=0.0,
    transient_sleep=0.0,
    error_backoff=0.0,
    loading_screen_sleep=0.0,
    heartbeat_interval=0.02,
    heartbeat_monitor_tick=0.02,
    heartbeat_stale_after=30.0,
    join_poll_window=0.2,
    join_poll_step=0.01,
    watchdog_interval=60.0,
    remediate_after=90.0,
    max_stuck_duration=180.0,
    character_selection_wait=0.5,
    screen_settle=0.0,
    modal_settle=0.0,
    lobby_click_settle=0.0,
    background_join_timeout=1.0,
)


class _FakeManager:
    def __init__(self) -> None:
        self.in_game = False
        self.calls: List[str] = []
        self.joined: List[tuple[str, str]] = []
        self.created: List[int] = []
        self.create_errors: List[Exception] = []
        self.exit_error: Exception | None = None
        self.stays_in_session = False
        self.difficulty = "Normal"

    def in_session(self) -> bool:
        return self.in_game

    def new_session(self) -> None:
        self.calls.append("new_session")
        self.in_game = True

    def exit_session(self) -> None:
        self.calls.append("exit_session")
        if self.exit_error is not None:
            raise self.exit_error
        if not self.stays_in_session:
            self.in_game = False

    def join_online_session(self, name: str, password: str) -> None:
        self.calls.append("join")
        self.joined.append((name, password))
        self.in_game = True

    def create_lobby_session(self, counter: int) -> str:
        self.calls.append("create_lobby")
        self.created.append(counter)
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.in_game = True
        return f"game-{counter}"

    def ensure_online(self) -> None:
        self.calls.append("ensure_online")

    def change_difficulty(self, difficulty: str) -> None:
        self.calls.append(f"difficulty:{difficulty}")
        self.difficulty = difficulty


class _FakeScreen:
    def __init__(self) -> None:
        self.loading = False
        self.creation = False
        self.selection = True
        self.lobby = False
        self.modal_text = ""
        self.modal_sticky = False
        self.lobby_after_clicks: int | None = 1
        self.back_presses = 0
        self.lobby_clicks = 0

    def is_loading_screen(self) -> bool:
        return self.loading

    def is_in_character_creation(self) -> bool:
        return self.creation

    def is_in_character_selection(self) -> bool:
        return self.selection

    def is_in_lobby(self) -> bool:
        return self.lobby

    def is_dismissable_modal_present(self) -> tuple[bool, str]:
        return bool(self.modal_text), self.modal_text

    def back(self) -> None:
        self.back_presses += 1
        self.creation = False
        if not self.modal_sticky:
            self.modal_text = ""

    def open_lobby(self) -> None:
        self.lobby_clicks += 1
        if self.lobby_after_clicks is not None and self.lobby_clicks >= self.lobby_after_clicks:
            self.lobby = True
            self.selection = False


class _FakeReader:
    def __init__(self) -> None:
        self.present = True
        self.position = Position(10, 10)
        self.level = 1
        self.game_name = "game-1"
        self.password = "pw"

    def player_present(self) -> bool:
        return self.present

    def player_position(self) -> Position:
        return self.position

    def character_level(self) -> int:
        return self.level

    def last_session_name(self) -> str:
        return self.game_name

    def last_session_password(self) -> str:
        return self.password


class _FakeClient:
    def __init__(self) -> None:
        self.started = 0
        self.kills = 0

    def ensure_running(self) -> None:
        self.started += 1

    def kill_client(self) -> None:
        self.kills += 1


class _FakeExecutor:
    """Runs ``behaviour(ctx, first_attempt, plan)`` for every session."""

    def __init__(self, behaviour: Callable | None = None) -> None:
        self.behaviour = behaviour
        self.sessions = 0
        self.first_attempts: List[bool] = []

    def run_session(self, ctx, first_attempt, plan) -> None:
        self.sessions += 1
        self.first_attempts.append(first_attempt)
        if self.behaviour is not None:
            self.behaviour(ctx, first_attempt, plan)


class _FakeCapabilities:
    def __init__(self, combat: bool = True, missing: List[str] | None = None) -> None:
        self.combat = combat
        self.missing = list(missing or [])

    def supports_combat(self) -> bool:
        return self.combat

    def missing_keybindings(self) -> List[str]:
        return list(self.missing)


class _FakeRemediation:
    def __init__(self) -> None:
        self.nudges = 0

    def nudge(self) -> None:
        self.nudges += 1


@pytest.fixture()
def make_config(tmp_path):
    def _make(**overrides) -> SupervisorConfig:
        values = {
            "character_name": "Sorc",
            "events_log": tmp_path / "events.log",
            "timings": FAST_TIMINGS,
        }
        values.update(overrides)
        return SupervisorConfig(**values)

    return _make


@pytest.fixture()
def make_bot(make_config):
    def _make(config: SupervisorConfig | None = None, **overrides) -> BotContext:
        return BotContext(
            config=config or make_config(**overrides),
            bus=EventBus(),
            manager=_FakeManager(),
            screen=_FakeScreen(),
            reader=_FakeReader(),
            client=_FakeClient(),
            executor=_FakeExecutor(),
            capabilities=_FakeCapabilities(),
            remediation=_FakeRemediation(),
        )

    return _make


@pytest.fixture()
def fast_timings() -> SupervisorTimings:
    return FAST_TIMINGS
