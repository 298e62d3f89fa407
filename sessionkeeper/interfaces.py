"""Interfaces the supervisor consumes from its external collaborators."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Protocol, Tuple

if TYPE_CHECKING:  # pragma: no cover - typing only
    from sessionkeeper.context import RunContext
    from sessionkeeper.plans import SessionPlan


@dataclass(frozen=True)
class Position:
    x: int
    y: int


class SessionManager(Protocol):
    """Creates, joins and leaves sessions on behalf of the supervisor."""

    def in_session(self) -> bool:
        ...

    def new_session(self) -> None:
        ...

    def exit_session(self) -> None:
        ...

    def join_online_session(self, name: str, password: str) -> None:
        ...

    def create_lobby_session(self, counter: int) -> str:
        ...

    def ensure_online(self) -> None:
        ...

    def change_difficulty(self, difficulty: str) -> None:
        ...


class MenuScreen(Protocol):
    """Screen predicates plus the two inputs the menu flow needs."""

    def is_loading_screen(self) -> bool:
        ...

    def is_in_character_creation(self) -> bool:
        ...

    def is_in_character_selection(self) -> bool:
        ...

    def is_in_lobby(self) -> bool:
        ...

    def is_dismissable_modal_present(self) -> Tuple[bool, str]:
        ...

    def back(self) -> None:
        """Send the dismiss/escape input."""

    def open_lobby(self) -> None:
        """Click the lobby button on the character selection screen."""


class GameReader(Protocol):
    def player_present(self) -> bool:
        ...

    def player_position(self) -> Position:
        ...

    def character_level(self) -> int:
        ...

    def last_session_name(self) -> str:
        ...

    def last_session_password(self) -> str:
        ...


class GameplayExecutor(Protocol):
    def run_session(
        self, ctx: "RunContext", first_attempt: bool, plan: "SessionPlan"
    ) -> None:
        """Play one session; raise a SessionOutcome (or anything) to end it early."""


class ClientController(Protocol):
    def ensure_running(self) -> None:
        ...

    def kill_client(self) -> None:
        ...


class CharacterCapabilities(Protocol):
    def supports_combat(self) -> bool:
        ...

    def missing_keybindings(self) -> List[str]:
        ...


class RemediationInput(Protocol):
    def nudge(self) -> None:
        """Send one corrective input to a character that stopped moving."""
