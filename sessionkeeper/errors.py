"""Error taxonomy shared by the supervisor, menu navigator and watchdogs."""
from __future__ import annotations

from enum import Enum


class Disposition(str, Enum):
    """How the supervisor must react to a failure."""

    RETRY = "retry"
    STOP = "stop"
    RESTART = "restart"


class FinishReason(str, Enum):
    """Why a session ended, as reported on the event bus."""

    OK = "ok"
    CHICKEN = "chicken"
    MERC_CHICKEN = "merc_chicken"
    DIED = "died"
    ERROR = "error"


class SupervisorError(Exception):
    """Base class for supervisor failures."""

    disposition = Disposition.RETRY


class MenuTransient(SupervisorError):
    """Expected in-between state (loading screen, idle wait); retried at once."""


class MenuError(SupervisorError):
    """A menu step failed; retried after a short backoff."""


class OperationTimeout(MenuError):
    """A blocking collaborator call did not return in time."""


class UnrecoverableClientState(SupervisorError):
    """The client is in a state no retry can fix; it must be relaunched."""

    disposition = Disposition.RESTART

    def __init__(self, message: str = "unrecoverable client state, forcing restart"):
        super().__init__(message)


class SupervisorStopped(SupervisorError):
    """The supervisor was asked to stop."""

    disposition = Disposition.STOP


class SessionOutcome(SupervisorError):
    """Base class for the ways a gameplay session can end early."""

    finish_reason = FinishReason.ERROR


class PlayerRetreat(SessionOutcome):
    """Player health crossed the emergency threshold."""

    finish_reason = FinishReason.CHICKEN


class MercenaryRetreat(SessionOutcome):
    """Mercenary health crossed the emergency threshold."""

    finish_reason = FinishReason.MERC_CHICKEN


class PlayerDied(SessionOutcome):
    finish_reason = FinishReason.DIED


class SessionTimedOut(SessionOutcome):
    """The configured maximum session length elapsed."""


class PlayerStuck(SessionOutcome):
    """The activity watchdog saw no movement for too long."""


class LeaderLeftSession(SessionOutcome):
    """The leader this follower was tracking left the session."""

    finish_reason = FinishReason.OK


def disposition_of(exc: BaseException | None) -> Disposition | None:
    """Return the supervisor reaction for ``exc`` (None when there is no error)."""
    if exc is None:
        return None
    if isinstance(exc, SupervisorError):
        return exc.disposition
    return Disposition.RETRY


def classify_finish(exc: BaseException | None) -> FinishReason:
    if exc is None:
        return FinishReason.OK
    if isinstance(exc, SessionOutcome):
        return exc.finish_reason
    return FinishReason.ERROR


def is_emergency_retreat(reason: FinishReason) -> bool:
    return reason in {FinishReason.CHICKEN, FinishReason.MERC_CHICKEN}
