"""Configuration helpers for the session supervisor."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Mapping

LOGGER = logging.getLogger(__name__)
ALLOWED_DIFFICULTIES = {"Normal", "Nightmare", "Hell"}
ALLOWED_REMEDIATION_INPUTS = {"stub", "gamepad"}
DEFAULT_AUTH_METHOD = "None"
DEFAULT_ARTIFACTS_DIR = Path.cwd() / "sessionkeeper_artifacts"
DEFAULT_EVENTS_LOG = DEFAULT_ARTIFACTS_DIR / "events.log"
DEFAULT_STATUS_HOST = "127.0.0.1"


class SupervisorConfigError(Exception):
    """Raised when supervisor configuration is invalid."""


class CompanionRole(str, Enum):
    DISABLED = "disabled"
    LEADER = "leader"
    FOLLOWER = "follower"


@dataclass(frozen=True)
class SupervisorTimings:
    """Every bounded wait the supervisor performs, in seconds."""

    menu_action_timeout: float = 30.0
    menu_flow_ceiling: float = 180.0
    max_time_out_of_session: float = 180.0
    exit_confirm_timeout: float = 15.0
    exit_confirm_poll: float = 0.5
    exit_settle: float = 5.0
    success_settle: float = 3.0
    companion_recovery_wait: float = 10.0
    transient_sleep: float = 0.1
    error_backoff: float = 1.0
    loading_screen_sleep: float = 0.5
    heartbeat_interval: float = 5.0
    heartbeat_monitor_tick: float = 10.0
    heartbeat_stale_after: float = 30.0
    join_poll_window: float = 30.0
    join_poll_step: float = 0.2
    watchdog_interval: float = 15.0
    remediate_after: float = 90.0
    max_stuck_duration: float = 180.0
    character_selection_wait: float = 120.0
    screen_settle: float = 2.0
    modal_settle: float = 1.0
    lobby_click_settle: float = 1.0
    background_join_timeout: float = 2.0


@dataclass
class SupervisorConfig:
    character_name: str
    companion_enabled: bool = False
    companion_leader: bool = False
    leader_name: str = ""
    auth_method: str = DEFAULT_AUTH_METHOD
    create_lobby_games: bool = False
    public_game_counter: int = 1
    difficulty: str = "Normal"
    stop_leveling_at: int = 0
    runs: tuple[str, ...] = ()
    randomize_runs: bool = False
    max_game_length_seconds: int = 0
    client_executable: Path | None = None
    max_shutdown_seconds: int = 15
    remediation_input: str = "stub"
    events_log: Path = DEFAULT_EVENTS_LOG
    status_host: str = DEFAULT_STATUS_HOST
    status_port: int = 0
    collaborators: str | None = None
    timings: SupervisorTimings = field(default_factory=SupervisorTimings)

    @property
    def companion_role(self) -> CompanionRole:
        if not self.companion_enabled:
            return CompanionRole.DISABLED
        if self.companion_leader:
            return CompanionRole.LEADER
        return CompanionRole.FOLLOWER

    @property
    def online(self) -> bool:
        return self.auth_method != DEFAULT_AUTH_METHOD


def load_supervisor_config(env: Mapping[str, str] | None = None) -> SupervisorConfig:
    """Load environment variables into a SupervisorConfig."""
    env = env if env is not None else os.environ

    character = _require_non_empty(env.get("SK_CHARACTER_NAME"), "SK_CHARACTER_NAME")
    companion_enabled = _parse_bool(env.get("SK_COMPANION_ENABLED"), "SK_COMPANION_ENABLED")
    companion_leader = _parse_bool(env.get("SK_COMPANION_LEADER"), "SK_COMPANION_LEADER")
    leader_name = (env.get("SK_LEADER_NAME") or "").strip()
    if companion_enabled and companion_leader and leader_name:
        LOGGER.warning("SK_LEADER_NAME is ignored for a leader character")
    auth_method = _optional_string(env.get("SK_AUTH_METHOD")) or DEFAULT_AUTH_METHOD

    executable = env.get("SK_CLIENT_EXECUTABLE")
    client_executable = (
        _require_path(executable, "SK_CLIENT_EXECUTABLE")
        if executable and executable.strip()
        else None
    )

    return SupervisorConfig(
        character_name=character,
        companion_enabled=companion_enabled,
        companion_leader=companion_leader,
        leader_name=leader_name,
        auth_method=auth_method,
        create_lobby_games=_parse_bool(
            env.get("SK_CREATE_LOBBY_GAMES"), "SK_CREATE_LOBBY_GAMES"
        ),
        public_game_counter=_parse_positive_int(
            env.get("SK_PUBLIC_GAME_COUNTER"), 1, "SK_PUBLIC_GAME_COUNTER"
        ),
        difficulty=_parse_difficulty(env.get("SK_DIFFICULTY")),
        stop_leveling_at=_parse_non_negative_int(
            env.get("SK_STOP_LEVELING_AT"), 0, "SK_STOP_LEVELING_AT"
        ),
        runs=_parse_runs(env.get("SK_RUNS")),
        randomize_runs=_parse_bool(env.get("SK_RANDOMIZE_RUNS"), "SK_RANDOMIZE_RUNS"),
        max_game_length_seconds=_parse_non_negative_int(
            env.get("SK_MAX_GAME_LENGTH_SECONDS"), 0, "SK_MAX_GAME_LENGTH_SECONDS"
        ),
        client_executable=client_executable,
        max_shutdown_seconds=_parse_positive_int(
            env.get("SK_MAX_SHUTDOWN_SECONDS"), 15, "SK_MAX_SHUTDOWN_SECONDS"
        ),
        remediation_input=_parse_remediation_input(env.get("SK_REMEDIATION_INPUT")),
        events_log=_parse_events_log(env.get("SK_EVENTS_LOG")),
        status_host=_optional_string(env.get("SK_STATUS_HOST")) or DEFAULT_STATUS_HOST,
        status_port=_parse_non_negative_int(env.get("SK_STATUS_PORT"), 0, "SK_STATUS_PORT"),
        collaborators=_optional_string(env.get("SK_COLLABORATORS")),
    )


def load_supervisor_configs(env: Mapping[str, str] | None = None) -> List[SupervisorConfig]:
    """One config per supervised character.

    ``SK_CHARACTERS`` lists ``name[:role]`` entries (role ``leader``,
    ``follower`` or omitted for a standalone character); every other
    setting is shared. Followers follow the listed leader unless
    ``SK_LEADER_NAME`` names another one. Without ``SK_CHARACTERS`` the
    single ``SK_CHARACTER_NAME`` config is returned.
    """
    env = env if env is not None else os.environ
    entries = _parse_characters(env.get("SK_CHARACTERS"))
    if not entries:
        return [load_supervisor_config(env)]

    leaders = [name for name, role in entries if role is CompanionRole.LEADER]
    if len(leaders) > 1:
        raise SupervisorConfigError("SK_CHARACTERS may name at most one leader")
    base_env = dict(env)
    base_env["SK_CHARACTER_NAME"] = entries[0][0]
    base = load_supervisor_config(base_env)
    follow = base.leader_name or (leaders[0] if leaders else "")

    return [
        replace(
            base,
            character_name=name,
            companion_enabled=role is not CompanionRole.DISABLED,
            companion_leader=role is CompanionRole.LEADER,
            leader_name=follow if role is CompanionRole.FOLLOWER else "",
        )
        for name, role in entries
    ]


def redact_secret(value: str, visible: int = 2) -> str:
    """Redact sensitive values (game passwords) for logging."""
    if not value:
        return ""
    cleaned = value.strip()
    if len(cleaned) <= visible:
        return "*" * len(cleaned)
    hidden = "*" * (len(cleaned) - visible)
    return f"{hidden}{cleaned[-visible:]}"


def _require_path(raw_value: str | None, env_name: str) -> Path:
    path_value = _require_non_empty(raw_value, env_name)
    candidate = Path(path_value).expanduser().resolve()
    if not candidate.exists():
        raise SupervisorConfigError(f"{env_name} path does not exist: {candidate}")
    if not candidate.is_file():
        raise SupervisorConfigError(f"{env_name} must point to a file: {candidate}")
    return candidate


def _parse_positive_int(raw_value: str | None, default: int, env_name: str) -> int:
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise SupervisorConfigError(f"{env_name} must be an integer") from exc
    if value <= 0:
        raise SupervisorConfigError(f"{env_name} must be greater than zero")
    return value


def _parse_non_negative_int(raw_value: str | None, default: int, env_name: str) -> int:
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise SupervisorConfigError(f"{env_name} must be an integer") from exc
    if value < 0:
        raise SupervisorConfigError(f"{env_name} must be zero or positive")
    return value


def _parse_bool(raw_value: str | None, env_name: str, default: bool = False) -> bool:
    if raw_value is None or raw_value.strip() == "":
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise SupervisorConfigError(f"{env_name} must be a boolean (0/1, true/false)")


def _require_non_empty(raw_value: str | None, env_name: str) -> str:
    if not raw_value or not raw_value.strip():
        raise SupervisorConfigError(f"{env_name} is required")
    return raw_value.strip()


def _optional_string(raw_value: str | None) -> str | None:
    if raw_value is None:
        return None
    value = raw_value.strip()
    return value or None


def _parse_difficulty(raw_value: str | None) -> str:
    if raw_value is None or raw_value.strip() == "":
        return "Normal"
    value = raw_value.strip().capitalize()
    if value not in ALLOWED_DIFFICULTIES:
        allowed = ", ".join(sorted(ALLOWED_DIFFICULTIES))
        raise SupervisorConfigError(f"SK_DIFFICULTY must be one of: {allowed}")
    return value


def _parse_remediation_input(raw_value: str | None) -> str:
    if raw_value is None or raw_value.strip() == "":
        return "stub"
    value = raw_value.strip().lower()
    if value not in ALLOWED_REMEDIATION_INPUTS:
        allowed = ", ".join(sorted(ALLOWED_REMEDIATION_INPUTS))
        raise SupervisorConfigError(f"SK_REMEDIATION_INPUT must be one of: {allowed}")
    return value


def _parse_events_log(raw_value: str | None) -> Path:
    if not raw_value or not raw_value.strip():
        return DEFAULT_EVENTS_LOG
    return Path(raw_value).expanduser().resolve()


def _parse_runs(raw_value: str | None) -> tuple[str, ...]:
    if raw_value is None or raw_value.strip() == "":
        return ()
    runs = [part.strip().lower() for part in raw_value.split(",") if part.strip()]
    unique: list[str] = []
    for run in runs:
        if run not in unique:
            unique.append(run)
    return tuple(unique)


def _parse_characters(raw_value: str | None) -> List[tuple[str, CompanionRole]]:
    if raw_value is None or raw_value.strip() == "":
        return []
    entries: List[tuple[str, CompanionRole]] = []
    seen: set[str] = set()
    for part in raw_value.split(","):
        if not part.strip():
            continue
        name, _, raw_role = part.partition(":")
        name = name.strip()
        role_name = raw_role.strip().lower() or CompanionRole.DISABLED.value
        try:
            role = CompanionRole(role_name)
        except ValueError as exc:
            raise SupervisorConfigError(
                f"SK_CHARACTERS role for {name or '?'} must be leader or follower"
            ) from exc
        if not name:
            raise SupervisorConfigError("SK_CHARACTERS entries need a character name")
        if name in seen:
            raise SupervisorConfigError(f"SK_CHARACTERS lists {name} twice")
        seen.add(name)
        entries.append((name, role))
    return entries
