"""Tests for supervisor configuration loading."""
from __future__ import annotations

import pytest

from sessionkeeper.config import (
    CompanionRole,
    SupervisorConfigError,
    load_supervisor_config,
    load_supervisor_configs,
    redact_secret,
)


def _env(**extra: str) -> dict[str, str]:
    env = {"SK_CHARACTER_NAME": "Sorc"}
    env.update(extra)
    return env


def test_load_supervisor_config_defaults() -> None:
    config = load_supervisor_config(_env())
    assert config.character_name == "Sorc"
    assert config.companion_role is CompanionRole.DISABLED
    assert config.online is False
    assert config.public_game_counter == 1
    assert config.difficulty == "Normal"
    assert config.runs == ()
    assert config.client_executable is None
    assert config.remediation_input == "stub"
    assert config.timings.menu_flow_ceiling == 180.0
    assert config.timings.heartbeat_stale_after == 30.0


def test_character_name_is_required() -> None:
    with pytest.raises(SupervisorConfigError, match="SK_CHARACTER_NAME"):
        load_supervisor_config({})


def test_companion_roles() -> None:
    leader = load_supervisor_config(
        _env(SK_COMPANION_ENABLED="1", SK_COMPANION_LEADER="true")
    )
    follower = load_supervisor_config(
        _env(SK_COMPANION_ENABLED="yes", SK_LEADER_NAME="Pally")
    )
    assert leader.companion_role is CompanionRole.LEADER
    assert follower.companion_role is CompanionRole.FOLLOWER
    assert follower.leader_name == "Pally"


def test_invalid_boolean_names_variable() -> None:
    with pytest.raises(SupervisorConfigError, match="SK_RANDOMIZE_RUNS"):
        load_supervisor_config(_env(SK_RANDOMIZE_RUNS="maybe"))


def test_runs_are_normalized_and_deduplicated() -> None:
    config = load_supervisor_config(_env(SK_RUNS="Pindleskin, mephisto,pindleskin,,"))
    assert config.runs == ("pindleskin", "mephisto")


def test_difficulty_is_validated() -> None:
    assert load_supervisor_config(_env(SK_DIFFICULTY="hell")).difficulty == "Hell"
    with pytest.raises(SupervisorConfigError, match="SK_DIFFICULTY"):
        load_supervisor_config(_env(SK_DIFFICULTY="Impossible"))


def test_counter_must_be_positive() -> None:
    with pytest.raises(SupervisorConfigError, match="SK_PUBLIC_GAME_COUNTER"):
        load_supervisor_config(_env(SK_PUBLIC_GAME_COUNTER="0"))


def test_client_executable_must_exist(tmp_path) -> None:
    with pytest.raises(SupervisorConfigError, match="does not exist"):
        load_supervisor_config(_env(SK_CLIENT_EXECUTABLE=str(tmp_path / "missing.exe")))
    exe = tmp_path / "Game.exe"
    exe.write_text("stub")
    config = load_supervisor_config(_env(SK_CLIENT_EXECUTABLE=str(exe)))
    assert config.client_executable == exe.resolve()


def test_online_follows_auth_method() -> None:
    assert load_supervisor_config(_env(SK_AUTH_METHOD="Token")).online is True


def test_redact_secret() -> None:
    assert redact_secret("hunter22") == "******22"
    assert redact_secret("ab") == "**"
    assert redact_secret("") == ""


def test_single_character_without_characters_list() -> None:
    configs = load_supervisor_configs(_env(SK_COMPANION_ENABLED="1", SK_LEADER_NAME="Pally"))
    assert [config.character_name for config in configs] == ["Sorc"]
    assert configs[0].companion_role is CompanionRole.FOLLOWER


def test_characters_list_assigns_roles() -> None:
    configs = load_supervisor_configs(
        {"SK_CHARACTERS": "Sorc:leader, Pally:follower, Hammerdin", "SK_DIFFICULTY": "hell"}
    )
    assert [config.character_name for config in configs] == ["Sorc", "Pally", "Hammerdin"]
    assert [config.companion_role for config in configs] == [
        CompanionRole.LEADER,
        CompanionRole.FOLLOWER,
        CompanionRole.DISABLED,
    ]
    assert configs[1].leader_name == "Sorc"
    assert configs[0].leader_name == ""
    assert {config.difficulty for config in configs} == {"Hell"}


def test_characters_list_followers_can_follow_named_leader() -> None:
    configs = load_supervisor_configs({"SK_CHARACTERS": "Pally:follower", "SK_LEADER_NAME": "Sorc"})
    assert configs[0].leader_name == "Sorc"


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("Sorc:leader,Pally:leader", "at most one leader"),
        ("Sorc,Sorc:follower", "lists Sorc twice"),
        ("Sorc:captain", "must be leader or follower"),
        (":leader", "need a character name"),
    ],
)
def test_characters_list_is_validated(raw: str, message: str) -> None:
    with pytest.raises(SupervisorConfigError, match=message):
        load_supervisor_configs({"SK_CHARACTERS": raw})
