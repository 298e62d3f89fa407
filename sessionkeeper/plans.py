"""Session plan building: run ordering, difficulty and level cap."""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import List, Sequence

from sessionkeeper.config import SupervisorConfig
from sessionkeeper.interfaces import CharacterCapabilities, GameReader, SessionManager

LOGGER = logging.getLogger(__name__)

# Runs that only move, scan or idle; everything else needs combat.
NON_COMBAT_RUNS = frozenset({"companion_idle", "experience_shrine", "shrine_hunt"})
DIFFICULTY_CHANGES = {"Nightmare", "Hell"}


class SessionPlanError(ValueError):
    """Raised when no playable plan can be built."""


@dataclass(frozen=True)
class SessionPlan:
    """Normalized, ordered list of runs for one session."""

    runs: List[str]
    difficulty: str = "Normal"
    skipped: List[str] = field(default_factory=list)
    randomized: bool = False

    def __len__(self) -> int:
        return len(self.runs)

    def describe(self) -> str:
        return ", ".join(self.runs) if self.runs else "(no runs)"


def build_session_plan(
    config: SupervisorConfig,
    manager: SessionManager,
    reader: GameReader,
    capabilities: CharacterCapabilities,
    rng: random.Random | None = None,
) -> SessionPlan | None:
    """Order the configured runs for a new session.

    Returns None when the character already reached the configured level
    cap, which means the supervisor should stop.
    """

    if config.difficulty in DIFFICULTY_CHANGES:
        LOGGER.info("Changing difficulty to %s", config.difficulty)
        manager.change_difficulty(config.difficulty)

    if config.stop_leveling_at > 0:
        level = reader.character_level()
        if level >= config.stop_leveling_at:
            LOGGER.info(
                "Character level %s already reached %s, stopping.",
                level,
                config.stop_leveling_at,
            )
            return None

    runs, skipped = _filter_runs(config.runs, capabilities)
    if config.runs and not runs:
        raise SessionPlanError("no configured run is supported by this character")

    if config.randomize_runs:
        (rng or random.Random()).shuffle(runs)

    return SessionPlan(
        runs=runs,
        difficulty=config.difficulty,
        skipped=skipped,
        randomized=config.randomize_runs,
    )


def _filter_runs(
    runs: Sequence[str], capabilities: CharacterCapabilities
) -> tuple[List[str], List[str]]:
    if capabilities.supports_combat():
        return list(runs), []
    kept: List[str] = []
    skipped: List[str] = []
    for run in runs:
        if run in NON_COMBAT_RUNS:
            kept.append(run)
        else:
            skipped.append(run)
    if skipped:
        LOGGER.warning(
            "Character does not support combat; skipping runs: %s", ", ".join(skipped)
        )
    return kept, skipped
