"""Session supervisor with leader/follower companion coordination."""
from __future__ import annotations

from .companion import CompanionCoordinator, HeartbeatBroadcaster
from .config import (
    SupervisorConfig,
    SupervisorTimings,
    load_supervisor_config,
    load_supervisor_configs,
)
from .context import BotContext, RunContext
from .events import EventBus
from .supervisor import SessionState, SessionSupervisor
from .watchdog import ActivityWatchdog

__all__ = [
    "ActivityWatchdog",
    "BotContext",
    "CompanionCoordinator",
    "EventBus",
    "HeartbeatBroadcaster",
    "RunContext",
    "SessionState",
    "SessionSupervisor",
    "SupervisorConfig",
    "SupervisorTimings",
    "load_supervisor_config",
    "load_supervisor_configs",
]
