"""CLI entrypoint: ``python -m sessionkeeper.run_supervisor``."""
from __future__ import annotations

import argparse
import importlib
import logging
import os
import shlex
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence

from sessionkeeper.client import ProcessClient
from sessionkeeper.companion import CompanionCoordinator
from sessionkeeper.config import SupervisorConfig, SupervisorConfigError, load_supervisor_configs
from sessionkeeper.console import ConsoleCommands
from sessionkeeper.context import BotContext, RunContext
from sessionkeeper.errors import SupervisorError, UnrecoverableClientState
from sessionkeeper.events import EventBus, EventJournal
from sessionkeeper.gamepad import resolve_input_factory
from sessionkeeper.plans import SessionPlanError
from sessionkeeper.reporting import SupervisorReport, write_report
from sessionkeeper.supervisor import SessionRecord, SessionSupervisor
from sessionkeeper.web import attach_coordinator, attach_supervisor, create_status_app

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

EXIT_STOPPED = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_UNRECOVERABLE = 3


@dataclass
class Collaborators:
    """External pieces a deployment plugs in through ``SK_COLLABORATORS``."""

    manager: Any
    screen: Any
    reader: Any
    executor: Any
    capabilities: Any
    client: Any = None
    remediation: Any = None


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Supervise game sessions for one or more characters, optionally as companions."
    )
    parser.add_argument("--character", help="Override SK_CHARACTER_NAME")
    parser.add_argument(
        "--characters",
        metavar="NAME[:ROLE],...",
        help="Supervise several characters on one event bus, e.g. Sorc:leader,Pally:follower",
    )
    role = parser.add_mutually_exclusive_group()
    role.add_argument(
        "--leader",
        action="store_true",
        help="Run as companion leader (sets SK_COMPANION_ENABLED/SK_COMPANION_LEADER)",
    )
    role.add_argument(
        "--follow",
        metavar="LEADER",
        help="Run as companion follower of LEADER",
    )
    parser.add_argument("--runs", help="Comma-separated run names (SK_RUNS)")
    parser.add_argument("--difficulty", help="Override SK_DIFFICULTY")
    parser.add_argument(
        "--max-game-length", type=int, help="Maximum seconds per game (0 = unbounded)"
    )
    parser.add_argument("--status-port", type=int, help="Serve the status API on this port")
    parser.add_argument(
        "--collaborators", help="module:factory building the game collaborators"
    )
    parser.add_argument(
        "--remediation-input",
        choices=["stub", "gamepad"],
        help="Backend for the stuck-player corrective input",
    )
    parser.add_argument(
        "--max-restarts",
        type=int,
        default=0,
        help="Relaunch the client this many times after an unrecoverable state",
    )
    parser.add_argument(
        "--no-console", action="store_true", help="Do not read commands from the terminal"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def apply_cli_overrides(args: argparse.Namespace) -> None:
    env = os.environ
    if args.character:
        env["SK_CHARACTER_NAME"] = args.character
    if args.characters:
        env["SK_CHARACTERS"] = args.characters
    if args.leader:
        env["SK_COMPANION_ENABLED"] = "1"
        env["SK_COMPANION_LEADER"] = "1"
    if args.follow:
        env["SK_COMPANION_ENABLED"] = "1"
        env["SK_COMPANION_LEADER"] = "0"
        env["SK_LEADER_NAME"] = args.follow
    if args.runs:
        env["SK_RUNS"] = args.runs
    if args.difficulty:
        env["SK_DIFFICULTY"] = args.difficulty
    if args.max_game_length is not None:
        env["SK_MAX_GAME_LENGTH_SECONDS"] = str(args.max_game_length)
    if args.status_port is not None:
        env["SK_STATUS_PORT"] = str(args.status_port)
    if args.collaborators:
        env["SK_COLLABORATORS"] = args.collaborators
    if args.remediation_input:
        env["SK_REMEDIATION_INPUT"] = args.remediation_input


def _debug_enabled(args: argparse.Namespace | None, env: Mapping[str, str]) -> bool:
    if args and getattr(args, "debug", False):
        return True
    raw = env.get("SESSIONKEEPER_DEBUG", "")
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _configure_logging(debug: bool, error_log: Path | None = None) -> None:
    level = logging.DEBUG if debug else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if error_log:
        error_log.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(error_log, encoding="utf-8")
        file_handler.setLevel(logging.ERROR)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


def load_collaborators(target: str | None, config: SupervisorConfig) -> Collaborators:
    """Import ``module:factory`` and call it with the config."""
    if not target:
        raise SupervisorConfigError("SK_COLLABORATORS is required (module:factory)")
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise SupervisorConfigError("SK_COLLABORATORS must look like 'package.module:factory'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise SupervisorConfigError(f"Cannot import collaborators module {module_name}: {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise SupervisorConfigError(f"{target} is not a callable factory")
    built = factory(config)
    if isinstance(built, Collaborators):
        return built
    if isinstance(built, Mapping):
        return Collaborators(**built)
    raise SupervisorConfigError(f"{target} must return a Collaborators or a mapping")


def build_bot_context(
    config: SupervisorConfig,
    bus: EventBus,
    collaborators: Collaborators,
) -> BotContext:
    client = collaborators.client or ProcessClient(
        config, log_dir=config.events_log.parent / config.character_name
    )
    remediation = collaborators.remediation
    if remediation is None:
        try:
            remediation = resolve_input_factory(config.remediation_input)()
        except Exception as exc:
            raise SupervisorConfigError(
                f"Remediation input '{config.remediation_input}' unavailable: {exc}"
            ) from exc
    return BotContext(
        config=config,
        bus=bus,
        manager=collaborators.manager,
        screen=collaborators.screen,
        reader=collaborators.reader,
        client=client,
        executor=collaborators.executor,
        capabilities=collaborators.capabilities,
        remediation=remediation,
    )


def _start_status_server(app, host: str, port: int) -> threading.Thread:
    thread = threading.Thread(
        target=app.run,
        kwargs={"host": host, "port": port, "debug": False, "use_reloader": False},
        name="status-server",
        daemon=True,
    )
    thread.start()
    LOGGER.info("Status API listening on http://%s:%s", host, port)
    return thread


@dataclass
class RunOutcome:
    exit_code: int
    exit_reason: str
    supervisors: List[SessionSupervisor]
    coordinator: CompanionCoordinator

    def records(self) -> List[SessionRecord]:
        return [record for supervisor in self.supervisors for record in supervisor.history()]


def run_supervisor(
    config: SupervisorConfig,
    collaborators: Collaborators,
    *,
    bus: EventBus | None = None,
    coordinator: CompanionCoordinator | None = None,
    max_restarts: int = 0,
    on_supervisor: Callable[[SessionSupervisor], None] | None = None,
    stop_event: threading.Event | None = None,
    subscribe: bool = True,
) -> RunOutcome:
    """Run supervisors until stopped, relaunching after unrecoverable states."""
    bus = bus or EventBus()
    coordinator = coordinator or CompanionCoordinator(config)
    subscriptions = coordinator.subscribe(bus) if subscribe else []
    process_ctx = RunContext(name=f"process-{config.character_name}")
    coordinator.start_heartbeat_monitor(process_ctx)
    outcome = RunOutcome(EXIT_STOPPED, "stopped", [], coordinator)
    try:
        for attempt in range(max_restarts + 1):
            if stop_event is not None and stop_event.is_set():
                break
            bot = build_bot_context(config, bus, collaborators)
            supervisor = SessionSupervisor(bot, coordinator)
            outcome.supervisors.append(supervisor)
            if on_supervisor:
                on_supervisor(supervisor)
            if stop_event is not None and stop_event.is_set():
                supervisor.stop()
            try:
                supervisor.start()
            except UnrecoverableClientState as exc:
                LOGGER.error(
                    "[%s] Supervisor hit an unrecoverable state (%d/%d): %s",
                    config.character_name,
                    attempt + 1,
                    max_restarts + 1,
                    exc,
                )
                outcome.exit_code = EXIT_UNRECOVERABLE
                outcome.exit_reason = f"unrecoverable client state: {exc}"
                continue
            except (SupervisorError, SessionPlanError) as exc:
                LOGGER.error("[%s] Supervisor failed: %s", config.character_name, exc)
                outcome.exit_code = EXIT_ERROR
                outcome.exit_reason = str(exc)
                break
            except KeyboardInterrupt:
                LOGGER.info("Interrupted, stopping supervisor")
                supervisor.stop()
            outcome.exit_code = EXIT_STOPPED
            outcome.exit_reason = "stopped"
            break
    finally:
        process_ctx.cancel()
        for subscription in subscriptions:
            subscription.unsubscribe()
    return outcome


class SupervisorGroup:
    """One relaunch loop per character, all publishing on one event bus.

    Every character gets its own coordinator, subscribed before any loop
    starts, so a leader's join requests and heartbeats reach its followers.
    When one character's loop ends the others are stopped as well.
    """

    def __init__(
        self,
        entries: Sequence[tuple[SupervisorConfig, Collaborators]],
        *,
        bus: EventBus | None = None,
        max_restarts: int = 0,
        on_supervisor: Callable[[SessionSupervisor], None] | None = None,
    ) -> None:
        if not entries:
            raise SupervisorConfigError("At least one character is required")
        self.bus = bus or EventBus()
        self._entries = list(entries)
        self.coordinators = [CompanionCoordinator(config) for config, _ in self._entries]
        self.outcomes = [
            RunOutcome(EXIT_STOPPED, "stopped", [], coordinator)
            for coordinator in self.coordinators
        ]
        self._max_restarts = max_restarts
        self._on_supervisor = on_supervisor
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._current: Dict[str, SessionSupervisor] = {}

    @property
    def supervisors(self) -> List[SessionSupervisor]:
        with self._lock:
            return list(self._current.values())

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> List[RunOutcome]:
        subscriptions = [
            subscription
            for coordinator in self.coordinators
            for subscription in coordinator.subscribe(self.bus)
        ]
        threads: List[threading.Thread] = []
        try:
            for index, (config, collaborators) in enumerate(self._entries):
                thread = threading.Thread(
                    target=self._run_one,
                    args=(index, config, collaborators),
                    name=f"supervisor-{config.character_name}",
                    daemon=True,
                )
                thread.start()
                threads.append(thread)
            try:
                for thread in threads:
                    while thread.is_alive():
                        thread.join(timeout=0.5)
            except KeyboardInterrupt:
                LOGGER.info("Interrupted, stopping all supervisors")
                self.stop()
                for thread in threads:
                    thread.join()
        finally:
            for subscription in subscriptions:
                subscription.unsubscribe()
        return list(self.outcomes)

    def stop(self) -> None:
        self._stop_event.set()
        for supervisor in self.supervisors:
            supervisor.stop()

    def toggle_pause(self) -> bool:
        supervisors = self.supervisors
        paused = not all(supervisor.status().paused for supervisor in supervisors)
        for supervisor in supervisors:
            if supervisor.status().paused != paused:
                supervisor.toggle_pause()
        return paused

    def status(self) -> List[Dict[str, Any]]:
        return [supervisor.status().to_dict() for supervisor in self.supervisors]

    def _register(self, supervisor: SessionSupervisor) -> None:
        with self._lock:
            self._current[supervisor.name] = supervisor
        if self._on_supervisor:
            self._on_supervisor(supervisor)

    def _run_one(self, index: int, config: SupervisorConfig, collaborators: Collaborators) -> None:
        coordinator = self.coordinators[index]
        try:
            self.outcomes[index] = run_supervisor(
                config,
                collaborators,
                bus=self.bus,
                coordinator=coordinator,
                max_restarts=self._max_restarts,
                on_supervisor=self._register,
                stop_event=self._stop_event,
                subscribe=False,
            )
        except SupervisorConfigError as exc:
            LOGGER.error("[%s] Invalid configuration: %s", config.character_name, exc)
            self.outcomes[index] = RunOutcome(EXIT_CONFIG, str(exc), [], coordinator)
        except Exception as exc:
            LOGGER.exception("[%s] Supervisor loop crashed", config.character_name)
            self.outcomes[index] = RunOutcome(EXIT_ERROR, str(exc), [], coordinator)
        if not self.stopping:
            LOGGER.info(
                "[%s] Supervisor loop ended (%s), stopping the other characters",
                config.character_name,
                self.outcomes[index].exit_reason,
            )
            self.stop()


def _format_command(argv: Sequence[str] | None) -> str:
    parts = ["python -m sessionkeeper.run_supervisor"]
    cli = argv if argv is not None else sys.argv[1:]
    if cli:
        parts.append(" ".join(shlex.quote(arg) for arg in cli))
    return " ".join(parts)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    apply_cli_overrides(args)
    debug = _debug_enabled(args, os.environ)
    try:
        configs = load_supervisor_configs()
    except SupervisorConfigError as exc:
        _configure_logging(debug)
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG
    primary = configs[0]
    artifacts_dir = primary.events_log.parent
    _configure_logging(debug, artifacts_dir / "errors.log")

    try:
        entries = [
            (config, load_collaborators(config.collaborators, config)) for config in configs
        ]
    except SupervisorConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG

    bus = EventBus()
    journal = EventJournal(primary.events_log)
    journal.attach(bus)

    status_app = None
    if primary.status_port:
        status_app = create_status_app(journal=journal)

    def _on_supervisor(supervisor: SessionSupervisor) -> None:
        if status_app is not None:
            attach_supervisor(status_app, supervisor)

    group = SupervisorGroup(
        entries,
        bus=bus,
        max_restarts=max(0, args.max_restarts),
        on_supervisor=_on_supervisor,
    )
    if status_app is not None:
        for coordinator in group.coordinators:
            attach_coordinator(status_app, coordinator)
        _start_status_server(status_app, primary.status_host, primary.status_port)

    console: ConsoleCommands | None = None
    if not args.no_console:
        console = ConsoleCommands(
            on_stop=group.stop,
            on_toggle_pause=group.toggle_pause,
            on_status=lambda: str(group.status() or "starting"),
        )
        console.start()

    started_at = datetime.now(timezone.utc)
    try:
        outcomes = group.run()
    finally:
        if console:
            console.stop()
        journal.detach()

    finished_at = datetime.now(timezone.utc)
    last_run_name = "report_last_run.md"
    for config, outcome in zip(configs, outcomes):
        if len(configs) > 1:
            last_run_name = f"report_last_run_{config.character_name}.md"
        report = SupervisorReport(
            character_name=config.character_name,
            role=config.companion_role.value,
            records=outcome.records(),
            command=_format_command(argv),
            started_at=started_at,
            finished_at=finished_at,
            exit_reason=outcome.exit_reason,
            shrines=outcome.coordinator.get_shrine_reports(),
            event_counts=journal.counts(),
        )
        write_report(report, artifacts_dir, last_run_name=last_run_name)
    return max(outcome.exit_code for outcome in outcomes)


if __name__ == "__main__":
    sys.exit(main())
