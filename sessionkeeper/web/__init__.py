"""Flask status surface for running supervisors."""
from __future__ import annotations

from flask import Flask

from sessionkeeper.companion import CompanionCoordinator
from sessionkeeper.events import EventJournal
from sessionkeeper.supervisor import SessionSupervisor
from sessionkeeper.web.routes import bp as status_blueprint


def create_status_app(
    supervisor: SessionSupervisor | None = None,
    coordinator: CompanionCoordinator | None = None,
    *,
    journal: EventJournal | None = None,
) -> Flask:
    app = Flask(__name__)
    app.config.update(
        SUPERVISORS={},
        COORDINATORS={},
        JOURNAL=journal,
    )
    if supervisor is not None:
        attach_supervisor(app, supervisor)
    if coordinator is not None:
        attach_coordinator(app, coordinator)
    app.register_blueprint(status_blueprint)
    return app


def attach_supervisor(app: Flask, supervisor: SessionSupervisor) -> None:
    """Serve ``supervisor`` under its character name, replacing a relaunched one."""
    app.config["SUPERVISORS"][supervisor.name] = supervisor


def attach_coordinator(app: Flask, coordinator: CompanionCoordinator) -> None:
    app.config["COORDINATORS"][coordinator.character_name] = coordinator


__all__ = ["attach_coordinator", "attach_supervisor", "create_status_app"]
