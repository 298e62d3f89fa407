"""Read-mostly JSON routes over running supervisors.

With several characters attached, pass ``?character=NAME``; without it the
first attached character answers.
"""
from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, request

from sessionkeeper.companion import CompanionCoordinator
from sessionkeeper.supervisor import SessionSupervisor
from sessionkeeper.web.decorators import json_endpoint

bp = Blueprint("status", __name__)


def _lookup(registry_key: str, label: str) -> Any:
    registry = current_app.config.get(registry_key) or {}
    character = request.args.get("character")
    if character:
        try:
            return registry[character]
        except KeyError:
            raise LookupError(f"Unknown character {character}") from None
    if not registry:
        raise LookupError(f"No {label} attached")
    return next(iter(registry.values()))


def _supervisor() -> SessionSupervisor:
    return _lookup("SUPERVISORS", "supervisor")


def _coordinator() -> CompanionCoordinator:
    return _lookup("COORDINATORS", "companion coordinator")


def _parse_limit(value: str | None) -> int:
    if not value:
        return 50
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError("limit must be an integer") from exc
    if parsed < 1:
        raise ValueError("limit must be >= 1")
    return min(parsed, 200)


@bp.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@bp.get("/api/characters")
@json_endpoint
def api_characters() -> Dict[str, Any]:
    supervisors = current_app.config.get("SUPERVISORS") or {}
    coordinators = current_app.config.get("COORDINATORS") or {}
    names = list(dict.fromkeys([*supervisors, *coordinators]))
    characters = []
    for name in names:
        supervisor = supervisors.get(name)
        coordinator = coordinators.get(name)
        characters.append(
            {
                "name": name,
                "role": coordinator.role.value if coordinator else None,
                "state": supervisor.state.value if supervisor else None,
            }
        )
    return {"characters": characters, "count": len(characters)}


@bp.get("/api/status")
@json_endpoint
def api_status() -> Dict[str, Any]:
    status = _supervisor().status().to_dict()
    journal = current_app.config.get("JOURNAL")
    if journal is not None:
        status["event_counts"] = journal.counts()
    return status


@bp.get("/api/sessions")
@json_endpoint
def api_sessions() -> Dict[str, Any]:
    limit = _parse_limit(request.args.get("limit"))
    records = _supervisor().history()[-limit:]
    return {"sessions": [record.to_dict() for record in records], "count": len(records)}


@bp.post("/api/pause")
@json_endpoint
def api_toggle_pause() -> Dict[str, Any]:
    paused = _supervisor().toggle_pause()
    return {"paused": paused}


@bp.get("/api/companion")
@json_endpoint
def api_companion() -> Dict[str, Any]:
    coordinator = _coordinator()
    record = coordinator.heartbeat_snapshot()
    identity = coordinator.stored_session()
    return {
        "role": coordinator.role.value,
        "leader_name": coordinator.leader_name,
        "leader_in_session": record.leader_in_session,
        "current_game_name": record.current_game_name,
        "stored_game_name": identity.name,
        "has_password": bool(identity.password),
        "exit_signal_pending": coordinator.get_exit_signal().pending(),
    }


@bp.get("/api/shrines")
@json_endpoint
def api_shrines() -> Dict[str, Any]:
    reports = _coordinator().get_shrine_reports()
    return {"shrines": [report.to_dict() for report in reports], "count": len(reports)}
