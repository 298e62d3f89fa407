"""Tests for the event bus and journal."""
from __future__ import annotations

import logging

from sessionkeeper.errors import FinishReason
from sessionkeeper.events import (
    Event,
    EventBus,
    EventJournal,
    JoinRequest,
    LeaderHeartbeat,
    SessionFinished,
)


def test_subscribers_receive_matching_events_only() -> None:
    bus = EventBus()
    heartbeats: list[Event] = []
    everything: list[Event] = []
    bus.subscribe(LeaderHeartbeat, heartbeats.append)
    bus.subscribe(Event, everything.append)

    bus.publish(LeaderHeartbeat(leader="Pally", game_name="g1", in_session=True))
    bus.publish(JoinRequest(leader="Pally", name="g1", password="pw"))

    assert [event.kind for event in heartbeats] == ["LeaderHeartbeat"]
    assert [event.kind for event in everything] == ["LeaderHeartbeat", "JoinRequest"]


def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    seen: list[Event] = []
    subscription = bus.subscribe(JoinRequest, seen.append)
    assert subscription.unsubscribe() is True
    assert subscription.unsubscribe() is False
    assert bus.publish(JoinRequest(leader="Pally", name="g1", password="")) == 0
    assert seen == []
    assert bus.subscriber_count() == 0


def test_failing_handler_does_not_block_others(caplog) -> None:
    bus = EventBus()
    seen: list[Event] = []

    def _boom(event: Event) -> None:
        raise RuntimeError("boom")

    bus.subscribe(Event, _boom)
    bus.subscribe(Event, seen.append)
    with caplog.at_level(logging.WARNING):
        delivered = bus.publish(JoinRequest(leader="Pally", name="g1", password=""))
    assert delivered == 1
    assert len(seen) == 1
    assert "Event handler failed" in caplog.text


def test_journal_records_bus_events(tmp_path) -> None:
    bus = EventBus()
    journal = EventJournal(tmp_path / "logs" / "events.log")
    journal.attach(bus)

    bus.publish(JoinRequest(leader="Pally", name="g1", password="secret"))
    bus.publish(SessionFinished(supervisor="Pally", reason=FinishReason.CHICKEN))
    bus.publish(SessionFinished(supervisor="Pally", reason=FinishReason.OK))
    journal.detach()
    bus.publish(SessionFinished(supervisor="Pally", reason=FinishReason.OK))

    assert journal.count("SessionFinished") == 2
    assert journal.finish_counts() == {"chicken": 1, "ok": 1}
    lines = journal.lines()
    assert len(lines) == 3
    assert lines[0].split("\t")[1] == "JoinRequest"
    assert "secret" not in journal.log_path.read_text(encoding="utf-8")
    assert journal.log_path.read_text(encoding="utf-8").startswith("# Session Supervisor Events")
