"""Tests for remediation input backends."""
from __future__ import annotations

import logging
from types import SimpleNamespace

import pytest

from sessionkeeper.gamepad import GamepadNudger, StubNudger, resolve_input_factory


class _FakePad:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def left_joystick_float(self, x: float, y: float) -> None:
        self.events.append(("stick", x, y))

    def press_button(self, button) -> None:
        self.events.append(("press", button))

    def release_button(self, button) -> None:
        self.events.append(("release", button))

    def update(self) -> None:
        self.events.append(("update",))


def _fake_vgamepad():
    buttons = SimpleNamespace(
        XUSB_GAMEPAD_A="A",
        XUSB_GAMEPAD_B="B",
        XUSB_GAMEPAD_X="X",
        XUSB_GAMEPAD_Y="Y",
        XUSB_GAMEPAD_LEFT_SHOULDER="LB",
        XUSB_GAMEPAD_RIGHT_SHOULDER="RB",
        XUSB_GAMEPAD_BACK="BACK",
        XUSB_GAMEPAD_START="START",
    )
    return SimpleNamespace(XUSB_BUTTON=buttons, VX360Gamepad=_FakePad)


def test_gamepad_nudge_taps_and_releases() -> None:
    sleeps: list[float] = []
    nudger = GamepadNudger(button="a", module=_fake_vgamepad(), sleep=sleeps.append)
    nudger.nudge()

    events = nudger._gamepad.events
    assert events[0] == ("stick", 0.6, 0.6)
    assert events[1] == ("press", "A")
    assert ("stick", 0.0, 0.0) in events
    assert ("release", "A") in events
    assert events[-1] == ("update",)
    assert sleeps == [0.3]
    assert nudger.nudges == 1


def test_gamepad_rejects_unknown_button() -> None:
    with pytest.raises(ValueError, match="Unknown gamepad button"):
        GamepadNudger(button="TRIGGER", module=_fake_vgamepad())


def test_stub_nudger_logs(caplog) -> None:
    nudger = StubNudger()
    with caplog.at_level(logging.INFO):
        nudger.nudge()
    assert nudger.nudges == 1
    assert "stub backend" in caplog.text


def test_resolve_input_factory() -> None:
    assert resolve_input_factory("STUB") is StubNudger
    assert resolve_input_factory("gamepad") is GamepadNudger
    with pytest.raises(ValueError, match="Available: gamepad, stub"):
        resolve_input_factory("keyboard")
