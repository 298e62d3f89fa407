"""Corrective inputs for the activity watchdog (virtual gamepad or stub)."""
from __future__ import annotations

import importlib
import logging
import time
from types import ModuleType
from typing import Callable, Dict, Iterable

LOGGER = logging.getLogger(__name__)

_BUTTON_ALIASES = {
    "A": "XUSB_GAMEPAD_A",
    "B": "XUSB_GAMEPAD_B",
    "X": "XUSB_GAMEPAD_X",
    "Y": "XUSB_GAMEPAD_Y",
    "LB": "XUSB_GAMEPAD_LEFT_SHOULDER",
    "RB": "XUSB_GAMEPAD_RIGHT_SHOULDER",
    "BACK": "XUSB_GAMEPAD_BACK",
    "START": "XUSB_GAMEPAD_START",
}


def resolve_button(vg: ModuleType, name: str):
    key = (name or "").strip().upper()
    attr = _BUTTON_ALIASES.get(key)
    if not attr:
        return None
    return getattr(vg.XUSB_BUTTON, attr, None)


class GamepadNudger:
    """Tilts the left stick and taps a button on a virtual Xbox 360 pad."""

    def __init__(
        self,
        *,
        button: str = "A",
        stick: tuple[float, float] = (0.6, 0.6),
        hold_seconds: float = 0.3,
        module: ModuleType | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._vg = module or importlib.import_module("vgamepad")
        self._gamepad = self._vg.VX360Gamepad()
        self._button = resolve_button(self._vg, button)
        if self._button is None:
            raise ValueError(f"Unknown gamepad button: {button}")
        self._stick = stick
        self._hold = hold_seconds
        self._sleep = sleep
        self.nudges = 0

    def nudge(self) -> None:
        gamepad = self._gamepad
        gamepad.left_joystick_float(*self._stick)
        gamepad.press_button(button=self._button)
        gamepad.update()
        self._sleep(max(0.0, self._hold))
        self.release_all()
        self.nudges += 1

    def release_all(self) -> None:
        gamepad = self._gamepad
        gamepad.left_joystick_float(0.0, 0.0)
        for name in _BUTTON_ALIASES:
            gamepad.release_button(button=resolve_button(self._vg, name))
        gamepad.update()


class StubNudger:
    """Logs instead of sending input; used on hosts without a virtual pad."""

    def __init__(self) -> None:
        self.nudges = 0

    def nudge(self) -> None:
        self.nudges += 1
        LOGGER.info("Remediation input requested (stub backend, nothing sent)")


_FACTORIES: Dict[str, Callable[[], object]] = {
    "gamepad": GamepadNudger,
    "stub": StubNudger,
}


def available_inputs() -> Iterable[str]:
    return sorted(_FACTORIES)


def resolve_input_factory(name: str) -> Callable[[], object]:
    key = (name or "").strip().lower()
    try:
        return _FACTORIES[key]
    except KeyError:
        raise ValueError(
            f"Unknown remediation input '{name}'. Available: {', '.join(available_inputs())}"
        ) from None
