"""WatchSync echo suppression for programmatic transport changes."""
from __future__ import annotations
import enum
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger("watchsync.echo")


class TransportKind(str, enum.Enum):
    SEEK = "seek"
    PLAY = "play"
    PAUSE = "pause"


class EchoGuard:
    """
    Marks the next local player event of a kind as caused by us.

    arm() is called right before the engine mutates the player; the player's
    event handler then asks should_suppress(), which consumes the arm once.
    An arm that is not consumed within window_ms expires on its own so a
    later user action is never swallowed.
    """

    def __init__(self, window_ms: float = 1000.0,
                 clock: Optional[Callable[[], float]] = None) -> None:
        self.window_ms = window_ms
        self._clock = clock or time.monotonic
        self._deadlines: dict[TransportKind, float] = {}  # kind -> expiry (clock seconds)

    def arm(self, kind: TransportKind) -> None:
        self._deadlines[kind] = self._clock() + self.window_ms / 1000.0

    def is_armed(self, kind: TransportKind) -> bool:
        deadline = self._deadlines.get(kind)
        if deadline is None:
            return False
        if self._clock() > deadline:
            del self._deadlines[kind]
            logger.debug("Echo guard for %s expired unconsumed", kind.value)
            return False
        return True

    def should_suppress(self, kind: TransportKind) -> bool:
        if self.is_armed(kind):
            del self._deadlines[kind]
            return True
        return False

    def disarm(self, kind: TransportKind) -> None:
        """Drop an arm whose player command failed; no event will follow."""
        self._deadlines.pop(kind, None)

    def clear_expired(self) -> None:
        for kind in list(self._deadlines):
            self.is_armed(kind)

    def reset(self) -> None:
        self._deadlines.clear()
