"""WatchSync authoritative room playback record."""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any

from watchsync.echo_guard import TransportKind


@dataclass
class RoomState:
    """
    Clock-stamped playback record shared by the room.

    `position` is only meaningful together with `paused` and
    `last_update_at` (relay clock, ms): while playing, the true position
    is position + elapsed relay time since last_update_at.
    """
    media_id: str = ""
    title: str = ""
    position: float = 0.0
    paused: bool = True
    last_update_at: float = 0.0

    @classmethod
    def from_init(cls, payload: dict[str, Any]) -> "RoomState":
        return cls(
            media_id=payload.get("videoUrl") or "",
            title=payload.get("title") or "",
            position=float(payload.get("currentTime", 0.0)),
            paused=bool(payload.get("paused", True)),
            last_update_at=float(payload.get("lastUpdate", 0.0)),
        )

    def project(self, relay_now: float, latency_ms: float = 0.0) -> float:
        """Position the room should be at by relay_now, in seconds."""
        if self.paused:
            return self.position
        return self.position + (relay_now - self.last_update_at - latency_ms) / 1000.0

    def apply_remote_play(self, position: float, relay_now: float) -> None:
        self.paused = False
        self.position = position
        self.last_update_at = relay_now

    def apply_remote_pause(self, position: float, relay_now: float) -> None:
        self.paused = True
        self.position = position
        self.last_update_at = relay_now

    def apply_remote_seek(self, position: float, relay_now: float) -> None:
        self.position = position
        self.last_update_at = relay_now

    def apply_remote_full_sync(self, position: float, paused: bool, relay_now: float) -> None:
        self.position = position
        self.paused = paused
        self.last_update_at = relay_now

    def record_local_user_action(self, kind: TransportKind, position: float,
                                 relay_now: float) -> None:
        self.position = position
        self.last_update_at = relay_now
        if kind == TransportKind.PLAY:
            self.paused = False
        elif kind == TransportKind.PAUSE:
            self.paused = True


def format_playback_time(seconds: float) -> str:
    """Render seconds as h:mm:ss."""
    total = int(max(0.0, seconds))
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h}:{m:02d}:{s:02d}"
