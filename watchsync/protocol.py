"""WatchSync relay protocol definitions."""
from __future__ import annotations
import json
import time
from dataclasses import dataclass
from typing import Any

from watchsync.room_state import format_playback_time


class ProtocolError(ValueError):
    """Raised for frames that are not a valid envelope."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def make_envelope(msg_type: str, payload: Any) -> str:
    return json.dumps({"type": msg_type, "ts_utc_ms": _now_ms(), "payload": payload})


def parse_envelope(raw: str | bytes) -> tuple[str, int, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e
    if not isinstance(data, dict) or "type" not in data:
        raise ProtocolError("Frame is missing 'type'")
    return data["type"], data.get("ts_utc_ms", 0), data.get("payload", {})


# ---- Client → Relay message types ----
MSG_JOIN_ROOM = "joinRoom"
MSG_PING_CHECK = "pingCheck"
MSG_GET_STATE = "getState"
MSG_STATS_UPDATE = "statsUpdate"
MSG_CHANGE_USERNAME = "changeUsername"

# ---- Relay → Client message types ----
MSG_PONG_CHECK = "pongCheck"
MSG_SYNC_STATE = "syncState"
MSG_INIT = "init"
MSG_STATS = "stats"

# ---- Both directions ----
MSG_PLAY = "play"
MSG_PAUSE = "pause"
MSG_SEEK = "seek"
MSG_CHAT = "chat"

TRANSPORT_MESSAGES = {MSG_PLAY, MSG_PAUSE, MSG_SEEK}

SYSTEM_USERNAME = "System"


@dataclass
class MemberStats:
    username: str
    platform: str
    latency: float
    time: float

    def describe(self) -> str:
        return (f"{self.username} | {self.platform} | "
                f"{round(self.latency)} ms | {format_playback_time(self.time)}")


def parse_stats(payload: Any) -> list[MemberStats]:
    """Parse a `stats` payload (a list of member records); bad entries are skipped."""
    if not isinstance(payload, list):
        return []
    members = []
    for raw in payload:
        if not isinstance(raw, dict):
            continue
        try:
            members.append(MemberStats(
                username=str(raw.get("username", "?")),
                platform=str(raw.get("platform", "unknown")),
                latency=float(raw.get("latency", 0.0)),
                time=float(raw.get("time", 0.0)),
            ))
        except (TypeError, ValueError):
            continue
    return members
