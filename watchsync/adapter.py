"""WatchSync playback adapter interface."""
from __future__ import annotations
import abc
from typing import Awaitable, Callable, Optional

from watchsync.echo_guard import TransportKind


class AdapterError(RuntimeError):
    """The player could not carry out a command (not ready, media failed, ...)."""


class PlaybackAdapter(abc.ABC):
    """
    Capability surface the sync engine needs from a media player.

    The player reports every transport change (user-driven or programmatic)
    by awaiting on_transport_event; it cannot tell the two apart.
    """

    def __init__(self) -> None:
        self.on_transport_event: Optional[Callable[[TransportKind], Awaitable[None]]] = None
        self.on_media_error: Optional[Callable[[str], Awaitable[None]]] = None
        self.loaded_media: str = ""

    @abc.abstractmethod
    async def load(self, media_url: str) -> bool: ...

    @abc.abstractmethod
    async def get_position(self) -> Optional[float]:
        """Current position in seconds, or None if nothing is loaded."""

    @abc.abstractmethod
    async def set_position(self, seconds: float) -> None: ...

    @abc.abstractmethod
    async def is_paused(self) -> bool: ...

    @abc.abstractmethod
    async def play(self) -> None: ...

    @abc.abstractmethod
    async def pause(self) -> None: ...

    @abc.abstractmethod
    async def set_rate(self, multiplier: float) -> None: ...

    async def emit_transport_event(self, kind: TransportKind) -> None:
        if self.on_transport_event:
            await self.on_transport_event(kind)

    async def emit_media_error(self, reason: str) -> None:
        if self.on_media_error:
            await self.on_media_error(reason)
