"""WatchSync client-side playback sync engine."""
from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from watchsync.adapter import PlaybackAdapter
from watchsync.clock_sync import ClockSync, compute_drift_correction
from watchsync.config import SyncConfig
from watchsync.echo_guard import EchoGuard, TransportKind
from watchsync.logging_utils import CorrectionTrace
from watchsync.protocol import (
    MSG_JOIN_ROOM, MSG_GET_STATE, MSG_STATS_UPDATE,
)
from watchsync.room_state import RoomState

logger = logging.getLogger("watchsync.client.sync")

SendFunc = Callable[[str, Any], Awaitable[None]]

# Reloads after a media error before waiting for the next `init`
MAX_MEDIA_RELOADS = 3


class SyncController:
    """
    Keeps the local player aligned with the room's authoritative state.

    Remote transport messages update the RoomState and are applied to the
    player with the EchoGuard armed, so the resulting player events are not
    broadcast back. Unsuppressed player events are the user's and go out
    to the relay. A periodic tick projects the RoomState to relay "now" and
    either nudges the playback rate or hard-seeks.

    Message handlers, player events and the tick all run under one lock, so
    none of them sees the RoomState or the player halfway through another.
    """

    def __init__(self, adapter: PlaybackAdapter, send_func: SendFunc, room_id: str,
                 username: str, config: Optional[SyncConfig] = None,
                 clock: Optional[ClockSync] = None, echo_guard: Optional[EchoGuard] = None,
                 platform: str = "desktop", trace_dir: Optional[Path] = None):
        """
        send_func: async callable(msg_type, payload) to send relay messages
        adapter: player the corrections are applied to
        """
        self.adapter = adapter
        self.send = send_func
        self.room_id = room_id
        self.username = username
        self.platform = platform
        self.config = config or SyncConfig()
        self.clock = clock or ClockSync(smoothing=self.config.clock_smoothing)
        self.echo = echo_guard or EchoGuard(window_ms=self.config.echo_window_ms)
        self.room: Optional[RoomState] = None
        self.trace = CorrectionTrace(trace_dir) if trace_dir is not None else None
        self.on_drift: Optional[Callable[[float, str], None]] = None  # (diff_s, action)
        self.on_title: Optional[Callable[[str], None]] = None
        self._lock = asyncio.Lock()
        # Bumped as soon as a player event that is not an expected echo arrives
        self._user_event_seq = 0
        self._media_reloads = 0
        self._running = False
        self._ping_task: Optional[asyncio.Task] = None
        self._loop_tasks: list[asyncio.Task] = []

        adapter.on_transport_event = self.on_transport_event
        adapter.on_media_error = self._on_media_error

    # ---- Lifecycle ----

    def start(self) -> None:
        """Start clock pings; the correction loops start once the room is seeded."""
        self._running = True
        if self._ping_task is None:
            self._ping_task = asyncio.create_task(self._ping_loop())

    def _start_sync_loops(self) -> None:
        if self._loop_tasks or not self._running:
            return
        self._loop_tasks = [
            asyncio.create_task(self._drift_loop()),
            asyncio.create_task(self._resync_loop()),
            asyncio.create_task(self._stats_loop()),
        ]

    async def stop(self) -> None:
        """Cancel every periodic task together."""
        self._running = False
        tasks = list(self._loop_tasks)
        if self._ping_task:
            tasks.append(self._ping_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_tasks = []
        self._ping_task = None
        self.echo.reset()

    @property
    def is_syncing(self) -> bool:
        return bool(self._loop_tasks)

    # ---- Outbound ----

    async def join(self) -> None:
        await self.send(MSG_JOIN_ROOM, {"roomId": self.room_id, "username": self.username})

    async def request_state(self) -> None:
        await self.send(MSG_GET_STATE, {"roomId": self.room_id})

    async def rejoin(self) -> None:
        """After a reconnect: re-announce and pull full state right away."""
        logger.info("Rejoining room %s", self.room_id)
        await self.join()
        await self.request_state()

    # ---- Inbound ----

    def on_pong(self, payload: dict) -> None:
        try:
            client_sent = float(payload["clientSent"])
            server_time = float(payload["serverTime"])
        except (KeyError, TypeError, ValueError):
            logger.debug("Ignoring malformed pongCheck: %r", payload)
            return
        est = self.clock.on_pong(client_sent, server_time)
        if est is not None:
            logger.debug("Clock offset=%.1fms latency=%.1fms", est.offset_ms, est.latency_ms)

    async def apply_init(self, payload: dict) -> None:
        """Seed the room from `init`, load media if it changed, align, start loops."""
        async with self._lock:
            self.room = RoomState.from_init(payload)
            self._media_reloads = 0
            if self.room.title and self.on_title:
                self.on_title(self.room.title)

            media = self.room.media_id
            if media and media != self.adapter.loaded_media:
                await self._load(media)

            await self._pause()
            await self.clock.probe(self.send)
            await self._align_to_room()
        self._start_sync_loops()

    async def apply_remote_play(self, payload: dict) -> None:
        position = self._payload_time(payload)
        if position is None:
            return
        async with self._lock:
            if self.room is None:
                return
            self.room.apply_remote_play(position, self.clock.now())
            await self._seek_if_off(position)
            await self._play()

    async def apply_remote_pause(self, payload: dict) -> None:
        position = self._payload_time(payload)
        if position is None:
            return
        async with self._lock:
            if self.room is None:
                return
            self.room.apply_remote_pause(position, self.clock.now())
            await self._seek_if_off(position)
            await self._pause()

    async def apply_remote_seek(self, payload: dict) -> None:
        position = self._payload_time(payload)
        if position is None:
            return
        async with self._lock:
            if self.room is None:
                return
            self.room.apply_remote_seek(position, self.clock.now())
            await self._seek(position)

    async def apply_sync_state(self, payload: dict) -> None:
        """Overwrite the record from `syncState`; the next tick moves the player."""
        async with self._lock:
            if self.room is None:
                logger.debug("syncState before init; ignored")
                return
            try:
                self.room.apply_remote_full_sync(
                    float(payload["currentTime"]),
                    bool(payload["paused"]),
                    float(payload["lastUpdate"]),
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Malformed syncState: %r", payload)

    async def on_transport_event(self, kind: TransportKind) -> None:
        """Player event handler: swallow our own echoes, broadcast the user's."""
        if not self.echo.is_armed(kind):
            # Lets a tick that is waiting on the player know its reading is stale
            self._user_event_seq += 1
        async with self._lock:
            if self.echo.should_suppress(kind):
                logger.debug("Suppressed echo: %s", kind.value)
                return
            if self.room is None:
                return
            position = await self._position()
            if position is None:
                return
            self.room.record_local_user_action(kind, position, self.clock.now())
            logger.info("Local %s at %.2fs", kind.value, position)
            await self.send(kind.value, {"roomId": self.room_id, "time": position})

    async def _on_media_error(self, reason: str) -> None:
        """Reload the room's media, put the player back in place, then pull state."""
        async with self._lock:
            # Whatever was loaded is gone; a later `init` must load it again.
            self.adapter.loaded_media = ""
            media = self.room.media_id if self.room is not None else ""
            if not media:
                logger.warning("Media error (%s) with no room media", reason)
            elif self._media_reloads >= MAX_MEDIA_RELOADS:
                logger.error("Media error (%s); gave up after %d reloads of %s",
                             reason, self._media_reloads, media)
            else:
                self._media_reloads += 1
                logger.warning("Media error (%s); reloading %s (attempt %d)",
                               reason, media, self._media_reloads)
                if await self._load(media):
                    await self._align_to_room()
        await self.request_state()

    # ---- Drift correction ----

    async def tick(self) -> tuple[str, float]:
        """
        One correction pass. Returns (action, value):
        ("skip", 0.0), ("hard_seek", target_s) or ("rate_adjust", rate).
        """
        async with self._lock:
            return await self._tick()

    async def _tick(self) -> tuple[str, float]:
        self.echo.clear_expired()
        if self.room is None or not self.clock.has_estimate:
            return "skip", 0.0

        await self._reconcile_paused()
        if not self.config.drift_correction:
            return "skip", 0.0

        seq = self._user_event_seq
        relay_now = self.clock.now()
        expected = max(0.0, self.room.project(relay_now, self.clock.latency_ms))
        actual = await self._position()
        if actual is None:
            return "skip", 0.0
        if seq != self._user_event_seq:
            # The user moved the player while we were reading it
            logger.debug("Tick skipped: player event pending")
            return "skip", 0.0

        diff = expected - actual
        action, rate = compute_drift_correction(
            diff_s=diff,
            hard_threshold_s=self.config.hard_threshold_s,
            nudge=self.config.nudge,
            rate_min=self.config.rate_min,
            rate_max=self.config.rate_max,
        )

        value = rate
        if action == "hard_seek":
            await self._seek(expected)
            value = expected
        else:
            try:
                await self.adapter.set_rate(rate)
            except Exception as e:
                logger.warning("set_rate failed: %s", e)

        if self.on_drift:
            self.on_drift(diff, action)
        if self.config.trace_corrections and self.trace is not None:
            self.trace.write(relay_now=relay_now, expected=expected, actual=actual,
                             diff=diff, action=action, value=value)
        logger.debug("Drift: %+.3fs -> action=%s value=%.3f", diff, action, value)
        return action, value

    async def _reconcile_paused(self) -> None:
        try:
            player_paused = await self.adapter.is_paused()
        except Exception as e:
            logger.warning("is_paused failed: %s", e)
            return
        if self.room.paused and not player_paused:
            await self._pause()
        elif not self.room.paused and player_paused:
            await self._play()

    async def _align_to_room(self) -> None:
        target = max(0.0, self.room.project(self.clock.now(), self.clock.latency_ms))
        await self._seek(target)
        if self.room.paused:
            await self._pause()
        else:
            await self._play()

    # ---- Guarded player mutations ----

    async def _position(self) -> Optional[float]:
        try:
            return await self.adapter.get_position()
        except Exception as e:
            logger.warning("get_position failed: %s", e)
            return None

    async def _load(self, media: str) -> bool:
        logger.info("Loading media %s", media)
        try:
            if await self.adapter.load(media):
                return True
            logger.error("Player refused media %s", media)
        except Exception as e:
            logger.warning("Media load failed: %s", e)
        return False

    async def _seek_if_off(self, position: float) -> None:
        actual = await self._position()
        if actual is None or abs(actual - position) > self.config.seek_tolerance_s:
            await self._seek(position)

    async def _seek(self, position: float) -> bool:
        self.echo.arm(TransportKind.SEEK)
        try:
            await self.adapter.set_position(max(0.0, position))
        except Exception as e:
            self.echo.disarm(TransportKind.SEEK)
            logger.warning("Seek to %.2fs failed, retrying next tick: %s", position, e)
            return False
        return True

    async def _play(self) -> bool:
        return await self._set_paused(False)

    async def _pause(self) -> bool:
        return await self._set_paused(True)

    async def _set_paused(self, paused: bool) -> bool:
        kind = TransportKind.PAUSE if paused else TransportKind.PLAY
        try:
            if await self.adapter.is_paused() == paused:
                return True  # no transition, so no event to swallow
            self.echo.arm(kind)
            if paused:
                await self.adapter.pause()
            else:
                await self.adapter.play()
        except Exception as e:
            self.echo.disarm(kind)
            logger.warning("%s failed, retrying next tick: %s", kind.value, e)
            return False
        return True

    @staticmethod
    def _payload_time(payload: dict) -> Optional[float]:
        try:
            return float(payload["time"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Transport message without usable time: %r", payload)
            return None

    # ---- Periodic tasks ----

    async def _ping_loop(self) -> None:
        interval = self.config.interval_ms / 1000.0
        while self._running:
            try:
                await self.clock.probe(self.send)
            except Exception as e:
                logger.warning("Ping failed: %s", e)
            await asyncio.sleep(interval)

    async def _drift_loop(self) -> None:
        """Periodically compute drift and apply correction."""
        interval = self.config.interval_ms / 1000.0
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.tick()
            except Exception as e:
                logger.error("Drift correction error: %s", e)

    async def _resync_loop(self) -> None:
        interval = self.config.interval_ms * self.config.resync_every / 1000.0
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.request_state()
            except Exception as e:
                logger.warning("State pull failed: %s", e)

    async def _stats_loop(self) -> None:
        interval = self.config.stats_interval_ms / 1000.0
        while self._running:
            await asyncio.sleep(interval)
            position = await self._position()
            try:
                await self.send(MSG_STATS_UPDATE, {
                    "username": self.username,
                    "latency": self.clock.latency_ms,
                    "time": position or 0.0,
                    "platform": self.platform,
                })
            except Exception as e:
                logger.warning("Stats update failed: %s", e)
