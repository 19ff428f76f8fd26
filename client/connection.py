"""WatchSync client WebSocket connection to the relay."""
from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional

import websockets
from websockets.asyncio.client import ClientConnection as WebSocketConnection, connect

from watchsync.adapter import PlaybackAdapter
from watchsync.config import AppConfig, save_config
from watchsync.protocol import (
    make_envelope, parse_envelope, parse_stats, ProtocolError, MemberStats,
    MSG_PONG_CHECK, MSG_PLAY, MSG_PAUSE, MSG_SEEK, MSG_SYNC_STATE, MSG_INIT,
    MSG_CHAT, MSG_STATS, MSG_CHANGE_USERNAME, SYSTEM_USERNAME,
)
from client.sync_controller import SyncController

logger = logging.getLogger("watchsync.client.connection")


class ClientConnection:
    """Keeps a room session with the relay alive and feeds the sync engine."""

    def __init__(self, adapter: PlaybackAdapter, config: AppConfig, room_id: str,
                 on_chat: Optional[Callable[[str, str], None]] = None,
                 on_stats: Optional[Callable[[list[MemberStats]], None]] = None,
                 on_title: Optional[Callable[[str], None]] = None,
                 on_connection_change: Optional[Callable[[bool], None]] = None):
        self.adapter = adapter
        self.config = config
        self.room_id = room_id
        self.on_chat = on_chat  # callback(username, msg)
        self.on_stats = on_stats  # callback(list[MemberStats])
        self.on_connection_change = on_connection_change  # callback(connected)
        self._ws: Optional[WebSocketConnection] = None
        self._running = False
        self._connected_once = False
        self.controller = SyncController(
            adapter,
            self._send,
            room_id,
            config.client.username,
            config=config.sync,
            platform=config.client.platform,
            trace_dir=Path(config.client.log_dir),
        )
        self.controller.on_title = on_title

    @property
    def username(self) -> str:
        return self.controller.username

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    async def _send(self, msg_type: str, payload: Any) -> None:
        if self._ws:
            try:
                await self._ws.send(make_envelope(msg_type, payload))
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning("Send error (%s): %s", msg_type, e)
        else:
            logger.debug("Dropped %s while disconnected", msg_type)

    async def run(self) -> None:
        """Connect to the relay and process messages, reconnecting until disconnect()."""
        self._running = True
        uri = self.config.relay.url
        delay_ms = self.config.relay.reconnect_delay_ms
        self.controller.start()
        try:
            while self._running:
                logger.info("Connecting to %s", uri)
                try:
                    async with connect(uri, ping_interval=10, ping_timeout=30) as ws:
                        self._ws = ws
                        delay_ms = self.config.relay.reconnect_delay_ms
                        self._notify_connection(True)
                        await self._announce()
                        async for raw in ws:
                            await self._dispatch(raw)
                except (OSError, asyncio.TimeoutError,
                        websockets.exceptions.WebSocketException) as e:
                    logger.warning("Connection lost: %s", e)
                finally:
                    if self._ws is not None:
                        self._ws = None
                        self._notify_connection(False)
                if not self._running:
                    break
                logger.info("Reconnecting in %.1fs", delay_ms / 1000.0)
                await asyncio.sleep(delay_ms / 1000.0)
                delay_ms = min(delay_ms * 2, self.config.relay.reconnect_delay_max_ms)
        finally:
            await self.controller.stop()

    async def _announce(self) -> None:
        if self._connected_once:
            # Nothing is replayed for the time we were away.
            await self.controller.rejoin()
        else:
            await self.controller.join()
            self._connected_once = True

    async def disconnect(self) -> None:
        """Leave the room and stop reconnecting."""
        self._running = False
        await self.controller.stop()
        if self._ws:
            await self._ws.close()
            logger.info("Disconnected from relay")

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            msg_type, _ts, payload = parse_envelope(raw)
        except ProtocolError as e:
            logger.warning("Dropping frame: %s", e)
            return
        try:
            await self._handle_message(msg_type, payload)
        except Exception as e:
            logger.error("Message handling error (%s): %s", msg_type, e)

    async def _handle_message(self, msg_type: str, payload: Any) -> None:
        logger.debug("Recv: %s", msg_type)

        if msg_type == MSG_PONG_CHECK:
            self.controller.on_pong(payload)

        elif msg_type == MSG_INIT:
            await self.controller.apply_init(payload)

        elif msg_type == MSG_PLAY:
            await self.controller.apply_remote_play(payload)

        elif msg_type == MSG_PAUSE:
            await self.controller.apply_remote_pause(payload)

        elif msg_type == MSG_SEEK:
            await self.controller.apply_remote_seek(payload)

        elif msg_type == MSG_SYNC_STATE:
            await self.controller.apply_sync_state(payload)

        elif msg_type == MSG_CHAT:
            if self.on_chat:
                self.on_chat(str(payload.get("username", "?")), str(payload.get("msg", "")))

        elif msg_type == MSG_STATS:
            if self.on_stats:
                self.on_stats(parse_stats(payload))

        else:
            logger.debug("Unhandled message type: %s", msg_type)

    async def send_chat(self, text: str) -> bool:
        text = text.strip()
        if not text:
            return False
        await self._send(MSG_CHAT, {"roomId": self.room_id, "msg": text, "username": self.username})
        return True

    async def change_username(self, new_username: str) -> bool:
        """Rename, tell the room, and persist the name for next time."""
        new_username = (new_username or "").strip()
        old = self.username
        if not new_username or new_username == old:
            return False
        self.controller.username = new_username
        self.config.client.username = new_username
        if self.config.path is not None:
            try:
                save_config(self.config)
            except OSError as e:
                logger.warning("Could not save username: %s", e)
        await self._send(MSG_CHAT, {
            "roomId": self.room_id,
            "username": SYSTEM_USERNAME,
            "msg": f"{old} changed their name to {new_username}",
        })
        await self._send(MSG_CHANGE_USERNAME, {"newUsername": new_username})
        return True

    def _notify_connection(self, connected: bool) -> None:
        if self.on_connection_change:
            self.on_connection_change(connected)
