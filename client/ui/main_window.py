"""WatchSync Client main window."""
from __future__ import annotations
import asyncio
import logging
from concurrent.futures import Future
from typing import Optional

from PySide6.QtCore import QObject, Signal
from PySide6.QtWidgets import QMainWindow, QStackedWidget, QStatusBar

from client.mpv_adapter import MpvAdapter
from client.connection import ClientConnection
from client.ui.connect_screen import ConnectScreenWidget
from client.ui.room_screen import RoomScreenWidget
from watchsync.config import AppConfig

logger = logging.getLogger("watchsync.client.ui")

WINDOW_TITLE = "Movie Night"


class _Signaler(QObject):
    chat_received = Signal(str, str)
    stats_received = Signal(object)  # list[MemberStats]
    title_changed = Signal(str)
    drift_updated = Signal(float, str)
    connection_changed = Signal(bool)


class ClientMainWindow(QMainWindow):
    def __init__(self, loop: asyncio.AbstractEventLoop, adapter: MpvAdapter,
                 config: AppConfig, initial_room: str = ""):
        super().__init__()
        self.loop = loop
        self.adapter = adapter
        self.config = config
        self._connection: Optional[ClientConnection] = None
        self._run_future: Optional[Future] = None
        self._signaler = _Signaler()

        self.setWindowTitle(WINDOW_TITLE)
        self.resize(520, 640)

        self.stack = QStackedWidget()
        self.setCentralWidget(self.stack)

        self.connect_screen = ConnectScreenWidget(config, initial_room, self)
        self.connect_screen.join_requested.connect(self._on_join_requested)
        self.stack.addWidget(self.connect_screen)

        self.room_screen: Optional[RoomScreenWidget] = None

        self.status_bar = QStatusBar()
        self.setStatusBar(self.status_bar)
        self.status_bar.showMessage("Not connected")

        self._signaler.chat_received.connect(self._on_chat)
        self._signaler.stats_received.connect(self._on_stats)
        self._signaler.title_changed.connect(self._on_title)
        self._signaler.drift_updated.connect(self._on_drift)
        self._signaler.connection_changed.connect(self._on_connection_changed)

    def _on_join_requested(self, room_id: str, username: str, relay_url: str) -> None:
        self.config.client.username = username
        self.config.relay.url = relay_url

        self.room_screen = RoomScreenWidget(username, self)
        self.room_screen.chat_submitted.connect(self._send_chat)
        self.room_screen.username_submitted.connect(self._change_username)
        self.stack.addWidget(self.room_screen)
        self.stack.setCurrentWidget(self.room_screen)
        self.status_bar.showMessage(f"Joining room {room_id}...")

        # Callbacks fire on the asyncio thread; signals hop them onto the Qt thread.
        self._connection = ClientConnection(
            self.adapter,
            self.config,
            room_id,
            on_chat=self._signaler.chat_received.emit,
            on_stats=self._signaler.stats_received.emit,
            on_title=self._signaler.title_changed.emit,
            on_connection_change=self._signaler.connection_changed.emit,
        )
        self._connection.controller.on_drift = self._signaler.drift_updated.emit
        self._run_future = asyncio.run_coroutine_threadsafe(self._connection.run(), self.loop)

    def _send_chat(self, text: str) -> None:
        if self._connection:
            asyncio.run_coroutine_threadsafe(self._connection.send_chat(text), self.loop)

    def _change_username(self, username: str) -> None:
        if self._connection:
            asyncio.run_coroutine_threadsafe(self._connection.change_username(username), self.loop)

    def _on_chat(self, username: str, msg: str) -> None:
        if self.room_screen:
            self.room_screen.append_chat(username, msg)

    def _on_stats(self, members) -> None:
        if self.room_screen:
            self.room_screen.update_stats(members)

    def _on_title(self, title: str) -> None:
        self.setWindowTitle(f"{WINDOW_TITLE} - {title}")

    def _on_drift(self, diff_s: float, action: str) -> None:
        if self.room_screen:
            self.room_screen.update_drift(diff_s, action)

    def _on_connection_changed(self, connected: bool) -> None:
        self.status_bar.showMessage("Connected" if connected else "Connection lost; reconnecting...")
        if self.room_screen:
            self.room_screen.set_connected(connected)

    def leave_room(self) -> Optional[Future]:
        if self._connection is None:
            return None
        return asyncio.run_coroutine_threadsafe(self._connection.disconnect(), self.loop)
