"""WatchSync Client room join screen."""
from __future__ import annotations
import logging

from PySide6.QtCore import Signal
from PySide6.QtWidgets import (
    QWidget, QVBoxLayout, QHBoxLayout, QPushButton, QLabel,
    QLineEdit, QGroupBox, QFormLayout,
)

from watchsync.config import AppConfig
from watchsync.room_link import create_room_link, room_id_from_url

logger = logging.getLogger("watchsync.client.ui.connect")

SHARE_BASE_URL = "https://watchsync.invalid/watch"


class ConnectScreenWidget(QWidget):
    join_requested = Signal(str, str, str)  # room_id, username, relay_url

    def __init__(self, config: AppConfig, initial_room: str = "", parent=None):
        super().__init__(parent)
        self.config = config
        self._setup_ui()
        self.fld_room.setText(initial_room)
        self.fld_username.setText(config.client.username)
        self.fld_relay.setText(config.relay.url)

    def _setup_ui(self) -> None:
        layout = QVBoxLayout(self)
        layout.setContentsMargins(30, 30, 30, 30)
        layout.setSpacing(20)

        title = QLabel("Movie Night")
        title.setStyleSheet("font-size: 32px; font-weight: bold; color: #2196F3;")
        layout.addWidget(title)

        subtitle = QLabel("Paste a room link or id to watch together.")
        subtitle.setStyleSheet("font-size: 14px; color: #888;")
        layout.addWidget(subtitle)

        room_group = QGroupBox("Room")
        room_layout = QFormLayout(room_group)
        self.fld_room = QLineEdit()
        self.fld_room.setPlaceholderText("https://.../watch?room=... or room id")
        self.fld_username = QLineEdit()
        self.fld_relay = QLineEdit()
        room_layout.addRow("Room:", self.fld_room)
        room_layout.addRow("Name:", self.fld_username)
        room_layout.addRow("Relay:", self.fld_relay)
        layout.addWidget(room_group)

        btns = QHBoxLayout()
        self.btn_new = QPushButton("New Room Link")
        self.btn_new.setMinimumHeight(44)
        self.btn_new.clicked.connect(self._new_room)
        self.btn_join = QPushButton("Join")
        self.btn_join.setMinimumHeight(44)
        self.btn_join.clicked.connect(self._join)
        btns.addWidget(self.btn_new)
        btns.addWidget(self.btn_join)
        layout.addLayout(btns)

        self.lbl_error = QLabel("")
        self.lbl_error.setStyleSheet("color: #F44336;")
        layout.addWidget(self.lbl_error)

        layout.addStretch()

    def _new_room(self) -> None:
        room_id, url = create_room_link(SHARE_BASE_URL)
        self.fld_room.setText(url)
        logger.info("Created room %s", room_id)

    def _join(self) -> None:
        room_id = room_id_from_url(self.fld_room.text())
        if not room_id:
            self.lbl_error.setText("No room specified.")
            return
        relay = self.fld_relay.text().strip()
        if not relay.startswith(("ws://", "wss://")):
            self.lbl_error.setText("Relay must be a ws:// or wss:// URL.")
            return
        self.lbl_error.setText("")
        username = self.fld_username.text().strip() or self.config.client.username
        self.join_requested.emit(room_id, username, relay)
