"""WatchSync Client room screen: chat, member stats and sync status."""
from __future__ import annotations
import html
from PySide6.QtCore import Qt, Signal
from PySide6.QtGui import QFont
from PySide6.QtWidgets import (
    QWidget, QVBoxLayout, QHBoxLayout, QLabel, QListWidget,
    QTextEdit, QLineEdit, QPushButton, QInputDialog, QGroupBox,
)

from watchsync.config import GUEST_PREFIX
from watchsync.protocol import MemberStats


class RoomScreenWidget(QWidget):
    chat_submitted = Signal(str)
    username_submitted = Signal(str)

    def __init__(self, username: str, parent=None):
        super().__init__(parent)
        self.username = username
        self._prompted_for_username = False
        self._setup_ui()

    def _setup_ui(self) -> None:
        layout = QVBoxLayout(self)
        layout.setContentsMargins(20, 20, 20, 20)

        font = QFont("Monospace", 12)

        status_row = QHBoxLayout()
        self.lbl_user = QLabel(self.username)
        self.lbl_user.setStyleSheet("font-weight: bold;")
        self.lbl_sync = QLabel("Drift: --")
        self.lbl_sync.setFont(font)
        self.lbl_sync.setStyleSheet("color: #FF9800;")
        self.btn_rename = QPushButton("Change Name")
        self.btn_rename.clicked.connect(self.prompt_username)
        status_row.addWidget(self.lbl_user)
        status_row.addWidget(self.btn_rename)
        status_row.addStretch()
        status_row.addWidget(self.lbl_sync)
        layout.addLayout(status_row)

        stats_group = QGroupBox("Watching")
        stats_layout = QVBoxLayout(stats_group)
        self.stats_list = QListWidget()
        self.stats_list.setFont(font)
        self.stats_list.setMaximumHeight(140)
        stats_layout.addWidget(self.stats_list)
        layout.addWidget(stats_group)

        chat_group = QGroupBox("Chat")
        chat_layout = QVBoxLayout(chat_group)
        self.chat_view = QTextEdit()
        self.chat_view.setReadOnly(True)
        chat_layout.addWidget(self.chat_view)
        input_row = QHBoxLayout()
        self.fld_chat = QLineEdit()
        self.fld_chat.returnPressed.connect(self._send_chat)
        self.btn_send = QPushButton("Send")
        self.btn_send.clicked.connect(self._send_chat)
        input_row.addWidget(self.fld_chat)
        input_row.addWidget(self.btn_send)
        chat_layout.addLayout(input_row)
        layout.addWidget(chat_group)

    def _send_chat(self) -> None:
        text = self.fld_chat.text().strip()
        if not text:
            return
        # Guests are asked for a real name once, on their first message.
        if not self._prompted_for_username and self.username.startswith(GUEST_PREFIX):
            self._prompted_for_username = True
            self.prompt_username()
            return
        self.append_chat(self.username, text)
        self.chat_submitted.emit(text)
        self.fld_chat.clear()

    def prompt_username(self) -> None:
        name, ok = QInputDialog.getText(self, "Your name", "Name:", text=self.username)
        if ok and name.strip() and name.strip() != self.username:
            self.set_username(name.strip())
            self.username_submitted.emit(self.username)

    def set_username(self, username: str) -> None:
        self.username = username
        self.lbl_user.setText(username)

    def append_chat(self, username: str, msg: str) -> None:
        self.chat_view.append(f"<b>{html.escape(username)}:</b> {html.escape(msg)}")

    def update_stats(self, members: list[MemberStats]) -> None:
        self.stats_list.clear()
        for member in members:
            self.stats_list.addItem(member.describe())

    def update_drift(self, diff_s: float, action: str) -> None:
        drift_ms = diff_s * 1000.0
        color = "#4CAF50" if abs(drift_ms) < 100 else "#FF9800" if abs(drift_ms) < 1000 else "#F44336"
        self.lbl_sync.setStyleSheet(f"color: {color};")
        self.lbl_sync.setText(f"Drift: {drift_ms:+.0f}ms ({action})")

    def set_connected(self, connected: bool) -> None:
        self.fld_chat.setEnabled(connected)
        self.btn_send.setEnabled(connected)
        if not connected:
            self.lbl_sync.setText("Reconnecting...")
        self.lbl_sync.setAlignment(Qt.AlignRight)
