"""WatchSync playback adapter driving mpv via its JSON IPC socket."""
from __future__ import annotations
import asyncio
import json
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Optional, Any

from watchsync.adapter import AdapterError, PlaybackAdapter
from watchsync.echo_guard import TransportKind

logger = logging.getLogger("watchsync.client.mpv")

_REQUEST_ID = 0
_OBSERVE_PAUSE_ID = 1


def _next_id() -> int:
    global _REQUEST_ID
    _REQUEST_ID += 1
    return _REQUEST_ID


class MpvAdapter(PlaybackAdapter):
    """
    Controls mpv via JSON IPC socket.
    Runs mpv as a subprocess and communicates via a Unix domain socket.
    Transport events come from the observed `pause` property and mpv's
    `seek` event, so they fire for user input and for our own commands alike.
    """

    def __init__(self, mpv_path: str = "mpv", fullscreen: bool = False,
                 command_timeout: float = 3.0):
        super().__init__()
        self.mpv_path = mpv_path
        self.fullscreen = fullscreen
        self.command_timeout = command_timeout
        self._proc: Optional[subprocess.Popen] = None
        self._socket_path = str(Path(tempfile.gettempdir()) / f"watchsync_mpv_{os.getpid()}.sock")
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._running = False
        self._connected = False
        self._read_task: Optional[asyncio.Task] = None
        self._event_tasks: set[asyncio.Task] = set()
        self._last_paused: Optional[bool] = None

    async def start(self) -> bool:
        """Start mpv subprocess."""
        if os.path.exists(self._socket_path):
            os.unlink(self._socket_path)

        cmd = [
            self.mpv_path,
            "--no-config",
            "--idle=yes",
            "--no-terminal",
            "--force-window=yes",
            f"--input-ipc-server={self._socket_path}",
            "--keep-open=yes",
            "--pause",
        ]
        if self.fullscreen:
            cmd.append("--fs")
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            logger.info("mpv started (pid=%d)", self._proc.pid)
        except FileNotFoundError:
            logger.error("mpv not found at %r; install mpv to use playback", self.mpv_path)
            return False

        # Wait for socket to appear
        for _ in range(50):
            await asyncio.sleep(0.1)
            if os.path.exists(self._socket_path):
                break
        else:
            logger.error("mpv IPC socket did not appear")
            return False

        await self._connect_socket()
        if self._connected:
            await self._send_raw({"command": ["observe_property", _OBSERVE_PAUSE_ID, "pause"]})
        return self._connected

    async def _connect_socket(self) -> None:
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(self._socket_path)
            self._connected = True
            self._running = True
            self._read_task = asyncio.create_task(self._read_loop())
            logger.info("Connected to mpv IPC socket")
        except OSError as e:
            logger.error("Failed to connect to mpv socket: %s", e)
            self._connected = False

    async def _read_loop(self) -> None:
        """Read responses and events from mpv."""
        while self._running and self._reader:
            try:
                line = await self._reader.readline()
                if not line:
                    break
                data = json.loads(line.decode().strip())
                if "event" in data:
                    # Handlers issue commands of their own; run them off the read loop.
                    task = asyncio.create_task(self._handle_event(data))
                    self._event_tasks.add(task)
                    task.add_done_callback(self._event_tasks.discard)
                elif "request_id" in data:
                    fut = self._pending.pop(data["request_id"], None)
                    if fut and not fut.done():
                        fut.set_result(data)
            except asyncio.CancelledError:
                break
            except (ValueError, OSError) as e:
                logger.debug("mpv read error: %s", e)
                break
        self._connected = False
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(AdapterError("mpv IPC connection closed"))
        self._pending.clear()

    async def _handle_event(self, data: dict) -> None:
        event = data.get("event")
        try:
            if event == "property-change" and data.get("name") == "pause":
                paused = bool(data.get("data"))
                previous, self._last_paused = self._last_paused, paused
                # The first notification only reports the initial value.
                if previous is not None and previous != paused:
                    await self.emit_transport_event(
                        TransportKind.PAUSE if paused else TransportKind.PLAY)
            elif event == "seek":
                await self.emit_transport_event(TransportKind.SEEK)
            elif event == "end-file" and data.get("reason") == "error":
                await self.emit_media_error(str(data.get("file_error", "unknown error")))
        except Exception as e:
            logger.error("mpv event handler error (%s): %s", event, e)

    async def _send_raw(self, message: dict) -> None:
        if not self._connected or not self._writer:
            raise AdapterError("mpv is not connected")
        self._writer.write((json.dumps(message) + "\n").encode())
        await self._writer.drain()

    async def _command(self, *args: Any) -> Any:
        """Send a command to mpv and return its `data`; raises AdapterError on failure."""
        req_id = _next_id()
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        self._pending[req_id] = fut
        try:
            await self._send_raw({"command": list(args), "request_id": req_id})
            result = await asyncio.wait_for(fut, timeout=self.command_timeout)
        except asyncio.TimeoutError:
            raise AdapterError(f"mpv command timed out: {args[0] if args else ''}") from None
        except OSError as e:
            raise AdapterError(f"mpv command error: {e}") from e
        finally:
            self._pending.pop(req_id, None)
        if result.get("error") != "success":
            raise AdapterError(f"mpv {args[0]} failed: {result.get('error')}")
        return result.get("data")

    async def load(self, media_url: str) -> bool:
        await self._command("loadfile", media_url, "replace")
        self.loaded_media = media_url
        return True

    async def play(self) -> None:
        await self._command("set_property", "pause", False)

    async def pause(self) -> None:
        await self._command("set_property", "pause", True)

    async def is_paused(self) -> bool:
        return bool(await self._command("get_property", "pause"))

    async def set_position(self, seconds: float) -> None:
        await self._command("seek", seconds, "absolute")

    async def get_position(self) -> Optional[float]:
        try:
            val = await self._command("get_property", "time-pos")
        except AdapterError:
            # time-pos is unavailable while nothing is loaded
            return None
        return float(val) if val is not None else None

    async def set_rate(self, multiplier: float) -> None:
        await self._command("set_property", "speed", multiplier)

    async def stop_subprocess(self) -> None:
        """Terminate mpv."""
        self._running = False
        self._connected = False
        if self._read_task:
            self._read_task.cancel()
        for task in list(self._event_tasks):
            task.cancel()
        if self._writer:
            self._writer.close()
        if self._proc:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=3)
            except subprocess.TimeoutExpired:
                self._proc.kill()
        if os.path.exists(self._socket_path):
            os.unlink(self._socket_path)
        logger.info("mpv stopped")

    @property
    def is_connected(self) -> bool:
        return self._connected
