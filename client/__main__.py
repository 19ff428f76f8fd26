"""WatchSync Client entry point."""
from __future__ import annotations
import asyncio
import logging
import sys
import threading

from PySide6.QtWidgets import QApplication

from client.mpv_adapter import MpvAdapter
from client.ui.main_window import ClientMainWindow
from watchsync.config import DEFAULT_CONFIG_PATH, load_config, save_config
from watchsync.logging_utils import configure_logging


def _run_asyncio_loop(loop: asyncio.AbstractEventLoop) -> None:
    asyncio.set_event_loop(loop)
    loop.run_forever()


def main() -> None:
    config = load_config(DEFAULT_CONFIG_PATH)
    configure_logging(config.client)
    logger = logging.getLogger("watchsync.client")
    logger.info("WatchSync Client starting")

    errors = config.validate()
    if errors:
        for err in errors:
            logger.error("Config: %s", err)
        sys.exit(2)
    if not DEFAULT_CONFIG_PATH.exists():
        # Keeps the generated guest name stable across runs.
        save_config(config, DEFAULT_CONFIG_PATH)

    # Optional first argument: a room link or id
    initial_room = sys.argv[1] if len(sys.argv) > 1 else ""

    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=_run_asyncio_loop, args=(loop,), daemon=True)
    thread.start()

    app = QApplication(sys.argv)
    app.setApplicationName("WatchSync Client")
    app.setOrganizationName("WatchSync")

    adapter = MpvAdapter(config.player.mpv_path, config.player.fullscreen)
    asyncio.run_coroutine_threadsafe(adapter.start(), loop)

    window = ClientMainWindow(loop, adapter, config, initial_room)
    window.show()

    exit_code = app.exec()

    # Cleanup
    leaving = window.leave_room()
    if leaving is not None:
        try:
            leaving.result(timeout=3)
        except Exception as e:
            logger.warning("Error leaving room: %s", e)
    asyncio.run_coroutine_threadsafe(adapter.stop_subprocess(), loop).result(timeout=5)
    loop.call_soon_threadsafe(loop.stop)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
