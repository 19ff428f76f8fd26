"""WatchSync client config file (TOML) parsing and validation."""
from __future__ import annotations
import random
import tomllib
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_CONFIG_PATH = Path("watchsync.toml")
GUEST_PREFIX = "Guest #"


def guest_username() -> str:
    return f"{GUEST_PREFIX}{random.randint(1, 1000)}"


@dataclass
class SyncConfig:
    interval_ms: int = 1000
    hard_threshold_s: float = 1.0
    nudge: float = 0.1
    rate_min: float = 0.95
    rate_max: float = 1.05
    resync_every: int = 5  # full state pull every N ticks
    echo_window_ms: int = 1000
    seek_tolerance_s: float = 0.5
    stats_interval_ms: int = 1000
    clock_smoothing: float = 0.0
    drift_correction: bool = True
    trace_corrections: bool = False


@dataclass
class RelayConfig:
    url: str = "ws://localhost:3000"
    reconnect_delay_ms: int = 1000
    reconnect_delay_max_ms: int = 5000


@dataclass
class PlayerConfig:
    mpv_path: str = "mpv"
    fullscreen: bool = False


@dataclass
class ClientSettings:
    username: str = field(default_factory=guest_username)
    platform: str = "desktop"
    log_level: str = "info"
    log_dir: str = "logs"


@dataclass
class AppConfig:
    client: ClientSettings = field(default_factory=ClientSettings)
    relay: RelayConfig = field(default_factory=RelayConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    player: PlayerConfig = field(default_factory=PlayerConfig)
    path: Optional[Path] = None

    def validate(self) -> list[str]:
        errors = []
        s = self.sync
        if s.interval_ms <= 0:
            errors.append("sync.interval_ms must be positive")
        if s.hard_threshold_s <= 0:
            errors.append("sync.hard_threshold_s must be positive")
        if not (0 < s.rate_min <= 1.0 <= s.rate_max):
            errors.append(f"sync rate bounds must satisfy 0 < rate_min <= 1 <= rate_max "
                          f"(got {s.rate_min}, {s.rate_max})")
        if s.resync_every < 1:
            errors.append("sync.resync_every must be at least 1")
        if s.echo_window_ms <= 0:
            errors.append("sync.echo_window_ms must be positive")
        if not (0.0 <= s.clock_smoothing < 1.0):
            errors.append("sync.clock_smoothing must be in [0, 1)")
        if not self.relay.url.startswith(("ws://", "wss://")):
            errors.append(f"relay.url must be a ws:// or wss:// URL: {self.relay.url}")
        if self.relay.reconnect_delay_ms <= 0 or \
                self.relay.reconnect_delay_max_ms < self.relay.reconnect_delay_ms:
            errors.append("relay reconnect delays must be positive and max >= initial")
        if not self.client.username.strip():
            errors.append("client.username must not be empty")
        return errors


def _parse_sync(raw: dict) -> SyncConfig:
    d = SyncConfig()
    return SyncConfig(
        interval_ms=raw.get("interval_ms", d.interval_ms),
        hard_threshold_s=raw.get("hard_threshold_s", d.hard_threshold_s),
        nudge=raw.get("nudge", d.nudge),
        rate_min=raw.get("rate_min", d.rate_min),
        rate_max=raw.get("rate_max", d.rate_max),
        resync_every=raw.get("resync_every", d.resync_every),
        echo_window_ms=raw.get("echo_window_ms", d.echo_window_ms),
        seek_tolerance_s=raw.get("seek_tolerance_s", d.seek_tolerance_s),
        stats_interval_ms=raw.get("stats_interval_ms", d.stats_interval_ms),
        clock_smoothing=raw.get("clock_smoothing", d.clock_smoothing),
        drift_correction=raw.get("drift_correction", d.drift_correction),
        trace_corrections=raw.get("trace_corrections", d.trace_corrections),
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    """Load a watchsync.toml config file; a missing file yields defaults."""
    if not path.exists():
        return AppConfig(path=path)
    with open(path, "rb") as f:
        data = tomllib.load(f)

    client_raw = data.get("client", {})
    relay_raw = data.get("relay", {})
    player_raw = data.get("player", {})

    client = ClientSettings(
        platform=client_raw.get("platform", "desktop"),
        log_level=client_raw.get("log_level", "info"),
        log_dir=client_raw.get("log_dir", "logs"),
    )
    if client_raw.get("username"):
        client.username = client_raw["username"]

    return AppConfig(
        client=client,
        relay=RelayConfig(
            url=relay_raw.get("url", "ws://localhost:3000"),
            reconnect_delay_ms=relay_raw.get("reconnect_delay_ms", 1000),
            reconnect_delay_max_ms=relay_raw.get("reconnect_delay_max_ms", 5000),
        ),
        sync=_parse_sync(data.get("sync", {})),
        player=PlayerConfig(
            mpv_path=player_raw.get("mpv_path", "mpv"),
            fullscreen=player_raw.get("fullscreen", False),
        ),
        path=path,
    )


def _toml_str(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _toml_bool(value: bool) -> str:
    return str(value).lower()


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    """Save an AppConfig to a watchsync.toml file."""
    path = path or config.path or DEFAULT_CONFIG_PATH
    c, r, s, p = config.client, config.relay, config.sync, config.player

    lines = []
    lines.append("[client]")
    lines.append(f"username = {_toml_str(c.username)}")
    lines.append(f"platform = {_toml_str(c.platform)}")
    lines.append(f"log_level = {_toml_str(c.log_level)}")
    lines.append(f"log_dir = {_toml_str(c.log_dir)}")
    lines.append("")
    lines.append("[relay]")
    lines.append(f"url = {_toml_str(r.url)}")
    lines.append(f"reconnect_delay_ms = {r.reconnect_delay_ms}")
    lines.append(f"reconnect_delay_max_ms = {r.reconnect_delay_max_ms}")
    lines.append("")
    lines.append("[sync]")
    lines.append(f"interval_ms = {s.interval_ms}")
    lines.append(f"hard_threshold_s = {float(s.hard_threshold_s)}")
    lines.append(f"nudge = {float(s.nudge)}")
    lines.append(f"rate_min = {float(s.rate_min)}")
    lines.append(f"rate_max = {float(s.rate_max)}")
    lines.append(f"resync_every = {s.resync_every}")
    lines.append(f"echo_window_ms = {s.echo_window_ms}")
    lines.append(f"seek_tolerance_s = {float(s.seek_tolerance_s)}")
    lines.append(f"stats_interval_ms = {s.stats_interval_ms}")
    lines.append(f"clock_smoothing = {float(s.clock_smoothing)}")
    lines.append(f"drift_correction = {_toml_bool(s.drift_correction)}")
    lines.append(f"trace_corrections = {_toml_bool(s.trace_corrections)}")
    lines.append("")
    lines.append("[player]")
    lines.append(f"mpv_path = {_toml_str(p.mpv_path)}")
    lines.append(f"fullscreen = {_toml_bool(p.fullscreen)}")
    lines.append("")

    path.write_text("\n".join(lines), encoding="utf-8")
    config.path = path
