"""WatchSync clock sync math (ping/pong offset estimate against the relay clock)."""
from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from watchsync.protocol import MSG_PING_CHECK


def _wall_clock_ms() -> float:
    return time.time() * 1000


@dataclass
class PingSample:
    client_sent: float  # local send time (ms)
    server_time: float  # relay wall clock at receipt (ms)
    client_recv: float  # local receive time (ms)

    @property
    def rtt_ms(self) -> float:
        return self.client_recv - self.client_sent

    @property
    def latency_ms(self) -> float:
        """One-way delay, assumed symmetric."""
        return self.rtt_ms / 2.0

    @property
    def offset_ms(self) -> float:
        """Estimated relay_time - local_time. Positive means the relay is ahead."""
        return (self.server_time + self.latency_ms) - self.client_recv


@dataclass
class ClockEstimate:
    offset_ms: float
    latency_ms: float


class ClockSync:
    """Keeps the latest offset/latency estimate against the relay clock.

    Only the last estimate is retained. With ``smoothing`` > 0 each new
    sample is blended in as an exponential moving average, which damps
    single outlier pings.
    """

    def __init__(self, local_clock: Optional[Callable[[], float]] = None,
                 smoothing: float = 0.0) -> None:
        if not 0.0 <= smoothing < 1.0:
            raise ValueError(f"smoothing must be in [0, 1), got {smoothing}")
        self._local_clock = local_clock or _wall_clock_ms
        self._smoothing = smoothing
        self._estimate: Optional[ClockEstimate] = None

    def local_now(self) -> float:
        return self._local_clock()

    def ping_payload(self) -> dict:
        return {"clientTime": self._local_clock()}

    async def probe(self, send: Callable[[str, dict], Awaitable[None]]) -> None:
        """Send a timestamped ping; the matching pong is fed to on_pong()."""
        await send(MSG_PING_CHECK, self.ping_payload())

    def on_pong(self, client_sent: float, server_time: float,
                client_recv: Optional[float] = None) -> Optional[ClockEstimate]:
        if client_recv is None:
            client_recv = self._local_clock()
        sample = PingSample(client_sent=client_sent, server_time=server_time,
                            client_recv=client_recv)
        if sample.rtt_ms < 0:
            # Echoed timestamp from the future: not ours, or the local clock jumped.
            return None
        self._add_sample(sample)
        return self._estimate

    def _add_sample(self, sample: PingSample) -> None:
        prev = self._estimate
        if prev is None or self._smoothing == 0.0:
            self._estimate = ClockEstimate(offset_ms=sample.offset_ms,
                                           latency_ms=sample.latency_ms)
            return
        a = self._smoothing
        self._estimate = ClockEstimate(
            offset_ms=a * prev.offset_ms + (1.0 - a) * sample.offset_ms,
            latency_ms=a * prev.latency_ms + (1.0 - a) * sample.latency_ms,
        )

    @property
    def estimate(self) -> Optional[ClockEstimate]:
        return self._estimate

    @property
    def has_estimate(self) -> bool:
        return self._estimate is not None

    @property
    def offset_ms(self) -> float:
        return self._estimate.offset_ms if self._estimate else 0.0

    @property
    def latency_ms(self) -> float:
        return self._estimate.latency_ms if self._estimate else 0.0

    def now(self) -> float:
        """Estimated relay wall clock in ms."""
        return self._local_clock() + self.offset_ms


def compute_drift_correction(
    diff_s: float,
    hard_threshold_s: float,
    nudge: float,
    rate_min: float,
    rate_max: float,
) -> tuple[str, float]:
    """
    Returns (action, rate).
    action: "hard_seek" | "rate_adjust"
    For rate_adjust: second value is the new playback rate.
    For hard_seek: second value is 1.0 (caller seeks to the expected position).
    diff_s is expected - actual: positive means this client is behind.
    """
    if abs(diff_s) > hard_threshold_s:
        return "hard_seek", 1.0
    rate = 1.0 + diff_s * nudge
    rate = min(rate_max, max(rate_min, rate))
    return "rate_adjust", round(rate, 4)
