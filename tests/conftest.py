"""Shared test doubles."""
import pytest

from watchsync.adapter import AdapterError, PlaybackAdapter


class FakeClock:
    """Settable clock; call it to read the current value."""

    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class FakeAdapter(PlaybackAdapter):
    """Records every player command; never emits events on its own."""

    def __init__(self, position: float = 0.0, paused: bool = True):
        super().__init__()
        self.position = position
        self.paused = paused
        self.rate = 1.0
        self.calls: list[tuple[str, object]] = []
        self.fail: set[str] = set()

    def _check(self, name: str) -> None:
        if name in self.fail:
            raise AdapterError(f"{name}: media not ready")

    def count(self, name: str) -> int:
        return sum(1 for n, _ in self.calls if n == name)

    def args(self, name: str) -> list:
        return [a for n, a in self.calls if n == name]

    async def load(self, media_url: str) -> bool:
        self._check("load")
        self.calls.append(("load", media_url))
        self.loaded_media = media_url
        return True

    async def get_position(self):
        self._check("get_position")
        return self.position

    async def set_position(self, seconds: float) -> None:
        self._check("set_position")
        self.calls.append(("set_position", seconds))
        self.position = seconds

    async def is_paused(self) -> bool:
        return self.paused

    async def play(self) -> None:
        self._check("play")
        self.calls.append(("play", None))
        self.paused = False

    async def pause(self) -> None:
        self._check("pause")
        self.calls.append(("pause", None))
        self.paused = True

    async def set_rate(self, multiplier: float) -> None:
        self._check("set_rate")
        self.calls.append(("set_rate", multiplier))
        self.rate = multiplier


@pytest.fixture
def adapter():
    return FakeAdapter()
