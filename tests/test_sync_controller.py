"""Tests for the playback sync engine."""
import asyncio
import json
import pytest

from client.sync_controller import SyncController, MAX_MEDIA_RELOADS
from watchsync.clock_sync import ClockSync
from watchsync.config import SyncConfig
from watchsync.echo_guard import EchoGuard, TransportKind
from watchsync.room_state import RoomState
from conftest import FakeAdapter, FakeClock

T = 1_700_000_000_000.0


class Harness:
    def __init__(self, adapter=None, config=None, trace_dir=None):
        self.adapter = adapter or FakeAdapter()
        self.local = FakeClock(T)
        self.mono = FakeClock(0.0)
        self.sent = []
        self.clock = ClockSync(local_clock=self.local)
        config = config or SyncConfig()
        self.ctl = SyncController(
            self.adapter, self._send, "room-1", "alice", config=config,
            clock=self.clock,
            echo_guard=EchoGuard(window_ms=config.echo_window_ms, clock=self.mono),
            trace_dir=trace_dir,
        )

    async def _send(self, msg_type, payload):
        self.sent.append((msg_type, payload))

    def sync_clock(self, latency_ms=0.0):
        """Establish an estimate with zero offset and the given latency."""
        now = self.local.t
        self.clock.on_pong(client_sent=now - 2 * latency_ms, server_time=now - latency_ms,
                           client_recv=now)
        assert self.clock.offset_ms == pytest.approx(0.0)
        assert self.clock.latency_ms == pytest.approx(latency_ms)

    def outbound(self, msg_type):
        return [p for t, p in self.sent if t == msg_type]


def run(coro):
    return asyncio.run(coro)


def test_tick_skipped_without_clock_estimate():
    h = Harness()
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)
    assert run(h.ctl.tick()) == ("skip", 0.0)
    assert h.adapter.calls == []


def test_tick_skipped_before_room_is_known():
    h = Harness()
    h.sync_clock()
    assert run(h.ctl.tick()) == ("skip", 0.0)
    assert h.adapter.calls == []


def test_hard_correction_one_seek_no_rate_change():
    h = Harness(FakeAdapter(position=8.5, paused=False))
    h.sync_clock()
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)
    action, target = run(h.ctl.tick())
    assert action == "hard_seek"
    assert target == pytest.approx(10.0)
    assert h.adapter.count("set_position") == 1
    assert h.adapter.count("set_rate") == 0
    assert h.ctl.echo.is_armed(TransportKind.SEEK)


def test_soft_correction_sets_rate_without_seek():
    h = Harness(FakeAdapter(position=9.7, paused=False))
    h.sync_clock()
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)
    action, rate = run(h.ctl.tick())
    assert action == "rate_adjust"
    assert rate == pytest.approx(1.03)
    assert h.adapter.args("set_rate") == [pytest.approx(1.03)]
    assert h.adapter.count("set_position") == 0


def test_projection_compensates_latency():
    h = Harness(FakeAdapter(position=13.6, paused=False))
    h.local.t = T
    h.sync_clock(latency_ms=100)
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T - 4000)
    # expected = 10.0 + (4000 - 100)/1000 = 13.9 ; diff = 0.3
    action, rate = run(h.ctl.tick())
    assert action == "rate_adjust"
    assert rate == pytest.approx(1.03)


def test_late_joiner_to_paused_room_expects_paused_position():
    h = Harness(FakeAdapter(position=0.0, paused=True))
    h.sync_clock(latency_ms=50)
    # Client A paused at 120.0 three seconds of relay time ago
    h.ctl.room = RoomState(position=120.0, paused=True, last_update_at=T - 3000)
    action, target = run(h.ctl.tick())
    assert action == "hard_seek"
    assert target == 120.0
    assert h.adapter.args("set_position") == [120.0]


def test_late_joiner_close_to_paused_position_nudges():
    h = Harness(FakeAdapter(position=119.8, paused=True))
    h.sync_clock(latency_ms=50)
    h.ctl.room = RoomState(position=120.0, paused=True, last_update_at=T - 3000)
    action, rate = run(h.ctl.tick())
    assert action == "rate_adjust"
    assert rate == pytest.approx(1.02)


def test_remote_seek_echo_is_swallowed_then_user_seek_goes_out():
    h = Harness(FakeAdapter(position=10.0, paused=False))
    h.sync_clock()
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)

    async def scenario():
        await h.ctl.apply_remote_seek({"time": 50.0})
        await h.adapter.emit_transport_event(TransportKind.SEEK)  # our own seek
        assert h.outbound("seek") == []
        h.adapter.position = 75.0
        await h.adapter.emit_transport_event(TransportKind.SEEK)  # the user's

    run(scenario())
    assert h.outbound("seek") == [{"roomId": "room-1", "time": 75.0}]
    assert h.ctl.room.position == 75.0


def test_stale_echo_arm_does_not_swallow_user_event():
    h = Harness(FakeAdapter(position=10.0, paused=False))
    h.sync_clock()
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)

    async def scenario():
        await h.ctl.apply_remote_seek({"time": 50.0})
        # The player never reports that seek; a user seek arrives much later
        h.mono.advance(5.0)
        await h.adapter.emit_transport_event(TransportKind.SEEK)

    run(scenario())
    assert len(h.outbound("seek")) == 1


def test_remote_play_seeks_when_off_then_plays():
    h = Harness(FakeAdapter(position=5.0, paused=True))
    h.sync_clock()
    h.ctl.room = RoomState(position=5.0, paused=True, last_update_at=T)

    async def scenario():
        await h.ctl.apply_remote_play({"roomId": "room-1", "time": 30.0})
        await h.adapter.emit_transport_event(TransportKind.SEEK)
        await h.adapter.emit_transport_event(TransportKind.PLAY)

    run(scenario())
    assert [n for n, _ in h.adapter.calls] == ["set_position", "play"]
    assert h.adapter.args("set_position") == [30.0]
    assert h.ctl.room.paused is False
    assert h.ctl.room.last_update_at == pytest.approx(T)
    assert h.sent == []


def test_remote_play_within_tolerance_does_not_seek():
    h = Harness(FakeAdapter(position=30.2, paused=True))
    h.sync_clock()
    h.ctl.room = RoomState(position=5.0, paused=True, last_update_at=T)
    run(h.ctl.apply_remote_play({"time": 30.0}))
    assert h.adapter.count("set_position") == 0
    assert h.adapter.count("play") == 1


def test_remote_pause_on_already_paused_player_arms_nothing():
    h = Harness(FakeAdapter(position=30.0, paused=True))
    h.sync_clock()
    h.ctl.room = RoomState(position=30.0, paused=False, last_update_at=T)
    run(h.ctl.apply_remote_pause({"time": 30.0}))
    assert h.adapter.count("pause") == 0
    assert not h.ctl.echo.is_armed(TransportKind.PAUSE)
    assert h.ctl.room.paused is True


def test_transport_message_without_time_is_ignored():
    h = Harness()
    h.ctl.room = RoomState(position=5.0, paused=True, last_update_at=T)
    run(h.ctl.apply_remote_seek({"roomId": "room-1"}))
    assert h.adapter.calls == []
    assert h.ctl.room.position == 5.0


def test_local_user_pause_updates_room_and_broadcasts():
    h = Harness(FakeAdapter(position=61.0, paused=True))
    h.sync_clock()
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T - 5000)
    run(h.adapter.emit_transport_event(TransportKind.PAUSE))
    assert h.outbound("pause") == [{"roomId": "room-1", "time": 61.0}]
    assert h.ctl.room.paused is True
    assert h.ctl.room.position == 61.0
    assert h.ctl.room.last_update_at == pytest.approx(T)


def test_user_events_before_init_are_not_broadcast():
    h = Harness()
    run(h.adapter.emit_transport_event(TransportKind.PLAY))
    assert h.sent == []


def test_sync_state_updates_record_only():
    h = Harness(FakeAdapter(position=1.0, paused=False))
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)
    run(h.ctl.apply_sync_state({"currentTime": 99.0, "paused": True, "lastUpdate": T + 1}))
    assert (h.ctl.room.position, h.ctl.room.paused, h.ctl.room.last_update_at) == (99.0, True, T + 1)
    assert h.adapter.calls == []


def test_sync_state_malformed_is_ignored():
    h = Harness()
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)
    run(h.ctl.apply_sync_state({"currentTime": "abc"}))
    assert h.ctl.room.position == 10.0


def test_tick_reconciles_paused_flag():
    h = Harness(FakeAdapter(position=10.0, paused=True))
    h.sync_clock()
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)
    run(h.ctl.tick())
    assert h.adapter.count("play") == 1
    assert h.ctl.echo.is_armed(TransportKind.PLAY)


def test_adapter_failure_is_logged_not_raised():
    adapter = FakeAdapter(position=0.0, paused=False)
    adapter.fail = {"set_position"}
    h = Harness(adapter)
    h.sync_clock()
    h.ctl.room = RoomState(position=30.0, paused=False, last_update_at=T)
    action, _ = run(h.ctl.tick())
    assert action == "hard_seek"
    # The failed seek will never produce an event, so nothing stays armed
    assert not h.ctl.echo.is_armed(TransportKind.SEEK)
    adapter.fail = set()
    action, _ = run(h.ctl.tick())
    assert action == "hard_seek"
    assert adapter.args("set_position") == [pytest.approx(30.0)]


def test_position_unavailable_skips_tick():
    adapter = FakeAdapter(position=0.0, paused=False)
    adapter.fail = {"get_position"}
    h = Harness(adapter)
    h.sync_clock()
    h.ctl.room = RoomState(position=30.0, paused=False, last_update_at=T)
    assert run(h.ctl.tick()) == ("skip", 0.0)


def test_drift_correction_can_be_disabled():
    h = Harness(FakeAdapter(position=0.0, paused=False), config=SyncConfig(drift_correction=False))
    h.sync_clock()
    h.ctl.room = RoomState(position=30.0, paused=False, last_update_at=T)
    assert run(h.ctl.tick()) == ("skip", 0.0)
    assert h.adapter.count("set_position") == 0
    assert h.adapter.count("set_rate") == 0


def test_on_drift_callback_and_trace(tmp_path):
    h = Harness(FakeAdapter(position=9.9, paused=False),
                config=SyncConfig(trace_corrections=True), trace_dir=tmp_path)
    h.sync_clock()
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)
    seen = []
    h.ctl.on_drift = lambda diff, action: seen.append((diff, action))
    run(h.ctl.tick())
    assert seen == [(pytest.approx(0.1), "rate_adjust")]
    traces = list(tmp_path.glob("corrections-*.jsonl"))
    assert len(traces) == 1
    record = json.loads(traces[0].read_text().splitlines()[0])
    assert record["action"] == "rate_adjust"


def test_rejoin_announces_then_pulls_state():
    h = Harness()
    run(h.ctl.rejoin())
    assert h.sent == [
        ("joinRoom", {"roomId": "room-1", "username": "alice"}),
        ("getState", {"roomId": "room-1"}),
    ]


def test_media_error_requests_state():
    h = Harness()
    run(h.adapter.emit_media_error("decoder failed"))
    assert h.sent == [("getState", {"roomId": "room-1"})]


def test_on_pong_updates_clock():
    h = Harness()
    h.local.t = T + 80
    h.ctl.on_pong({"clientSent": T, "serverTime": T + 500})
    assert h.clock.latency_ms == 40
    assert h.clock.offset_ms == (T + 540) - (T + 80)


def test_on_pong_malformed_ignored():
    h = Harness()
    h.ctl.on_pong({"clientSent": "x"})
    assert not h.clock.has_estimate


def test_apply_init_loads_aligns_and_starts_loops():
    h = Harness(FakeAdapter(position=0.0, paused=False))
    h.sync_clock()
    titles = []
    h.ctl.on_title = titles.append

    async def scenario():
        h.ctl.start()
        await h.ctl.apply_init({
            "videoUrl": "https://cdn.example/movie.m3u8",
            "title": "Movie",
            "currentTime": 50.0,
            "paused": False,
            "lastUpdate": T - 2000,
        })
        assert h.ctl.is_syncing
        await h.ctl.stop()
        assert not h.ctl.is_syncing

    run(scenario())
    assert titles == ["Movie"]
    names = [n for n, _ in h.adapter.calls]
    assert names[0] == "load"
    assert names[1] == "pause"
    assert "set_position" in names
    assert names[-1] == "play"
    assert h.adapter.args("set_position") == [pytest.approx(52.0)]
    assert any(t == "pingCheck" for t, _ in h.sent)


def test_apply_init_same_media_does_not_reload():
    adapter = FakeAdapter(position=0.0, paused=True)
    adapter.loaded_media = "https://cdn.example/movie.m3u8"
    h = Harness(adapter)
    h.sync_clock()
    run(h.ctl.apply_init({
        "videoUrl": "https://cdn.example/movie.m3u8",
        "currentTime": 12.0,
        "paused": True,
        "lastUpdate": T,
    }))
    assert adapter.count("load") == 0
    assert adapter.args("set_position") == [12.0]
    # Not started, so no loops were spawned
    assert not h.ctl.is_syncing


def test_stop_cancels_all_periodic_tasks():
    h = Harness()

    async def scenario():
        h.ctl.start()
        h.ctl.room = RoomState()
        h.ctl._start_sync_loops()
        tasks = list(h.ctl._loop_tasks) + [h.ctl._ping_task]
        await asyncio.sleep(0)
        await h.ctl.stop()
        return tasks

    tasks = run(scenario())
    assert len(tasks) == 4
    assert all(t.done() for t in tasks)


class SlowPositionAdapter(FakeAdapter):
    """Yields while the position is read, like a real IPC round trip."""

    async def get_position(self):
        await asyncio.sleep(0.01)
        return await super().get_position()


def test_user_seek_during_tick_is_kept_and_broadcast():
    h = Harness(SlowPositionAdapter(position=10.0, paused=True))
    h.sync_clock()
    h.ctl.room = RoomState(position=10.0, paused=True, last_update_at=T)

    async def scenario():
        tick = asyncio.create_task(h.ctl.tick())
        await asyncio.sleep(0)  # tick is now reading the player position
        h.adapter.position = 100.0
        user = asyncio.create_task(h.adapter.emit_transport_event(TransportKind.SEEK))
        result = await tick
        await user
        return result

    assert run(scenario()) == ("skip", 0.0)
    assert h.adapter.count("set_position") == 0
    assert h.adapter.position == 100.0
    assert h.outbound("seek") == [{"roomId": "room-1", "time": 100.0}]
    assert h.ctl.room.position == 100.0


def test_remote_seek_waits_for_running_tick():
    h = Harness(SlowPositionAdapter(position=9.8, paused=False))
    h.sync_clock()
    h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)

    async def scenario():
        tick = asyncio.create_task(h.ctl.tick())
        await asyncio.sleep(0)
        remote = asyncio.create_task(h.ctl.apply_remote_seek({"time": 60.0}))
        await asyncio.sleep(0)
        assert h.ctl.room.position == 10.0
        result = await tick
        await remote
        return result

    action, rate = run(scenario())
    assert action == "rate_adjust"
    assert rate == pytest.approx(1.02)
    assert [n for n, _ in h.adapter.calls] == ["set_rate", "set_position"]
    assert h.adapter.args("set_position") == [60.0]
    assert h.ctl.room.position == 60.0


def test_media_error_reloads_media_and_realigns():
    media = "https://cdn.example/movie.m3u8"
    adapter = FakeAdapter(position=0.0, paused=True)
    adapter.loaded_media = media
    h = Harness(adapter)
    h.sync_clock()
    h.ctl.room = RoomState(media_id=media, position=42.0, paused=False, last_update_at=T)
    run(adapter.emit_media_error("loading failed"))
    assert adapter.args("load") == [media]
    assert adapter.args("set_position") == [pytest.approx(42.0)]
    assert adapter.count("play") == 1
    assert h.sent == [("getState", {"roomId": "room-1"})]


def test_failed_reloads_stop_and_next_init_loads_again():
    media = "https://cdn.example/movie.m3u8"
    adapter = FakeAdapter(position=0.0, paused=True)
    adapter.loaded_media = media
    adapter.fail = {"load"}
    h = Harness(adapter)
    h.sync_clock()
    h.ctl.room = RoomState(media_id=media, position=42.0, paused=True, last_update_at=T)

    async def scenario():
        for _ in range(MAX_MEDIA_RELOADS + 2):
            await adapter.emit_media_error("404")

    run(scenario())
    assert adapter.loaded_media == ""
    assert h.ctl._media_reloads == MAX_MEDIA_RELOADS
    assert adapter.count("set_position") == 0
    assert len(h.outbound("getState")) == MAX_MEDIA_RELOADS + 2

    adapter.fail = set()
    run(h.ctl.apply_init({"videoUrl": media, "currentTime": 42.0, "paused": True,
                          "lastUpdate": T}))
    assert adapter.args("load") == [media]
    assert h.ctl._media_reloads == 0


def run_for(h, seconds, seed_room=True):
    async def scenario():
        h.ctl.start()
        if seed_room:
            h.ctl.room = RoomState(position=10.0, paused=False, last_update_at=T)
            h.ctl._start_sync_loops()
        await asyncio.sleep(seconds)
        await h.ctl.stop()

    run(scenario())


def test_ping_loop_runs_before_room_is_seeded():
    h = Harness(config=SyncConfig(interval_ms=20))
    run_for(h, 0.15, seed_room=False)
    pings = h.outbound("pingCheck")
    assert len(pings) >= 2
    assert all(p == {"clientTime": T} for p in pings)
    assert h.outbound("getState") == []
    assert h.outbound("statsUpdate") == []


def test_stats_loop_reports_username_latency_position_platform():
    h = Harness(FakeAdapter(position=10.0, paused=False),
                config=SyncConfig(interval_ms=20, stats_interval_ms=20))
    h.sync_clock(latency_ms=40)
    run_for(h, 0.15)
    stats = h.outbound("statsUpdate")
    assert len(stats) >= 2
    assert stats[0] == {
        "username": "alice",
        "latency": pytest.approx(40.0),
        "time": 10.0,
        "platform": "desktop",
    }


def test_state_pull_runs_once_every_resync_ticks():
    h = Harness(FakeAdapter(position=10.0, paused=False),
                config=SyncConfig(interval_ms=20, resync_every=5))
    h.sync_clock()
    ticks = []
    h.ctl.on_drift = lambda diff, action: ticks.append(action)
    run_for(h, 0.5)
    pulls = h.outbound("getState")
    assert len(ticks) >= 10
    assert all(p == {"roomId": "room-1"} for p in pulls)
    assert max(1, len(ticks) // 5 - 2) <= len(pulls) <= len(ticks) // 5 + 2
