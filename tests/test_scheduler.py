import threading
import time
from unittest.mock import MagicMock

import pytest

from src.core.broadcaster import UpdateBroadcaster
from src.core.live_data_fetcher import LiveDataFetcher, RetryPolicy
from src.core.scheduler import AggregationScheduler, CycleStatus, build_scheduler
from src.core.state import StateHolder
from src.utils.config_loader import Settings

WINDOWS = ["5m", "1h", "6h", "24h"]


def make_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = body
    return response


class FakeUpstream:
    """Maps ``<base>/<window>`` to a canned body or failing status."""

    def __init__(self, bodies, on_request=None):
        self.bodies = bodies
        self.on_request = on_request
        self.calls = []

    def get(self, url, params=None, timeout=None):
        window = url.rsplit("/", 1)[-1]
        self.calls.append(window)
        if self.on_request is not None:
            self.on_request(window)
        body = self.bodies.get(window)
        if isinstance(body, int):
            return make_response(status_code=body)
        return make_response(body=body)


class TestAggregationScheduler:

    @pytest.fixture
    def state(self):
        return StateHolder()

    def build(self, bodies, state, broadcaster=None, windows=WINDOWS, sleeps=None, sleep=None, on_request=None):
        upstream = FakeUpstream(bodies, on_request)
        fetcher = LiveDataFetcher(Settings(api_base="https://api.example"), session=upstream)
        sleeps = [] if sleeps is None else sleeps
        scheduler = AggregationScheduler(
            fetcher=fetcher,
            state=state,
            windows=windows,
            window_limit=400,
            interval_seconds=0.05,
            retry_policy=RetryPolicy(3, 1.0, sleep=sleep or sleeps.append),
            broadcaster=broadcaster,
        )
        return scheduler, upstream

    def test_all_windows_merge_into_state(self, state, raw_token):
        bodies = {
            "5m": [raw_token("AAA", price=1, buy=1, sell=1)],
            "1h": {"data": [raw_token("aaa", price=2, buy=2, sell=2), raw_token("BBB")]},
            "6h": [raw_token("CCC")],
            "24h": [raw_token("BBB", price=9)],
        }
        scheduler, _ = self.build(bodies, state)

        report = scheduler.run_cycle()

        assert report.status == CycleStatus.COMPLETED
        assert report.window_records == {"5m": 1, "1h": 2, "6h": 1, "24h": 1}
        snapshot = state.current()
        assert [t.symbol for t in snapshot.tokens] == ["AAA", "BBB", "CCC"]
        aaa = snapshot.tokens[0]
        assert aaa.price == 2
        assert aaa.volume_24h == 6
        assert snapshot.tokens[1].price == 9
        assert snapshot.cycle_id == report.cycle_id

    def test_partial_failure_uses_surviving_window(self, state, raw_token):
        state.install([], cycle_id=0)
        scheduler, upstream = self.build({"5m": 500, "1h": 429, "6h": [], "24h": [raw_token("ONLY")]}, state)
        before = state.current()

        report = scheduler.run_cycle()

        assert report.status == CycleStatus.COMPLETED
        assert set(report.window_errors) == {"5m", "1h", "6h"}
        assert [t.symbol for t in state.current().tokens] == ["ONLY"]
        assert state.current() is not before
        assert upstream.calls.count("5m") == 3

    def test_total_failure_keeps_previous_snapshot(self, state, raw_token):
        scheduler, _ = self.build({"5m": [raw_token("KEEP")], "1h": 500, "6h": 500, "24h": 500}, state)
        scheduler.run_cycle()
        before = state.current()

        scheduler.fetcher.session.bodies = {w: 503 for w in WINDOWS}
        report = scheduler.run_cycle()

        assert report.status == CycleStatus.FAILED
        assert "All windows failed" in report.error_message
        assert state.current() is before
        assert [t.symbol for t in state.current().tokens] == ["KEEP"]

    def test_total_failure_on_first_cycle_leaves_empty_state(self, state):
        scheduler, _ = self.build({w: 500 for w in WINDOWS}, state)
        report = scheduler.run_cycle()
        assert report.status == CycleStatus.FAILED
        assert state.current().is_empty

    def test_windows_are_fetched_concurrently(self, state, raw_token):
        in_flight = threading.Barrier(len(WINDOWS), timeout=5)
        scheduler, _ = self.build(
            {w: [raw_token(w.upper())] for w in WINDOWS},
            state,
            on_request=lambda window: in_flight.wait(),
        )

        report = scheduler.run_cycle()

        assert report.status == CycleStatus.COMPLETED
        assert report.window_errors == {}
        assert sorted(report.window_records) == sorted(WINDOWS)

    def test_retrying_window_does_not_hold_up_the_others(self, state, raw_token):
        release_backoff = threading.Event()
        answered = {w: threading.Event() for w in WINDOWS if w != "5m"}
        bodies = {w: [raw_token(w.upper())] for w in answered}
        bodies["5m"] = 503

        def on_request(window):
            if window in answered:
                answered[window].set()

        scheduler, upstream = self.build(
            bodies, state, sleep=lambda delay: release_backoff.wait(5), on_request=on_request
        )
        reports = []
        cycle = threading.Thread(target=lambda: reports.append(scheduler.run_cycle()))
        cycle.start()
        try:
            for window, event in answered.items():
                assert event.wait(5), f"{window} waited on the retrying window"
            assert upstream.calls.count("5m") == 1
        finally:
            release_backoff.set()
            cycle.join(timeout=10)

        report = reports[0]
        assert report.status == CycleStatus.COMPLETED
        assert set(report.window_records) == set(answered)
        assert "503" in report.window_errors["5m"]
        assert upstream.calls.count("5m") == 3

    def test_rate_limited_window_backs_off_faster(self, state, raw_token):
        sleeps = []
        scheduler, _ = self.build({"5m": 429}, state, windows=["5m"], sleeps=sleeps)
        scheduler.run_cycle()
        assert sleeps == [1.0, 5.0]

    def test_successful_cycle_broadcasts(self, state, raw_token):
        broadcaster = MagicMock(spec=UpdateBroadcaster)
        scheduler, _ = self.build({w: [raw_token("A")] for w in WINDOWS}, state, broadcaster=broadcaster)

        scheduler.run_cycle()

        broadcaster.publish.assert_called_once_with(state.current())

    def test_failed_cycle_does_not_broadcast(self, state):
        broadcaster = MagicMock(spec=UpdateBroadcaster)
        scheduler, _ = self.build({w: 500 for w in WINDOWS}, state, broadcaster=broadcaster)
        scheduler.run_cycle()
        broadcaster.publish.assert_not_called()

    def test_broadcast_error_does_not_fail_cycle(self, state, raw_token):
        broadcaster = MagicMock(spec=UpdateBroadcaster)
        broadcaster.publish.side_effect = RuntimeError("transport down")
        scheduler, _ = self.build({w: [raw_token("A")] for w in WINDOWS}, state, broadcaster=broadcaster)

        report = scheduler.run_cycle()

        assert report.status == CycleStatus.COMPLETED
        assert len(state.current().tokens) == 1

    def test_history_and_status(self, state, raw_token):
        scheduler, _ = self.build({w: [raw_token("A")] for w in WINDOWS}, state)
        scheduler.run_cycle()
        scheduler.run_cycle()

        status = scheduler.status()

        assert status["running"] is False
        assert status["cycles_run"] == 2
        assert status["last_cycle"]["cycle_id"] == 2
        assert [r["status"] for r in status["history"]] == ["completed", "completed"]

    def test_history_is_bounded(self, state, raw_token):
        scheduler, _ = self.build({w: [raw_token("A")] for w in WINDOWS}, state)
        scheduler._history = type(scheduler._history)(maxlen=2)
        for _ in range(4):
            scheduler.run_cycle()
        assert [r.cycle_id for r in scheduler.get_history()] == [3, 4]

    def test_start_runs_cycles_until_stopped(self, state, raw_token):
        scheduler, upstream = self.build({w: [raw_token("A")] for w in WINDOWS}, state)

        scheduler.start()
        try:
            deadline = time.time() + 5
            while scheduler.last_report() is None or scheduler.last_report().cycle_id < 2:
                assert time.time() < deadline, "scheduler never ran two cycles"
                time.sleep(0.01)
            assert scheduler.is_running
        finally:
            scheduler.stop(timeout=5)

        assert not scheduler.is_running
        assert state.current().cycle_id >= 2

    def test_loop_survives_failed_cycles(self, state):
        scheduler, upstream = self.build({w: 500 for w in WINDOWS}, state)

        scheduler.start()
        try:
            deadline = time.time() + 5
            while len(scheduler.get_history()) < 2:
                assert time.time() < deadline, "scheduler stopped after a failed cycle"
                time.sleep(0.01)
        finally:
            scheduler.stop(timeout=5)

        assert all(r.status == CycleStatus.FAILED for r in scheduler.get_history())

    def test_double_start_is_ignored(self, state, raw_token):
        scheduler, _ = self.build({w: [raw_token("A")] for w in WINDOWS}, state)
        scheduler.start()
        try:
            first_thread = scheduler._thread
            scheduler.start()
            assert scheduler._thread is first_thread
        finally:
            scheduler.stop(timeout=5)

    def test_requires_windows(self, state):
        with pytest.raises(ValueError):
            AggregationScheduler(fetcher=MagicMock(), state=state, windows=[], window_limit=1, interval_seconds=1)

    def test_build_scheduler_from_settings(self, state):
        settings = Settings(windows=("1h",), polling_interval_ms=1500, max_attempts=5, base_delay_seconds=0.5)
        scheduler = build_scheduler(MagicMock(), state, settings)
        assert scheduler.windows == ["1h"]
        assert scheduler.interval_seconds == 1.5
        assert scheduler.retry_policy.max_attempts == 5
        assert scheduler.retry_policy.base_delay == 0.5
