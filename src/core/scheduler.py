import threading
import time
import traceback
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from src.core.aggregator import DataAggregator
from src.core.broadcaster import UpdateBroadcaster
from src.core.errors import AllWindowsFailedError
from src.core.live_data_fetcher import LiveDataFetcher, RetryPolicy
from src.core.models import Token
from src.core.normalizer import TokenNormalizer
from src.core.state import StateHolder
from src.utils.config_loader import Settings
from src.utils.logger import get_logger, log_metric, set_correlation_id


class CycleStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CycleReport:
    cycle_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    status: CycleStatus = CycleStatus.RUNNING
    window_records: Dict[str, int] = field(default_factory=dict)
    window_errors: Dict[str, str] = field(default_factory=dict)
    merged_count: int = 0
    error_message: Optional[str] = None
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "correlation_id": self.correlation_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "window_records": dict(self.window_records),
            "window_errors": dict(self.window_errors),
            "merged_count": self.merged_count,
            "error_message": self.error_message,
        }


class AggregationScheduler:
    """Runs the fetch -> normalize -> merge -> publish cycle on a fixed delay.

    Windows are fetched in parallel; a window that exhausts its retries is
    recorded and skipped. When nothing at all comes back the current
    snapshot is left in place. The next cycle is always armed
    ``interval_seconds`` after the previous one finished.
    """

    def __init__(
        self,
        fetcher: LiveDataFetcher,
        state: StateHolder,
        windows: Sequence[str],
        window_limit: int,
        interval_seconds: float,
        retry_policy: Optional[RetryPolicy] = None,
        broadcaster: Optional[UpdateBroadcaster] = None,
        normalizer: Optional[TokenNormalizer] = None,
        aggregator: Optional[DataAggregator] = None,
        history_size: int = 100,
    ):
        if not windows:
            raise ValueError("At least one window is required")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")

        self.logger = get_logger("AggregationScheduler")
        self.fetcher = fetcher
        self.state = state
        self.windows = list(windows)
        self.window_limit = window_limit
        self.interval_seconds = interval_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.broadcaster = broadcaster
        self.normalizer = normalizer or TokenNormalizer()
        self.aggregator = aggregator or DataAggregator()

        self._history: Deque[CycleReport] = deque(maxlen=history_size)
        self._cycle_counter = 0
        self._cycle_lock = threading.Lock()
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def _fetch_window(self, window: str, correlation_id: str) -> List[Any]:
        set_correlation_id(correlation_id)
        try:
            return self.fetcher.fetch_with_retry(window, self.retry_policy, self.window_limit)
        finally:
            set_correlation_id(None)

    def _fetch_all_windows(self, report: CycleReport) -> List[Token]:
        collected: List[Token] = []

        with ThreadPoolExecutor(max_workers=len(self.windows), thread_name_prefix="window_") as executor:
            futures = {
                window: executor.submit(self._fetch_window, window, report.correlation_id)
                for window in self.windows
            }

            # configured window order keeps the merge deterministic
            for window, future in futures.items():
                try:
                    records = future.result()
                except Exception as e:
                    report.window_errors[window] = str(e)
                    self.logger.warning(f"Window {window} skipped: {e}")
                    continue

                report.window_records[window] = len(records)
                collected.extend(self.normalizer.normalize_all(records))

        return collected

    def run_cycle(self) -> CycleReport:
        with self._cycle_lock:
            self._cycle_counter += 1
            report = CycleReport(cycle_id=self._cycle_counter, start_time=datetime.now(timezone.utc))
            set_correlation_id(report.correlation_id)
            try:
                self._execute(report)
            except Exception as e:
                report.status = CycleStatus.FAILED
                report.error_message = str(e)
                self.logger.error(f"Cycle {report.cycle_id} failed: {e}\n{traceback.format_exc()}")
                log_metric("cycle_failed", 0, {"cycle_id": report.cycle_id, "error": str(e)})
            finally:
                report.end_time = datetime.now(timezone.utc)
                with self._lock:
                    self._history.append(report)
                set_correlation_id(None)
            return report

    def _execute(self, report: CycleReport) -> None:
        self.logger.info(f"Cycle {report.cycle_id} started ({len(self.windows)} windows)")
        collected = self._fetch_all_windows(report)

        if not collected:
            raise AllWindowsFailedError(report.window_errors)

        merged = self.aggregator.merge(collected)
        snapshot = self.state.install(merged, report.cycle_id)
        report.merged_count = len(merged)
        report.status = CycleStatus.COMPLETED

        self.logger.info(
            f"Cycle {report.cycle_id} complete: {len(collected)} tokens from "
            f"{len(report.window_records)}/{len(self.windows)} windows, {len(merged)} merged"
        )
        log_metric(
            "cycle_completed",
            1,
            {"cycle_id": report.cycle_id, "merged": len(merged),
             "windows_ok": len(report.window_records), "windows_failed": len(report.window_errors)},
        )

        if self.broadcaster is not None:
            try:
                self.broadcaster.publish(snapshot)
            except Exception as e:
                self.logger.error(f"Broadcast after cycle {report.cycle_id} failed: {e}")

    def _scheduler_loop(self) -> None:
        self.logger.info(f"Scheduler loop started (interval={self.interval_seconds}s)")
        try:
            while not self._stop_event.is_set():
                self.run_cycle()
                self._stop_event.wait(timeout=self.interval_seconds)
        finally:
            self.logger.info("Scheduler loop terminated")

    def start(self) -> None:
        with self._lock:
            if self._running:
                self.logger.warning("Scheduler already running")
                return
            self._running = True
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._scheduler_loop,
                name="AggregationScheduler",
                daemon=True,
            )
            self._thread.start()
        log_metric("scheduler_started", 1, {"windows": self.windows})

    def stop(self, timeout: float = 30.0) -> None:
        with self._lock:
            if not self._running:
                self.logger.debug("Scheduler not running")
                return
            self.logger.info("Stopping scheduler")
            self._stop_event.set()
            thread = self._thread

        if thread:
            thread.join(timeout=timeout)
            if thread.is_alive():
                self.logger.warning("Scheduler thread did not terminate within timeout")

        with self._lock:
            self._running = False
            self._thread = None
        log_metric("scheduler_stopped", 1, {})

    def get_history(self, limit: int = 20) -> List[CycleReport]:
        with self._lock:
            history = list(self._history)
        return history[-limit:] if limit else history

    def last_report(self) -> Optional[CycleReport]:
        with self._lock:
            return self._history[-1] if self._history else None

    def status(self, history_limit: int = 20) -> Dict[str, Any]:
        last = self.last_report()
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "windows": list(self.windows),
            "window_limit": self.window_limit,
            "cycles_run": self._cycle_counter,
            "last_cycle": last.to_dict() if last else None,
            "history": [r.to_dict() for r in self.get_history(history_limit)],
        }


def build_scheduler(
    fetcher: LiveDataFetcher,
    state: StateHolder,
    settings: Settings,
    broadcaster: Optional[UpdateBroadcaster] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AggregationScheduler:
    return AggregationScheduler(
        fetcher=fetcher,
        state=state,
        windows=settings.windows,
        window_limit=settings.window_limit,
        interval_seconds=settings.polling_interval_seconds,
        retry_policy=RetryPolicy(settings.max_attempts, settings.base_delay_seconds, sleep=sleep),
        broadcaster=broadcaster,
        history_size=settings.cycle_history_size,
    )
