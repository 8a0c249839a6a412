import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol

from src.core.models import tokens_to_dicts
from src.core.state import Snapshot
from src.utils.logger import get_logger, log_metric


INITIAL_LOAD = "INITIAL_LOAD"
UPDATE = "UPDATE"


class Subscriber(Protocol):
    def send(self, message: Dict[str, Any]) -> None:
        ...


def build_message(event_type: str, snapshot: Snapshot, clock: Callable[[], float] = time.time) -> Dict[str, Any]:
    return {
        "type": event_type,
        "tokens": tokens_to_dicts(snapshot.tokens),
        "ts": int(clock() * 1000),
    }


class UpdateBroadcaster:
    """Fans snapshots out to live subscribers, best effort.

    A subscriber whose ``send`` raises is dropped; the others still get
    the message. Registration and publishing share one lock held through
    delivery, so a new subscriber either reads the state a concurrent
    publish carries or receives that publish after its ``INITIAL_LOAD``.
    """

    def __init__(
        self,
        snapshot_source: Optional[Callable[[], Snapshot]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.logger = get_logger("UpdateBroadcaster")
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.RLock()
        self._snapshot_source = snapshot_source
        self._clock = clock

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _deliver(self, subscriber_id: str, subscriber: Subscriber, message: Dict[str, Any]) -> bool:
        try:
            subscriber.send(message)
            return True
        except Exception as e:
            self.logger.info(f"Dropping subscriber {subscriber_id}: {e}")
            self.unsubscribe(subscriber_id)
            return False

    def subscribe(self, subscriber_id: str, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers[subscriber_id] = subscriber
            self.logger.debug(f"Subscriber connected: {subscriber_id} ({len(self._subscribers)} live)")

            snapshot = self._snapshot_source() if self._snapshot_source else None
            if snapshot is not None and not snapshot.is_empty:
                self._deliver(subscriber_id, subscriber, build_message(INITIAL_LOAD, snapshot, self._clock))

    def unsubscribe(self, subscriber_id: str) -> None:
        with self._lock:
            removed = self._subscribers.pop(subscriber_id, None)
        if removed is not None:
            self.logger.debug(f"Subscriber removed: {subscriber_id}")

    def publish(self, snapshot: Snapshot) -> int:
        message = build_message(UPDATE, snapshot, self._clock)
        with self._lock:
            targets = list(self._subscribers.items())
            delivered = sum(1 for sid, sub in targets if self._deliver(sid, sub, message))

        self.logger.info(f"Broadcast {len(snapshot.tokens)} tokens to {delivered}/{len(targets)} subscribers")
        log_metric("broadcast", delivered, {"subscribers": len(targets), "tokens": len(snapshot.tokens)})
        return delivered
