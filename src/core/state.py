import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple

from src.core.models import Token


@dataclass(frozen=True)
class Snapshot:
    tokens: Tuple[Token, ...] = ()
    cycle_id: int = 0
    updated_at_ms: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.tokens

    def age_seconds(self, now: Optional[float] = None) -> Optional[float]:
        if self.updated_at_ms is None:
            return None
        now = time.time() if now is None else now
        return max(0.0, now - self.updated_at_ms / 1000.0)


@dataclass
class StateHolder:
    """Single-writer slot holding the current :class:`Snapshot`.

    Readers take whatever reference ``current()`` returns and keep working
    on it; ``install`` swaps the reference and never touches the old one.
    """

    _snapshot: Snapshot = field(default_factory=Snapshot)
    _write_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def current(self) -> Snapshot:
        return self._snapshot

    def install(self, tokens: Iterable[Token], cycle_id: int) -> Snapshot:
        snapshot = Snapshot(
            tokens=tuple(tokens),
            cycle_id=cycle_id,
            updated_at_ms=int(time.time() * 1000),
        )
        with self._write_lock:
            self._snapshot = snapshot
        return snapshot
