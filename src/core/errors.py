from typing import Dict, Optional


class AggregationError(Exception):
    """Base class for failures inside the aggregation pipeline."""


class FetchError(AggregationError):
    """One window could not be fetched: transport, status or empty payload."""

    def __init__(self, message: str, window: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.window = window
        self.status_code = status_code

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429 or "429" in str(self)


class AllWindowsFailedError(AggregationError):
    """Every configured window failed in a single cycle."""

    def __init__(self, failures: Dict[str, str]):
        windows = ", ".join(sorted(failures)) or "none"
        super().__init__(f"All windows failed ({windows})")
        self.failures = dict(failures)


class MalformedCursorError(AggregationError, ValueError):
    """A pagination cursor could not be decoded to an offset."""
