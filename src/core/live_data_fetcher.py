import time
from typing import Any, Callable, List, Optional

import requests

from src.core.errors import FetchError
from src.core.models import RawPayload
from src.utils.config_loader import Settings
from src.utils.logger import get_logger, log_metric


RATE_LIMIT_MULTIPLIER = 5
DEFAULT_MULTIPLIER = 2


def is_rate_limited(error: BaseException) -> bool:
    if isinstance(error, FetchError):
        return error.is_rate_limited
    return "429" in str(error)


class RetryPolicy:
    """Bounded exponential backoff, no jitter.

    After a failed attempt ``i`` (0-indexed) the policy sleeps
    ``base_delay * multiplier ** i`` before the next one; the multiplier is 5
    for rate-limit failures and 2 otherwise. The last error is re-raised once
    ``max_attempts`` are used up.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self.logger = get_logger("RetryPolicy")

    def calculate_backoff(self, attempt: int, error: BaseException) -> float:
        multiplier = RATE_LIMIT_MULTIPLIER if is_rate_limited(error) else DEFAULT_MULTIPLIER
        return self.base_delay * (multiplier ** attempt)

    def call(self, func: Callable[[], Any], label: str = "call") -> Any:
        for attempt in range(self.max_attempts):
            try:
                return func()
            except Exception as e:
                if attempt == self.max_attempts - 1:
                    self.logger.error(f"{label} failed after {self.max_attempts} attempts: {e}")
                    log_metric("fetch_retries_exhausted", 1, {"label": label, "error": str(e)})
                    raise

                delay = self.calculate_backoff(attempt, e)
                self.logger.warning(
                    f"{label} failed (attempt {attempt + 1}/{self.max_attempts}): {e}; "
                    f"retrying in {delay:.2f}s"
                )
                log_metric(
                    "fetch_retry",
                    1,
                    {"label": label, "attempt": attempt + 1, "delay_seconds": delay,
                     "rate_limited": is_rate_limited(e)},
                )
                self._sleep(delay)


class LiveDataFetcher:
    """Fetches the trending-token list for one time window."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.logger = get_logger("LiveDataFetcher")
        self.api_base = settings.api_base.rstrip("/")
        self.timeout = settings.timeout_seconds
        self.default_limit = settings.window_limit
        self.session = session or self._initialize_session()
        self.logger.info(f"LiveDataFetcher initialized (base={self.api_base}, timeout={self.timeout}s)")

    def _initialize_session(self) -> requests.Session:
        session = requests.Session()
        adapter = requests.adapters.HTTPAdapter(pool_connections=10, pool_maxsize=10)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        session.headers.update(
            {
                "User-Agent": "TrendingTokenAggregator/1.0",
                "Accept": "application/json",
                "Accept-Encoding": "gzip, deflate",
            }
        )
        return session

    def build_url(self, window: str) -> str:
        return f"{self.api_base}/{window}"

    def fetch(self, window: str, limit: Optional[int] = None) -> List[Any]:
        limit = limit or self.default_limit
        url = self.build_url(window)
        start_time = time.time()

        try:
            response = self.session.get(url, params={"limit": limit}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Request for window {window} failed: {e}", window=window) from e

        response_time_ms = int((time.time() - start_time) * 1000)

        if not response.ok:
            raise FetchError(
                f"API returned {response.status_code} for window {window}",
                window=window,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON for window {window}: {e}", window=window) from e

        records = RawPayload.parse(body, window).records

        self.logger.debug(f"Fetched {len(records)} records for {window} in {response_time_ms}ms")
        log_metric(
            "api_request_success",
            1,
            {"window": window, "records": len(records), "response_time_ms": response_time_ms},
        )
        return records

    def fetch_with_retry(self, window: str, retry_policy: RetryPolicy, limit: Optional[int] = None) -> List[Any]:
        return retry_policy.call(lambda: self.fetch(window, limit), label=f"fetch[{window}]")

    def close(self) -> None:
        if self.session:
            self.session.close()
            self.logger.debug("HTTP session closed")
