from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from src.core.errors import FetchError


UNKNOWN_ID = "unknown"
UNKNOWN_SYMBOL = "N/A"
UNKNOWN_NAME = "Unknown"

RawRecord = Mapping[str, Any]


@dataclass(frozen=True)
class Token:
    id: str = UNKNOWN_ID
    symbol: str = UNKNOWN_SYMBOL
    name: str = UNKNOWN_NAME
    price: float = 0.0
    image: str = ""
    liquidity: float = 0.0
    market_cap: float = 0.0
    price_change_24h: float = 0.0
    volume_24h: float = 0.0

    @property
    def merge_key(self) -> str:
        if self.symbol and self.symbol != UNKNOWN_SYMBOL:
            return self.symbol.lower()
        return self.id.lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "name": self.name,
            "price": self.price,
            "image": self.image,
            "liquidity": self.liquidity,
            "marketCap": self.market_cap,
            "priceChange24h": self.price_change_24h,
            "volume24h": self.volume_24h,
        }


@dataclass(frozen=True)
class RawPayload:
    """Validated upstream body for one window; ``records`` is never empty."""

    records: List[Any]

    @classmethod
    def parse(cls, body: Any, window: Optional[str] = None) -> "RawPayload":
        if isinstance(body, list):
            payload: RawPayload = ArrayPayload(records=body)
        elif isinstance(body, Mapping) and isinstance(body.get("data"), list):
            payload = DataFieldPayload(records=body["data"])
        else:
            raise FetchError(
                f"Unexpected response shape for window {window}: {type(body).__name__}",
                window=window,
            )

        if not payload.records:
            raise FetchError(f"No tokens returned for window {window}", window=window)
        return payload


@dataclass(frozen=True)
class ArrayPayload(RawPayload):
    """Upstream answered with a bare JSON array."""


@dataclass(frozen=True)
class DataFieldPayload(RawPayload):
    """Upstream answered with ``{"data": [...]}``."""


def tokens_to_dicts(tokens: Sequence[Token]) -> List[Dict[str, Any]]:
    return [token.to_dict() for token in tokens]
