"""Raw upstream record -> :class:`Token`.

Every field is read through an ordered list of candidate extractors; the
first one yielding a usable value wins, otherwise the field default
applies. Zero counts as "absent" for numeric fields, so a zero ``usdPrice``
falls through to ``priceUsd``. Normalization never raises.
"""
import math
from typing import Any, Callable, List, Mapping, Optional, Sequence

from src.core.models import RawRecord, Token, UNKNOWN_ID, UNKNOWN_NAME, UNKNOWN_SYMBOL
from src.utils.logger import get_logger


Extractor = Callable[[Mapping[str, Any]], Any]


def _field(name: str) -> Extractor:
    return lambda raw: raw.get(name)


def _stat(name: str) -> Extractor:
    def extract(raw: Mapping[str, Any]) -> Any:
        stats = raw.get("stats24h")
        if isinstance(stats, Mapping):
            return stats.get(name)
        return None

    return extract


ID_FIELDS: Sequence[Extractor] = (_field("id"), _field("mint"))
SYMBOL_FIELDS: Sequence[Extractor] = (_field("symbol"),)
NAME_FIELDS: Sequence[Extractor] = (_field("name"),)
IMAGE_FIELDS: Sequence[Extractor] = (_field("icon"),)
PRICE_FIELDS: Sequence[Extractor] = (_field("usdPrice"), _field("priceUsd"))
LIQUIDITY_FIELDS: Sequence[Extractor] = (_field("liquidity"),)
MARKET_CAP_FIELDS: Sequence[Extractor] = (_field("mcap"),)
PRICE_CHANGE_FIELDS: Sequence[Extractor] = (_stat("priceChange"),)
BUY_VOLUME_FIELDS: Sequence[Extractor] = (_stat("buyVolume"),)
SELL_VOLUME_FIELDS: Sequence[Extractor] = (_stat("sellVolume"),)


def coerce_number(value: Any) -> Optional[float]:
    """Finite non-zero float or ``None``."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number == 0:
        return None
    return number


def coerce_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def first_number(raw: Mapping[str, Any], extractors: Sequence[Extractor], default: float = 0.0) -> float:
    for extract in extractors:
        number = coerce_number(extract(raw))
        if number is not None:
            return number
    return default


def first_text(raw: Mapping[str, Any], extractors: Sequence[Extractor], default: str) -> str:
    for extract in extractors:
        text = coerce_text(extract(raw))
        if text is not None:
            return text
    return default


class TokenNormalizer:

    def __init__(self):
        self.logger = get_logger("TokenNormalizer")

    def normalize(self, raw: Any) -> Token:
        if not isinstance(raw, Mapping):
            self.logger.debug(f"Non-object record replaced by defaults: {type(raw).__name__}")
            raw = {}
        return normalize(raw)

    def normalize_all(self, records: Sequence[Any]) -> List[Token]:
        return [self.normalize(record) for record in records]


def normalize(raw: RawRecord) -> Token:
    if not isinstance(raw, Mapping):
        raw = {}

    symbol = first_text(raw, SYMBOL_FIELDS, "").upper() or UNKNOWN_SYMBOL

    buy_volume = first_number(raw, BUY_VOLUME_FIELDS)
    sell_volume = first_number(raw, SELL_VOLUME_FIELDS)

    return Token(
        id=first_text(raw, ID_FIELDS, UNKNOWN_ID),
        symbol=symbol,
        name=first_text(raw, NAME_FIELDS, UNKNOWN_NAME),
        price=first_number(raw, PRICE_FIELDS),
        image=first_text(raw, IMAGE_FIELDS, ""),
        liquidity=first_number(raw, LIQUIDITY_FIELDS),
        market_cap=first_number(raw, MARKET_CAP_FIELDS),
        price_change_24h=first_number(raw, PRICE_CHANGE_FIELDS),
        volume_24h=buy_volume + sell_volume,
    )
