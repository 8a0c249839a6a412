"""Sorting, filtering and cursor pagination over a merged snapshot.

Cursors are base64 encoded ``{"offset": n}`` JSON. They are opaque to
clients; anything that does not decode to a non-negative integer offset
resumes from the start.
"""
import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.core.errors import MalformedCursorError
from src.core.models import Token

DEFAULT_LIMIT = 50
SORT_FIELDS = {"price": "price", "volume": "volume_24h"}


@dataclass(frozen=True)
class TokenPage:
    tokens: Tuple[Token, ...]
    next_cursor: Optional[str]
    total: int
    limit: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens": [token.to_dict() for token in self.tokens],
            "nextCursor": self.next_cursor,
            "total": self.total,
            "limit": self.limit,
        }


def encode_cursor(offset: int) -> str:
    raw = json.dumps({"offset": offset}, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def parse_cursor(cursor: str) -> int:
    try:
        decoded = json.loads(base64.b64decode(cursor, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise MalformedCursorError(f"Undecodable cursor: {cursor!r}") from e

    offset = decoded.get("offset") if isinstance(decoded, dict) else None
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise MalformedCursorError(f"Cursor carries no usable offset: {decoded!r}")
    return offset


def decode_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        return parse_cursor(cursor)
    except MalformedCursorError:
        return 0


def _sort_value(token: Token, attribute: str) -> float:
    return getattr(token, attribute) or 0


def query_tokens(
    tokens: Sequence[Token],
    sort_by: Optional[str] = "volume",
    order: Optional[str] = "desc",
    limit: Optional[int] = DEFAULT_LIMIT,
    cursor: Optional[str] = None,
) -> TokenPage:
    attribute = SORT_FIELDS["price"] if sort_by == "price" else SORT_FIELDS["volume"]
    descending = order != "asc"
    if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
        limit = DEFAULT_LIMIT

    filtered: List[Token] = [token for token in tokens if token.price >= 0]
    ordered = sorted(filtered, key=lambda t: _sort_value(t, attribute), reverse=descending)

    start = decode_cursor(cursor)
    end = start + limit
    next_cursor = encode_cursor(end) if end < len(ordered) else None

    return TokenPage(
        tokens=tuple(ordered[start:end]),
        next_cursor=next_cursor,
        total=len(ordered),
        limit=limit,
    )


class QueryEngine:

    def __init__(self, default_limit: int = DEFAULT_LIMIT):
        self.default_limit = default_limit

    def query(
        self,
        tokens: Sequence[Token],
        sort_by: Optional[str] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> TokenPage:
        return query_tokens(
            tokens,
            sort_by=sort_by or "volume",
            order=order or "desc",
            limit=limit or self.default_limit,
            cursor=cursor,
        )
