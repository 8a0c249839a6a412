from dataclasses import replace
from typing import Dict, List, Sequence

from src.core.models import Token
from src.utils.logger import get_logger, log_metric


def combine(existing: Token, incoming: Token) -> Token:
    """Fold ``incoming`` into ``existing``; identity fields stay first-seen."""
    price = existing.price
    if incoming.price and (not existing.price or incoming.price > existing.price):
        price = incoming.price

    return replace(
        existing,
        price=price,
        volume_24h=(existing.volume_24h or 0) + (incoming.volume_24h or 0),
        liquidity=max(existing.liquidity or 0, incoming.liquidity or 0),
        market_cap=max(existing.market_cap or 0, incoming.market_cap or 0),
    )


def merge_tokens(tokens: Sequence[Token]) -> List[Token]:
    merged: Dict[str, Token] = {}
    for token in tokens:
        key = token.merge_key
        if key in merged:
            merged[key] = combine(merged[key], token)
        else:
            merged[key] = token
    return list(merged.values())


class DataAggregator:
    """Deduplicates the tokens collected across windows into one view."""

    def __init__(self):
        self.logger = get_logger("DataAggregator")

    def merge(self, tokens: Sequence[Token]) -> List[Token]:
        merged = merge_tokens(tokens)
        self.logger.info(f"Merged {len(tokens)} tokens into {len(merged)} unique entries")
        log_metric("merge_complete", len(merged), {"input": len(tokens)})
        return merged
