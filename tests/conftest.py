import os
import tempfile

import pytest

os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="trending-logs-"))

from src.core.models import Token


@pytest.fixture
def sample_tokens():
    return [
        Token(id="a", symbol="AAA", name="Alpha", price=1.0, volume_24h=300.0),
        Token(id="b", symbol="BBB", name="Beta", price=5.0, volume_24h=100.0),
        Token(id="c", symbol="CCC", name="Gamma", price=0.0, volume_24h=500.0),
        Token(id="d", symbol="DDD", name="Delta", price=-0.01, volume_24h=900.0),
        Token(id="e", symbol="EEE", name="Epsilon", price=3.0, volume_24h=200.0),
    ]


@pytest.fixture
def raw_token():
    def factory(symbol, price=1.0, buy=10.0, sell=5.0, **extra):
        record = {
            "id": f"{symbol.lower()}-mint",
            "symbol": symbol,
            "name": f"{symbol} Token",
            "usdPrice": price,
            "icon": f"https://img.example/{symbol}.png",
            "liquidity": 1000,
            "mcap": 50000,
            "stats24h": {"priceChange": 2.5, "buyVolume": buy, "sellVolume": sell},
        }
        record.update(extra)
        return record

    return factory
