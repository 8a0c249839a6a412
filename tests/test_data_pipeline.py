import json
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from src.core.live_data_fetcher import LiveDataFetcher
from src.main import TrendingService, main, parse_args
from src.utils.config_loader import ConfigLoader


def make_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = body
    return response


def raw(symbol, price, buy, sell):
    return {
        "id": f"{symbol.lower()}-mint",
        "symbol": symbol,
        "name": symbol,
        "usdPrice": price,
        "stats24h": {"buyVolume": buy, "sellVolume": sell},
    }


class TestTrendingService(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.test_dir = tempfile.mkdtemp()
        cls.config = {
            "api": {"base_url": "https://api.test/toptrending", "max_attempts": 2, "base_delay_seconds": 0},
            "aggregation": {"windows": ["5m", "1h"], "window_limit": 10, "polling_interval_ms": 60000},
            "query": {"default_limit": 5},
            "server": {"host": "127.0.0.1", "port": 3999, "static_dir": cls.test_dir},
        }
        cls.config_path = str(Path(cls.test_dir) / "settings.json")
        with open(cls.config_path, "w") as f:
            json.dump(cls.config, f)

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.test_dir, ignore_errors=True)

    def setUp(self):
        self.settings = ConfigLoader.load_settings(self.config_path, env={})
        self.session = MagicMock()
        self.fetcher = LiveDataFetcher(self.settings, session=self.session)
        self.service = TrendingService(self.settings, fetcher=self.fetcher)

    def tearDown(self):
        self.service.shutdown()

    def test_run_once_aggregates_both_windows(self):
        bodies = {
            "https://api.test/toptrending/5m": [raw("SOL", 150.0, 100, 50), raw("BONK", 0.00002, 10, 10)],
            "https://api.test/toptrending/1h": {"data": [raw("sol", 151.0, 1000, 500)]},
        }
        self.session.get.side_effect = lambda url, **kwargs: make_response(body=bodies[url])

        result = self.service.run_once()

        self.assertEqual(result["cycle"]["status"], "completed")
        self.assertEqual(result["tokens"], 2)
        self.assertEqual(result["top"][0]["symbol"], "SOL")
        self.assertEqual(result["top"][0]["price"], 151.0)
        self.assertEqual(result["top"][0]["volume24h"], 1650.0)
        self.assertEqual(self.session.get.call_args.kwargs["params"], {"limit": 10})

    def test_run_once_survives_total_outage(self):
        self.session.get.return_value = make_response(status_code=503)

        result = self.service.run_once()

        self.assertEqual(result["cycle"]["status"], "failed")
        self.assertEqual(result["tokens"], 0)
        self.assertEqual(self.session.get.call_count, 4)

    def test_api_serves_aggregated_state(self):
        self.session.get.return_value = make_response(body=[raw("JUP", 0.8, 5, 5)])
        self.service.run_once()

        client = self.service.web_server.app.test_client()
        body = client.get("/api/tokens").get_json()

        self.assertEqual([t["symbol"] for t in body["tokens"]], ["JUP"])
        self.assertEqual(body["limit"], 5)
        status = client.get("/api/status").get_json()
        self.assertEqual(status["cycles_run"], 1)

    def test_shutdown_is_idempotent(self):
        self.service.shutdown()
        self.service.shutdown()
        self.session.close.assert_called_once()


class TestCommandLine(unittest.TestCase):

    def test_parse_args(self):
        args = parse_args(["--config", "x.json", "--once", "--port", "8000"])
        self.assertEqual(args.config, "x.json")
        self.assertTrue(args.once)
        self.assertEqual(args.port, 8000)
        self.assertIsNone(args.host)

    def test_missing_config_exits_non_zero(self):
        with patch("src.main.shutdown_logger"):
            self.assertEqual(main(["--config", "/nonexistent/settings.json"]), 1)


if __name__ == "__main__":
    unittest.main()
