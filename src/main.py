import argparse
import json
import os
import signal
import sys
import traceback
import uuid
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv

from src.api.web_server import WebServer
from src.core.broadcaster import UpdateBroadcaster
from src.core.live_data_fetcher import LiveDataFetcher
from src.core.query import QueryEngine
from src.core.scheduler import AggregationScheduler, build_scheduler
from src.core.state import StateHolder
from src.utils.config_loader import ConfigLoader, Settings
from src.utils.logger import correlation_decorator, get_logger, shutdown_logger, update_log_level


class TrendingService:
    """Wires fetcher, scheduler, state, broadcaster and web server together."""

    def __init__(self, settings: Settings, fetcher: Optional[LiveDataFetcher] = None):
        self.logger = get_logger("TrendingService")
        self.correlation_id = str(uuid.uuid4())[:8]
        self.settings = settings
        self._shut_down = False

        self.state = StateHolder()
        self.broadcaster = UpdateBroadcaster(snapshot_source=self.state.current)
        self.query_engine = QueryEngine(default_limit=settings.default_page_limit)
        self.fetcher = fetcher or LiveDataFetcher(settings)
        self.scheduler: AggregationScheduler = build_scheduler(
            self.fetcher, self.state, settings, broadcaster=self.broadcaster
        )
        self.web_server = WebServer(
            state=self.state,
            broadcaster=self.broadcaster,
            query_engine=self.query_engine,
            scheduler=self.scheduler,
            static_dir=settings.static_dir,
            host=settings.host,
            port=settings.port,
        )
        self.logger.info(f"TrendingService initialized [CID:{self.correlation_id}]")

    def _handle_shutdown_signal(self, signum, frame) -> None:
        self.logger.info(f"Received signal {signum}, shutting down [CID:{self.correlation_id}]")
        raise SystemExit(0)

    @correlation_decorator()
    def run_once(self) -> dict:
        report = self.scheduler.run_cycle()
        snapshot = self.state.current()
        return {
            "cycle": report.to_dict(),
            "tokens": len(snapshot.tokens),
            "top": [t.to_dict() for t in self.query_engine.query(snapshot.tokens, limit=5).tokens],
        }

    def start(self) -> None:
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)
        signal.signal(signal.SIGTERM, self._handle_shutdown_signal)

        self.logger.info("=" * 60)
        self.logger.info("Trending Token Aggregator")
        self.logger.info(f"Start Time: {datetime.now(timezone.utc).isoformat()}")
        self.logger.info(f"Windows: {', '.join(self.settings.windows)} every {self.settings.polling_interval_ms}ms")
        self.logger.info("=" * 60)

        try:
            self.scheduler.start()
            self.web_server.run()
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True
        self.logger.info(f"Initiating graceful shutdown [CID:{self.correlation_id}]...")
        try:
            self.scheduler.stop(timeout=10.0)
        except Exception as e:
            self.logger.warning(f"Error stopping scheduler: {e}")
        self.web_server.stop()
        self.fetcher.close()
        self.logger.info("System shutdown complete")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trending token aggregator")
    parser.add_argument("--config", default=os.environ.get("CONFIG_PATH", "config/settings.json"))
    parser.add_argument("--once", action="store_true", help="Run a single aggregation cycle and exit")
    parser.add_argument("--host", help="Override server.host")
    parser.add_argument("--port", type=int, help="Override server.port")
    parser.add_argument("--log-level", help="Override logging.level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    load_dotenv()
    args = parse_args(argv)
    if args.log_level:
        update_log_level(args.log_level)
    try:
        settings = ConfigLoader.load_settings(args.config)
        overrides = {}
        if args.host:
            overrides["HOST"] = args.host
        if args.port:
            overrides["PORT"] = str(args.port)
        settings = ConfigLoader.apply_env_overrides(settings, overrides)

        service = TrendingService(settings)
        if args.once:
            try:
                print(json.dumps(service.run_once(), indent=2, default=str))
            finally:
                service.shutdown()
            return 0

        service.start()
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        return 1
    finally:
        shutdown_logger()


if __name__ == "__main__":
    raise SystemExit(main())
