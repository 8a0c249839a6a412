"""
HTTP + Socket.IO front for the aggregated trending-token snapshot.

Serves the dashboard, the paginated token query and health/status
endpoints, and registers every Socket.IO connection with the update
broadcaster.
"""

import time
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request, send_from_directory
from flask_socketio import SocketIO

from src.core.broadcaster import UpdateBroadcaster
from src.core.query import QueryEngine
from src.core.scheduler import AggregationScheduler
from src.core.state import StateHolder
from src.utils.logger import get_logger, log_metric

MESSAGE_EVENT = "message"


class SocketSubscriber:
    """Delivers broadcaster messages to one Socket.IO session."""

    def __init__(self, socketio: SocketIO, sid: str):
        self.socketio = socketio
        self.sid = sid

    def send(self, message: Dict[str, Any]) -> None:
        self.socketio.emit(MESSAGE_EVENT, message, to=self.sid)


def parse_limit(raw: Optional[str], default: int) -> int:
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return default
    return limit if limit > 0 else default


class WebServer:

    def __init__(
        self,
        state: StateHolder,
        broadcaster: UpdateBroadcaster,
        query_engine: QueryEngine,
        scheduler: Optional[AggregationScheduler] = None,
        static_dir: str = "public",
        host: str = "0.0.0.0",
        port: int = 3000,
    ):
        self.logger = get_logger("WebServer")
        self.state = state
        self.broadcaster = broadcaster
        self.query_engine = query_engine
        self.scheduler = scheduler
        self.host = host
        self.port = port
        self.static_dir = Path(static_dir).resolve()

        self.app = Flask(
            __name__,
            static_folder=str(self.static_dir),
            static_url_path="/static",
        )
        self.socketio = SocketIO(self.app, cors_allowed_origins="*", async_mode="threading")

        self._setup_routes()
        self._setup_socket_events()

    def _setup_routes(self):
        @self.app.route("/")
        def index():
            return send_from_directory(str(self.static_dir), "index.html")

        @self.app.route("/api/tokens")
        def get_tokens():
            snapshot = self.state.current()
            try:
                page = self.query_engine.query(
                    snapshot.tokens,
                    sort_by=request.args.get("sortBy", "volume"),
                    order=request.args.get("order", "desc"),
                    limit=parse_limit(request.args.get("limit"), self.query_engine.default_limit),
                    cursor=request.args.get("cursor") or None,
                )
            except Exception as e:
                self.logger.error(f"Token query failed: {e}")
                return jsonify({"error": "Internal server error"}), 500
            return jsonify(page.to_dict())

        @self.app.route("/api/health")
        def health():
            snapshot = self.state.current()
            return jsonify(
                {
                    "status": "healthy",
                    "tokens": len(snapshot.tokens),
                    "cycle_id": snapshot.cycle_id,
                    "snapshot_age_seconds": snapshot.age_seconds(),
                    "subscribers": self.broadcaster.subscriber_count,
                    "scheduler_running": self.scheduler.is_running if self.scheduler else False,
                    "timestamp": int(time.time() * 1000),
                }
            )

        @self.app.route("/api/status")
        def status():
            if self.scheduler is None:
                return jsonify({"error": "Scheduler not configured"}), 404
            return jsonify(self.scheduler.status())

    def _setup_socket_events(self):
        @self.socketio.on("connect")
        def handle_connect():
            sid = request.sid
            self.broadcaster.subscribe(sid, SocketSubscriber(self.socketio, sid))
            log_metric("socket_connected", 1, {"subscribers": self.broadcaster.subscriber_count})

        @self.socketio.on("disconnect")
        def handle_disconnect(*args):
            self.broadcaster.unsubscribe(request.sid)

    def run(self, debug: bool = False):
        self.logger.info(f"Starting web server on {self.host}:{self.port}")
        self.socketio.run(
            self.app,
            host=self.host,
            port=self.port,
            debug=debug,
            use_reloader=False,
            allow_unsafe_werkzeug=True,
        )

    def stop(self):
        try:
            self.socketio.stop()
        except RuntimeError as e:
            self.logger.debug(f"Socket.IO stop skipped: {e}")
