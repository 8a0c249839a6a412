import logging
import logging.handlers
import queue
import json
import os
import sys
import threading
import uuid
import platform
from datetime import datetime, timezone
from typing import Dict, Optional, Any, Callable
from functools import wraps
import time

from .config_loader import ConfigLoader

__all__ = [
    "get_logger",
    "update_log_level",
    "shutdown_logger",
    "correlation_decorator",
    "set_correlation_id",
    "get_correlation_id",
    "log_metric",
]

DEFAULT_LOG_CONFIG = {
    "log_dir": "logs/",
    "log_file": "app.log",
    "max_bytes": 5 * 1024 * 1024,
    "backup_count": 10,
    "use_color": True,
    "use_json": False,
    "level": "INFO",
    "max_message_length": 10000,
}

TEXT_FORMAT = "[%(asctime)s.%(msecs)03d] [%(levelname)s] [%(name)s] [%(correlation_id)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S") + f".{now.microsecond // 1000:03d}Z"


class CorrelationFilter(logging.Filter):
    """Stamps every record with the correlation id of the emitting thread."""

    def __init__(self, store: threading.local):
        super().__init__()
        self._store = store

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = getattr(self._store, "correlation_id", None) or "-"
        return True


class JsonFormatter(logging.Formatter):
    def __init__(self, max_message_length: int = 10000):
        super().__init__()
        self.hostname = platform.node()
        self.max_message_length = max_message_length

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if len(message) > self.max_message_length:
            message = message[: self.max_message_length] + "...[truncated]"

        log_data = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "module": record.name,
            "message": message,
            "correlation_id": getattr(record, "correlation_id", "-"),
            "thread": record.threadName,
            "process_id": os.getpid(),
            "host": self.hostname,
        }

        if hasattr(record, "custom_fields"):
            log_data.update(record.custom_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    COLOR_MAP = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__(TEXT_FORMAT, datefmt=DATE_FORMAT)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        if self.use_color and record.levelno in self.COLOR_MAP:
            return f"{self.COLOR_MAP[record.levelno]}{formatted}{self.RESET}"
        return formatted


class LoggerManager:
    _instance_lock = threading.Lock()
    _instance: Optional["LoggerManager"] = None

    def __new__(cls):
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if hasattr(self, "_initialized"):
            return
        self._config_path = os.environ.get("CONFIG_PATH", "config/settings.json")
        self._config: Dict[str, Any] = {}
        self._loggers: Dict[str, logging.Logger] = {}
        self._logger_creation_lock = threading.Lock()
        self._correlation_store = threading.local()
        self._correlation_filter = CorrelationFilter(self._correlation_store)
        self._log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue(maxsize=10000)
        self._queue_handler: Optional[logging.handlers.QueueHandler] = None
        self._listener: Optional[logging.handlers.QueueListener] = None
        self._handlers = []
        self._load_config()
        self._setup_logging_infrastructure()
        self._initialized = True

    def _load_config(self) -> None:
        config = ConfigLoader.load_config(self._config_path, quiet=True) or {}
        log_config = dict(DEFAULT_LOG_CONFIG)
        log_config.update(config.get("logging", {}))
        if os.environ.get("LOG_DIR"):
            log_config["log_dir"] = os.environ["LOG_DIR"]
        self._config = log_config

    def _level(self) -> int:
        level_name = str(self._config.get("level", "INFO")).upper()
        return logging._nameToLevel.get(level_name, logging.INFO)

    def _setup_logging_infrastructure(self) -> None:
        log_dir = self._config["log_dir"]
        os.makedirs(log_dir, exist_ok=True)

        max_bytes = self._config["max_bytes"]
        backup_count = self._config["backup_count"]
        max_message_length = self._config["max_message_length"]

        text_formatter = logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)
        json_formatter = JsonFormatter(max_message_length=max_message_length)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, self._config["log_file"]),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(json_formatter if self._config["use_json"] else text_formatter)

        error_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "error.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        error_handler.setFormatter(text_formatter)
        error_handler.setLevel(logging.ERROR)

        metrics_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "metrics.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        metrics_handler.setFormatter(json_formatter)
        metrics_handler.addFilter(lambda record: record.name == "METRICS")

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ColorFormatter(use_color=self._config["use_color"]))
        console_handler.addFilter(lambda record: record.name != "METRICS")

        self._handlers = [file_handler, error_handler, metrics_handler, console_handler]

        self._queue_handler = logging.handlers.QueueHandler(self._log_queue)
        self._queue_handler.addFilter(self._correlation_filter)

        self._listener = logging.handlers.QueueListener(
            self._log_queue, *self._handlers, respect_handler_level=True
        )
        self._listener.start()

    def get_logger(self, module_name: str) -> logging.Logger:
        with self._logger_creation_lock:
            if module_name in self._loggers:
                return self._loggers[module_name]

            logger = logging.getLogger(module_name)
            logger.setLevel(self._level())
            logger.propagate = False
            if self._queue_handler not in logger.handlers:
                logger.addHandler(self._queue_handler)

            self._loggers[module_name] = logger
            return logger

    def update_log_level(self, new_level: str) -> None:
        level = logging._nameToLevel.get(new_level.upper(), logging.INFO)
        with self._logger_creation_lock:
            self._config["level"] = logging.getLevelName(level)
            for logger in self._loggers.values():
                logger.setLevel(level)

    def set_correlation_id(self, correlation_id: Optional[str]) -> None:
        self._correlation_store.correlation_id = correlation_id

    def get_correlation_id(self) -> Optional[str]:
        return getattr(self._correlation_store, "correlation_id", None)

    def log_metric(self, name: str, value: Any, tags: Optional[Dict[str, Any]] = None) -> None:
        metrics_logger = self.get_logger("METRICS")
        metric_data = {
            "metric_name": name,
            "value": value,
            "tags": tags or {},
            "timestamp": _utc_timestamp(),
        }
        metrics_logger.info(
            json.dumps(metric_data, default=str),
            extra={"custom_fields": metric_data},
        )

    def shutdown(self) -> None:
        if self._listener:
            try:
                self._listener.stop()
            except Exception as e:
                print(f"Logger listener stop failed: {e}", file=sys.stderr)
            self._listener = None

        for handler in self._handlers:
            handler.close()
        self._handlers = []

        with self._logger_creation_lock:
            for logger in self._loggers.values():
                if self._queue_handler in logger.handlers:
                    logger.removeHandler(self._queue_handler)
            self._loggers.clear()

        with LoggerManager._instance_lock:
            LoggerManager._instance = None


_logger_manager_instance: Optional[LoggerManager] = None
_logger_manager_lock = threading.Lock()


def _manager() -> LoggerManager:
    global _logger_manager_instance
    with _logger_manager_lock:
        if _logger_manager_instance is None:
            _logger_manager_instance = LoggerManager()
        return _logger_manager_instance


def get_logger(module_name: str) -> logging.Logger:
    return _manager().get_logger(module_name)


def update_log_level(new_level: str) -> None:
    _manager().update_log_level(new_level)


def set_correlation_id(correlation_id: Optional[str]) -> None:
    _manager().set_correlation_id(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _manager().get_correlation_id()


def log_metric(name: str, value: Any, tags: Optional[Dict[str, Any]] = None) -> None:
    _manager().log_metric(name, value, tags)


def shutdown_logger() -> None:
    global _logger_manager_instance
    with _logger_manager_lock:
        if _logger_manager_instance:
            _logger_manager_instance.shutdown()
            _logger_manager_instance = None


def correlation_decorator(correlation_id: Optional[str] = None):
    """Run the wrapped call under one correlation id and log its duration."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            previous = get_correlation_id()
            cid = correlation_id or str(uuid.uuid4())[:8]
            set_correlation_id(cid)

            logger = get_logger(func.__module__)
            start_time = time.time()
            try:
                logger.debug(f"Starting {func.__name__}")
                result = func(*args, **kwargs)
                duration = (time.time() - start_time) * 1000
                logger.debug(f"Completed {func.__name__} in {duration:.2f}ms")
                return result
            except Exception as e:
                duration = (time.time() - start_time) * 1000
                logger.error(f"Failed {func.__name__} after {duration:.2f}ms: {str(e)}")
                raise
            finally:
                set_correlation_id(previous)

        return wrapper

    return decorator
