import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple


DEFAULT_API_BASE = "https://lite-api.jup.ag/tokens/v2/toptrending"
DEFAULT_WINDOWS = ("5m", "1h", "6h", "24h")


@dataclass(frozen=True)
class Settings:
    api_base: str = DEFAULT_API_BASE
    windows: Tuple[str, ...] = DEFAULT_WINDOWS
    window_limit: int = 400
    polling_interval_ms: int = 120000
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    default_page_limit: int = 50
    host: str = "0.0.0.0"
    port: int = 3000
    static_dir: str = "public"
    cycle_history_size: int = 100

    @property
    def polling_interval_seconds(self) -> float:
        return self.polling_interval_ms / 1000.0

    def validate(self) -> "Settings":
        if not self.windows:
            raise ValueError("aggregation.windows must list at least one window")
        if any(not isinstance(w, str) or not w.strip() for w in self.windows):
            raise ValueError("aggregation.windows entries must be non-empty strings")
        if self.window_limit <= 0:
            raise ValueError("aggregation.window_limit must be > 0")
        if self.polling_interval_ms <= 0:
            raise ValueError("aggregation.polling_interval_ms must be > 0")
        if self.max_attempts <= 0:
            raise ValueError("api.max_attempts must be > 0")
        if self.base_delay_seconds < 0:
            raise ValueError("api.base_delay_seconds must be >= 0")
        if self.timeout_seconds <= 0:
            raise ValueError("api.timeout_seconds must be > 0")
        if self.default_page_limit <= 0:
            raise ValueError("query.default_limit must be > 0")
        if self.cycle_history_size <= 0:
            raise ValueError("scheduler.history_size must be > 0")
        return self


class ConfigLoader:

    @staticmethod
    def _get_logger():
        from .logger import get_logger
        return get_logger("ConfigLoader")

    @staticmethod
    def _log_metric(name: str, value: Any, tags: Dict[str, Any]):
        from .logger import log_metric
        log_metric(name, value, tags)

    @staticmethod
    def load(path: str) -> Dict[str, Any]:
        logger = ConfigLoader._get_logger()
        path = Path(path)

        if not path.exists():
            msg = f"Config file not found: {path}"
            logger.error(msg)
            ConfigLoader._log_metric(
                "config_load_failure",
                0,
                {"path": str(path), "reason": "file_not_found"}
            )
            raise FileNotFoundError(msg)

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"JSON decode error in {path}: {e}")
            ConfigLoader._log_metric(
                "config_load_failure",
                0,
                {"path": str(path), "reason": "json_decode_error"}
            )
            raise

        if not isinstance(data, dict):
            msg = f"Config root must be a JSON object in {path}"
            logger.error(msg)
            raise ValueError(msg)

        logger.info(f"Loaded config file successfully: {path}")
        ConfigLoader._log_metric("config_load_success", 1, {"path": str(path)})
        return data

    @staticmethod
    def load_config(path: str, quiet: bool = False) -> Optional[Dict[str, Any]]:
        """Lenient load: ``None`` on any failure.

        ``quiet`` skips logging; the logging layer reads its own section
        through here before any logger exists.
        """
        path = Path(path)
        logger = None if quiet else ConfigLoader._get_logger()

        if not path.exists():
            if logger:
                logger.warning(f"[ConfigLoader] settings file missing: {path}")
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            if logger:
                logger.error(f"[ConfigLoader] Failed to load {path}: {e}")
            return None

        if not isinstance(config, dict):
            return None
        if logger:
            logger.info(f"[ConfigLoader] settings loaded: {path}")
        return config

    @staticmethod
    def _section(config: Mapping[str, Any], key: str) -> Mapping[str, Any]:
        section = config.get(key, {})
        if not isinstance(section, Mapping):
            raise ValueError(f"{key} section must be a JSON object, got {type(section).__name__}")
        return section

    @staticmethod
    def build_settings(config: Mapping[str, Any]) -> Settings:
        aggregation = ConfigLoader._section(config, "aggregation")
        api = ConfigLoader._section(config, "api")
        query = ConfigLoader._section(config, "query")
        server = ConfigLoader._section(config, "server")
        scheduler = ConfigLoader._section(config, "scheduler")
        defaults = Settings()

        if isinstance(aggregation.get("windows"), str):
            raise ValueError("aggregation.windows must be a list, not a string")

        return Settings(
            api_base=str(api.get("base_url", defaults.api_base)).rstrip("/"),
            windows=tuple(aggregation.get("windows", defaults.windows)),
            window_limit=int(aggregation.get("window_limit", defaults.window_limit)),
            polling_interval_ms=int(aggregation.get("polling_interval_ms", defaults.polling_interval_ms)),
            timeout_seconds=float(api.get("timeout_seconds", defaults.timeout_seconds)),
            max_attempts=int(api.get("max_attempts", defaults.max_attempts)),
            base_delay_seconds=float(api.get("base_delay_seconds", defaults.base_delay_seconds)),
            default_page_limit=int(query.get("default_limit", defaults.default_page_limit)),
            host=str(server.get("host", defaults.host)),
            port=int(server.get("port", defaults.port)),
            static_dir=str(server.get("static_dir", defaults.static_dir)),
            cycle_history_size=int(scheduler.get("history_size", defaults.cycle_history_size)),
        ).validate()

    @staticmethod
    def apply_env_overrides(settings: Settings, env: Mapping[str, str]) -> Settings:
        overrides: Dict[str, Any] = {}
        if env.get("POLLING_INTERVAL_MS"):
            overrides["polling_interval_ms"] = int(env["POLLING_INTERVAL_MS"])
        if env.get("PORT"):
            overrides["port"] = int(env["PORT"])
        if env.get("HOST"):
            overrides["host"] = env["HOST"]
        if env.get("API_BASE"):
            overrides["api_base"] = env["API_BASE"].rstrip("/")
        if not overrides:
            return settings
        return replace(settings, **overrides).validate()

    @staticmethod
    def load_settings(path: str, env: Optional[Mapping[str, str]] = None) -> Settings:
        logger = ConfigLoader._get_logger()
        env = os.environ if env is None else env
        try:
            settings = ConfigLoader.build_settings(ConfigLoader.load(path))
            settings = ConfigLoader.apply_env_overrides(settings, env)
        except (TypeError, ValueError) as e:
            logger.error(f"Invalid settings in {path}: {e}")
            ConfigLoader._log_metric("settings_invalid", 0, {"path": str(path), "error": str(e)})
            raise

        logger.info(
            f"Settings: {len(settings.windows)} windows, limit={settings.window_limit}, "
            f"interval={settings.polling_interval_ms}ms, attempts={settings.max_attempts}"
        )
        return settings
