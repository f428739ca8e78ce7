from __future__ import annotations
from pathlib import Path
import fcntl
from typing import Any, Dict
import yaml

from groupguard.util.logger import get_logger

logger = get_logger("app_configuration")


CONFIG_PATH = Path("./config/app_config.yml").resolve()


class AppConfig:
    """File-lock based accessor around the YAML application configuration.

    The class caches the contents of ``./config/app_config.yml``, exposes
    dictionary-like access helpers and typed shortcuts with defaults for every
    interval, delay and cache size used by the enforcement loops.
    """

    def __init__(self, config_path: Path = CONFIG_PATH) -> None:
        self.config_path = config_path
        self._data: Dict[str, Any] = {}
        self.reload()

    # --------------------------
    # Private helpers
    # --------------------------
    def load_from_disk(self) -> Dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                data = yaml.safe_load(f)
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
                return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            logger.error("[APP CONFIGURATION] Config file %s not found.", self.config_path)
        except Exception as exc:
            logger.error("[APP CONFIGURATION] Failed to load config %s: %s", self.config_path, exc)
        return {}

    def _section(self, name: str) -> Dict[str, Any]:
        section = self._data.get(name, {})
        return section if isinstance(section, dict) else {}

    def _number(self, section: str, key: str, default: float) -> float:
        value = self._section(section).get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning("[APP CONFIGURATION] Invalid value for %s.%s: %r, using %s", section, key, value, default)
            return float(default)

    def _path(self, key: str, default: str) -> Path:
        value = self._section("storage").get(key) or default
        return Path(str(value)).expanduser().resolve()

    # --------------------------
    # Public API
    # --------------------------
    def reload(self) -> Dict[str, Any]:
        """Re-read the YAML file and replace the in-memory cache.

        Returns the raw mapping that was loaded (an empty dict on error).
        """
        self._data = self.load_from_disk()
        return self._data

    @property
    def data(self) -> Dict[str, Any]:
        """The cached configuration mapping. Callers should not mutate it."""
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Safe lookup for top-level configuration keys."""
        return self._data.get(key, default)

    # --------------------------
    # Storage
    # --------------------------
    @property
    def config_store_path(self) -> Path:
        return self._path("config_path", "./data/automod-config.json")

    @property
    def watchlist_path(self) -> Path:
        return self._path("watchlist_path", "./data/watchlist-data.json")

    @property
    def database_path(self) -> Path:
        return self._path("database_path", "./data/automod.db")

    # --------------------------
    # Gatekeeper
    # --------------------------
    @property
    def gatekeeper_interval(self) -> float:
        """Seconds between pending join request passes. Default is 60."""
        return self._number("gatekeeper", "interval_seconds", 60.0)

    @property
    def gatekeeper_request_delay(self) -> float:
        """Pause between processed join requests. Default is 0.5 seconds."""
        return self._number("gatekeeper", "request_delay_seconds", 0.5)

    @property
    def processed_cache_max_size(self) -> int:
        return int(self._number("gatekeeper", "processed_cache_max_size", 1000))

    # --------------------------
    # Instance Guard
    # --------------------------
    @property
    def instance_guard_interval(self) -> float:
        return self._number("instance_guard", "interval_seconds", 60.0)

    @property
    def instance_guard_action_delay(self) -> float:
        """Pause after each close request. Default is 1 second."""
        return self._number("instance_guard", "action_delay_seconds", 1.0)

    @property
    def closed_cache_ttl(self) -> float:
        """How long a closed instance stays in the closed-cache. Default is 30 minutes."""
        return self._number("instance_guard", "closed_cache_ttl_seconds", 1800.0)

    @property
    def instance_history_size(self) -> int:
        return int(self._number("instance_guard", "history_size", 200))

    # --------------------------
    # Permission Guard
    # --------------------------
    @property
    def permission_guard_interval(self) -> float:
        return self._number("permission_guard", "interval_seconds", 60.0)

    @property
    def audit_log_window(self) -> int:
        """Number of recent audit log entries fetched per pass. Default is 10."""
        return int(self._number("permission_guard", "audit_log_window", 10))

    @property
    def role_cache_ttl(self) -> float:
        return self._number("permission_guard", "role_cache_ttl_seconds", 300.0)

    # --------------------------
    # Member scan
    # --------------------------
    @property
    def member_scan_delay(self) -> float:
        """Pause between member evaluations during a bulk scan. Default is 0.25 seconds."""
        return self._number("member_scan", "request_delay_seconds", 0.25)

    # --------------------------
    # Rule cache / network
    # --------------------------
    @property
    def rule_cache_ttl(self) -> float:
        return self._number("rule_cache", "ttl_seconds", 300.0)

    @property
    def rule_cache_max_entries(self) -> int:
        return int(self._number("rule_cache", "max_entries", 100))

    @property
    def network_max_retries(self) -> int:
        return int(self._number("network", "max_retries", 3))

    @property
    def network_base_delay(self) -> float:
        return self._number("network", "base_delay_seconds", 1.0)

    # --------------------------
    # Integrations
    # --------------------------
    @property
    def webhooks(self) -> Dict[str, str]:
        """Group id to Discord webhook URL."""
        value = self._data.get("webhooks") or {}
        if not isinstance(value, dict):
            return {}
        return {str(group_id): str(url) for group_id, url in value.items() if url}

    @property
    def api_client_factory(self) -> str:
        """``"module:callable"`` path of the raw VRChat client factory."""
        return str(self._data.get("api_client_factory") or "")
