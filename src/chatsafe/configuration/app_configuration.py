from __future__ import annotations
from pathlib import Path
import fcntl
from typing import Any, Dict
import yaml

from chatsafe.util.logger import get_logger

logger = get_logger("app_configuration")


CONFIG_PATH = Path("./config/app_config.yml").resolve()

DEFAULT_WARNING_TEMPLATE = (
    "🚨 ChatSafe Warning: Your message was flagged as potentially harmful/unsafe. Reason: {reason}"
)


class AppConfig:
    """File-lock based accessor around the YAML-based application configuration.

    The class caches contents of ``./config/app_config.yml`` and exposes
    typed properties with defaults for every tuning knob the agent reads.
    Secrets never live here; see :mod:`chatsafe.configuration.environment`.
    """

    def __init__(self, config_path: Path) -> None:
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
                if not isinstance(data, dict):
                    logger.warning("[APP CONFIGURATION] %s does not contain a mapping; using defaults", self.config_path)
                    return {}
                return data
        except FileNotFoundError:
            logger.error("[APP CONFIGURATION] Config file %s not found.", self.config_path)
        except Exception as exc:
            logger.error("[APP CONFIGURATION] Failed to load config %s: %s", self.config_path, exc)
        return {}

    def _section(self, name: str) -> Dict[str, Any]:
        section = self._data.get(name, {})
        return section if isinstance(section, dict) else {}

    def _float(self, section: str, key: str, default: float) -> float:
        value = self._section(section).get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning("[APP CONFIGURATION] Invalid %s.%s=%r; using %s", section, key, value, default)
            return default

    def _positive_float(self, section: str, key: str, default: float) -> float:
        value = self._float(section, key, default)
        if value <= 0:
            logger.warning("[APP CONFIGURATION] %s.%s must be positive, got %s; using %s", section, key, value, default)
            return default
        return value

    def _int(self, section: str, key: str, default: int) -> int:
        value = self._section(section).get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning("[APP CONFIGURATION] Invalid %s.%s=%r; using %s", section, key, value, default)
            return default

    # --------------------------
    # Public API
    # --------------------------
    def reload(self) -> Dict[str, Any]:
        """Reload configuration from disk and return the loaded mapping.

        Returns the raw mapping that was loaded (an empty dict on error).
        """
        self._data = self.load_from_disk()
        return self._data

    @property
    def data(self) -> Dict[str, Any]:
        """Return the current cached configuration mapping."""
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Safe lookup for top-level configuration keys."""
        return self._data.get(key, default)

    # --------------------------
    # Classifier
    # --------------------------
    @property
    def classifier_model(self) -> str:
        return str(self._section("classifier").get("model") or "omni-moderation-latest")

    @property
    def classifier_timeout(self) -> float:
        return self._positive_float("classifier", "timeout_seconds", 10.0)

    # --------------------------
    # Reply
    # --------------------------
    @property
    def reply_timeout(self) -> float:
        return self._positive_float("reply", "timeout_seconds", 10.0)

    @property
    def warning_template(self) -> str:
        """Return the warning reply template.

        The ``{reason}`` placeholder is replaced verbatim. A template
        without a ``{reason}`` placeholder falls back to the default so the
        sender always learns why the message was flagged.
        """
        value = str(self._section("reply").get("warning_template") or "")
        if "{reason}" not in value:
            return DEFAULT_WARNING_TEMPLATE
        return value

    # --------------------------
    # Ledger
    # --------------------------
    @property
    def ledger_confirmation_timeout(self) -> float:
        """Seconds the ledger client waits for a transaction receipt."""
        return self._positive_float("ledger", "confirmation_timeout_seconds", 120.0)

    @property
    def ledger_wait_timeout(self) -> float:
        """Seconds the pipeline waits on a ledger append before reporting failure."""
        return self._positive_float("ledger", "wait_timeout_seconds", 150.0)

    # --------------------------
    # Pipeline
    # --------------------------
    @property
    def max_in_flight(self) -> int:
        return max(1, self._int("pipeline", "max_in_flight", 16))

    @property
    def serialize_per_conversation(self) -> bool:
        return bool(self._section("pipeline").get("serialize_per_conversation", False))

    # --------------------------
    # Stream
    # --------------------------
    @property
    def stream_reconnect_attempts(self) -> int:
        return max(0, self._int("stream", "reconnect_attempts", 5))

    @property
    def stream_reconnect_base_delay(self) -> float:
        return self._float("stream", "reconnect_base_delay_seconds", 1.0)

    @property
    def stream_reconnect_max_delay(self) -> float:
        return self._float("stream", "reconnect_max_delay_seconds", 30.0)

    # --------------------------
    # Storage / console
    # --------------------------
    @property
    def database_path(self) -> Path:
        return Path(str(self._section("database").get("path") or "./data/chatsafe.db")).resolve()

    @property
    def console_enabled(self) -> bool:
        return bool(self._section("console").get("enabled", True))


# Shared application-wide configuration instance
app_config = AppConfig(CONFIG_PATH)
