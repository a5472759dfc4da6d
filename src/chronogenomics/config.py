"""
Configuration management for ChronoGenomics.

Handles the configuration file, directory setup, environment overrides and the
append-only audit log.
"""

import datetime
import json
from pathlib import Path
from typing import Any, Dict, Optional

from decouple import config as env_config

from chronogenomics.log import get_logger

logger = get_logger(__name__)

# Environment variables win over config.json, which wins over the defaults.
ENV_OVERRIDES = {
    "storage_backend": ("CHRONOGENOMICS_STORAGE_BACKEND", str),
    "storage_dir": ("CHRONOGENOMICS_STORAGE_DIR", str),
    "storage_url": ("CHRONOGENOMICS_STORAGE_URL", str),
    "storage_timeout": ("CHRONOGENOMICS_STORAGE_TIMEOUT", int),
    "analysis_latency_seconds": ("CHRONOGENOMICS_ANALYSIS_LATENCY", float),
    "max_parallel_analyses": ("CHRONOGENOMICS_MAX_PARALLEL_ANALYSES", int),
    "classifier": ("CHRONOGENOMICS_CLASSIFIER", str),
    "log_level": ("CHRONOGENOMICS_LOG_LEVEL", str),
}


class ConfigManager:
    """Manages configuration and local directory setup."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base_config_dir = base_dir or Path.home() / ".chronogenomics"
        self.config_file = self.base_config_dir / "config.json"
        self.audit_log = self.base_config_dir / "audit.log"
        self.default_storage_dir = self.base_config_dir / "store"

        self._ensure_directories()

        self.default_config = {
            "storage_backend": "file",  # memory, file, http
            "storage_dir": str(self.default_storage_dir),
            "storage_url": "http://127.0.0.1:8000",
            "storage_timeout": 30,
            "analysis_latency_seconds": 4.0,
            "max_parallel_analyses": 4,
            "classifier": "random",  # random, marker_hash
            "success_notice_seconds": 2.0,
            "error_notice_seconds": 3.0,
            "log_level": "INFO",
        }

    def _ensure_directories(self) -> None:
        """Create the base directory if it doesn't exist."""
        self.base_config_dir.mkdir(parents=True, exist_ok=True)

    def get_config(self) -> Dict[str, Any]:
        """Get current configuration, merged over defaults and env overrides."""
        merged_config = self.default_config.copy()

        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    merged_config.update(json.load(f))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Could not read config file %s: %s", self.config_file, e)

        for key, (variable, cast) in ENV_OVERRIDES.items():
            value = env_config(variable, default=None)
            if value is not None:
                merged_config[key] = cast(value)

        return merged_config

    def save_config(self, config: Dict[str, Any]) -> None:
        """Save configuration to file."""
        try:
            with open(self.config_file, 'w') as f:
                json.dump(config, f, indent=2)
        except OSError as e:
            raise OSError(f"Could not save config: {e}") from e

    def get_storage_dir(self) -> Path:
        """Directory used by the file backend."""
        return Path(self.get_config()["storage_dir"])

    def log_audit_event(self, event_type: str, details: Dict[str, Any]) -> None:
        """Log an audit event."""
        audit_entry = {
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "event_type": event_type,
            "details": details,
        }

        try:
            with open(self.audit_log, 'a') as f:
                f.write(json.dumps(audit_entry) + '\n')
        except OSError as e:
            # Audit logging is best-effort
            logger.debug("Could not write audit event %s: %s", event_type, e)

    def read_audit_events(self) -> list[Dict[str, Any]]:
        """Read back the audit log, skipping unreadable lines."""
        if not self.audit_log.exists():
            return []

        events = []
        with open(self.audit_log, 'r') as f:
            for line in f:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return events
