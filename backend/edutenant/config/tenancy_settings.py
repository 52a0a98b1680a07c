"""
Tenancy settings loader.

Loads audit and alerting tuning from config/tenancy.yml. Missing keys (or a
missing file) fall back to built-in defaults.

Consumers:
  - AuditLoggingMiddleware: significant path markers, skip paths, body summary size
  - AuditAlertManager: cooldown and logging-failure thresholds
  - get_audit_logs: page size defaults and cap

Usage:
    from edutenant.config.tenancy_settings import get_tenancy_settings

    settings = get_tenancy_settings()
    settings.max_page_size  # 100
"""

import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

_DEFAULTS: Dict[str, Any] = {
    "http_audit": {
        "significant_path_markers": ["/auth/", "/admin/"],
        "skip_paths": ["/health", "/docs", "/redoc", "/openapi.json"],
        "max_body_summary_chars": 1000,
    },
    "alerts": {
        "cooldown_seconds": 300,
        "logging_failure_threshold": 5,
        "logging_failure_window_seconds": 300,
    },
    "audit_log_query": {
        "default_page_size": 50,
        "max_page_size": 100,
    },
}


class TenancySettings:
    """
    Thread-safe singleton loader for config/tenancy.yml.
    """

    _instance: Optional["TenancySettings"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("TENANCY_CONFIG_PATH")
        self._raw: Dict[str, Any] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "tenancy.yml",
            Path(os.getcwd()) / "config" / "tenancy.yml",
            Path(os.getcwd()) / ".." / "config" / "tenancy.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"tenancy.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}
                logger.info("Loaded tenancy settings from %s", path)
            except FileNotFoundError:
                logger.warning("tenancy.yml not found, using fallback defaults")
                self._raw = {}

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def _get(self, section: str, key: str) -> Any:
        value = self._raw.get(section, {}).get(key)
        if value is None:
            return _DEFAULTS[section][key]
        return value

    @property
    def significant_path_markers(self) -> List[str]:
        return list(self._get("http_audit", "significant_path_markers"))

    @property
    def audit_skip_paths(self) -> List[str]:
        return list(self._get("http_audit", "skip_paths"))

    @property
    def max_body_summary_chars(self) -> int:
        return int(self._get("http_audit", "max_body_summary_chars"))

    @property
    def alert_cooldown_seconds(self) -> int:
        override = os.getenv("AUDIT_ALERT_COOLDOWN_SECONDS")
        if override:
            return int(override)
        return int(self._get("alerts", "cooldown_seconds"))

    @property
    def logging_failure_threshold(self) -> int:
        return int(self._get("alerts", "logging_failure_threshold"))

    @property
    def logging_failure_window_seconds(self) -> int:
        return int(self._get("alerts", "logging_failure_window_seconds"))

    @property
    def default_page_size(self) -> int:
        return int(self._get("audit_log_query", "default_page_size"))

    @property
    def max_page_size(self) -> int:
        return int(self._get("audit_log_query", "max_page_size"))


def get_tenancy_settings(config_path: Optional[str] = None) -> TenancySettings:
    """Return the singleton TenancySettings."""
    return TenancySettings(config_path)


def reset_tenancy_settings() -> None:
    """Reset singleton (for tests only)."""
    TenancySettings._instance = None
