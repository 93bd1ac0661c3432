"""
Configuration management for the media plan budget subsystem.
Handles alert thresholds, rebuild retry policy, and environment configuration.
"""

import logging
import os
import streamlit as st
from dotenv import load_dotenv
from typing import Optional
from dataclasses import dataclass

from business_logic.alert_engine import AlertThresholds
from business_logic.error_handler import RetryConfig

# Load environment variables from .env file
load_dotenv()


@dataclass
class AppConfig:
    """Application configuration settings."""
    default_currency: str = "USD"
    alert_epsilon: float = 0.01
    concentration_threshold_pct: float = 50.0
    underutilization_threshold_pct: float = 80.0
    rebuild_max_attempts: int = 2
    rebuild_base_delay: float = 1.0
    log_level: str = "INFO"


class ConfigManager:
    """Manages application configuration and settings."""

    def __init__(self):
        self._config: Optional[AppConfig] = None

    def load_config(self) -> AppConfig:
        """Load configuration from Streamlit secrets and environment."""
        if self._config is not None:
            return self._config

        self._config = AppConfig(
            default_currency=self._get_setting("DEFAULT_CURRENCY", "USD"),
            alert_epsilon=self._get_float_setting("ALERT_EPSILON", 0.01),
            concentration_threshold_pct=self._get_float_setting("CONCENTRATION_THRESHOLD_PCT", 50.0),
            underutilization_threshold_pct=self._get_float_setting("UNDERUTILIZATION_THRESHOLD_PCT", 80.0),
            rebuild_max_attempts=self._get_int_setting("REBUILD_MAX_ATTEMPTS", 2),
            rebuild_base_delay=self._get_float_setting("REBUILD_BASE_DELAY", 1.0),
            log_level=self._get_setting("LOG_LEVEL", "INFO").upper()
        )

        logging.getLogger().setLevel(getattr(logging, self._config.log_level, logging.INFO))
        return self._config

    def reset(self):
        """Drop the cached configuration so the next load re-reads settings."""
        self._config = None

    def _get_secret_or_env(self, key: str) -> Optional[str]:
        """Get value from Streamlit secrets or environment variables."""
        # Try Streamlit secrets first
        try:
            if hasattr(st, 'secrets') and key in st.secrets:
                return str(st.secrets[key])
        except Exception:
            # No secrets.toml available outside a Streamlit deployment
            pass

        # Fall back to environment variables
        return os.getenv(key)

    def _get_setting(self, key: str, default: str) -> str:
        """Get string setting with default value."""
        value = self._get_secret_or_env(key)
        return value if value is not None else default

    def _get_int_setting(self, key: str, default: int) -> int:
        """Get integer setting with default value."""
        value = self._get_secret_or_env(key)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return default

    def _get_float_setting(self, key: str, default: float) -> float:
        """Get float setting with default value."""
        value = self._get_secret_or_env(key)
        if value is not None:
            try:
                return float(value)
            except ValueError:
                pass
        return default

    def get_currency(self) -> str:
        return self.load_config().default_currency

    def get_alert_thresholds(self) -> AlertThresholds:
        """Alert engine limits from configuration."""
        config = self.load_config()
        return AlertThresholds(
            epsilon=config.alert_epsilon,
            concentration_pct=config.concentration_threshold_pct,
            underutilization_pct=config.underutilization_threshold_pct
        )

    def get_rebuild_retry_config(self) -> RetryConfig:
        """Retry policy for full distribution rebuilds."""
        config = self.load_config()
        return RetryConfig(
            max_attempts=max(1, config.rebuild_max_attempts),
            base_delay=config.rebuild_base_delay
        )


# Global configuration manager instance
config_manager = ConfigManager()
