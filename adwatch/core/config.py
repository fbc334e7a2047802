"""
Configuration management for AdWatch
"""

import logging
import os
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Optional

import pytz
import yaml
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Supabase
    SUPABASE_URL: str = os.getenv('SUPABASE_URL', '')
    SUPABASE_SERVICE_KEY: str = os.getenv('SUPABASE_SERVICE_KEY', '')

    # API
    ADWATCH_API_KEY: str = os.getenv('ADWATCH_API_KEY', '')
    CRON_SECRET: str = os.getenv('CRON_SECRET', '')

    # Monitoring run defaults
    MONITORING_TIMEZONE: str = os.getenv('MONITORING_TIMEZONE', 'UTC')
    MONITORING_MAX_CONCURRENCY: int = int(os.getenv('MONITORING_MAX_CONCURRENCY', '4'))
    MONITORING_CLIENT_TIMEOUT: float = float(os.getenv('MONITORING_CLIENT_TIMEOUT', '300'))
    MONITORING_CONFIG_PATH: str = os.getenv('MONITORING_CONFIG_PATH', 'config/monitoring.yml')

    @classmethod
    def validate(cls) -> bool:
        """Validate required configuration"""
        required = {
            'SUPABASE_URL': cls.SUPABASE_URL,
            'SUPABASE_SERVICE_KEY': cls.SUPABASE_SERVICE_KEY,
        }

        missing = [k for k, v in required.items() if not v]

        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

        return True

    @classmethod
    def get(cls, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get configuration value"""
        return getattr(cls, key, default)


# ============================================================================
# Monitoring defaults file
# ============================================================================

DEFAULT_MONITORING_SETTINGS: Dict[str, Any] = {
    'fatigue': {
        'current_window_days': 7,
        'baseline_window_days': 14,
        'min_baseline_days': 7,
        'min_current_spend': 10.0,
        'frequency_moderate': 20.0,
        'frequency_large': 50.0,
        'ctr_moderate': 15.0,
        'ctr_large': 30.0,
        'cpc_moderate': 15.0,
        'cpc_large': 30.0,
    },
    'alerts': {
        'summary_preview_size': 3,
    },
    'checks': {
        'enabled': None,
    },
}


def load_monitoring_defaults(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load monitoring defaults from a YAML file, merged over built-in defaults.

    Args:
        path: Path to the YAML file. Defaults to Config.MONITORING_CONFIG_PATH.

    Returns:
        Settings dict with 'fatigue', 'alerts' and 'checks' sections.
    """
    settings = {section: dict(values) for section, values in DEFAULT_MONITORING_SETTINGS.items()}

    config_path = Path(path or Config.MONITORING_CONFIG_PATH)
    if not config_path.exists():
        logger.debug(f"No monitoring config at {config_path}, using built-in defaults")
        return settings

    with open(config_path, 'r') as f:
        loaded = yaml.safe_load(f) or {}

    for section, values in loaded.items():
        if isinstance(values, dict):
            settings.setdefault(section, {}).update(values)
        else:
            settings[section] = values

    return settings


def today_in_timezone(tz_name: Optional[str] = None, now: Optional[datetime] = None) -> date:
    """
    Current calendar day in the given timezone.

    Args:
        tz_name: IANA timezone name. Falls back to Config.MONITORING_TIMEZONE.
        now: Aware datetime to convert instead of the wall clock.

    Returns:
        The local date.
    """
    tz = pytz.timezone(tz_name or Config.MONITORING_TIMEZONE)
    if now is None:
        return datetime.now(tz).date()
    if now.tzinfo is None:
        now = pytz.utc.localize(now)
    return now.astimezone(tz).date()
