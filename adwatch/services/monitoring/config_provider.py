"""Config providers: which clients to monitor and with what settings."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from pydantic import ValidationError

from .exceptions import ConfigProviderError
from .models import AlertChannel, ClientMonitoringConfig

logger = logging.getLogger(__name__)

# Settings block names per channel, snake_case first.
CHANNEL_SETTINGS_KEYS = {
    AlertChannel.GOOGLE_ADS: ("google_ads", "googleAds"),
    AlertChannel.META: ("meta", "metaAds"),
}

ACCOUNT_ID_KEYS = {
    AlertChannel.GOOGLE_ADS: ("customer_id", "customerId"),
    AlertChannel.META: ("ad_account_id", "adAccountId"),
}


class ConfigProvider(ABC):

    @abstractmethod
    async def list_enabled_clients(self) -> List[ClientMonitoringConfig]:
        """Every client with monitoring switched on.

        Raises:
            ConfigProviderError: if the source itself cannot be read.
        """


def _first(block: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if block.get(key) is not None:
            return block[key]
    return None


def parse_client_settings(
    client_id: str,
    client_name: str,
    settings: Optional[Dict[str, Any]],
) -> Optional[ClientMonitoringConfig]:
    """Build a monitoring config from a client's settings JSON.

    Returns None when no channel has monitoring enabled. A channel that is
    enabled but lacks an account id is left out of `accounts`, so the
    config fails validation and the client is reported as misconfigured.
    """
    settings = settings or {}
    monitoring = settings.get("monitoring") or {}
    accounts: Dict[AlertChannel, str] = {}
    thresholds: Dict[str, Any] = dict(monitoring.get("thresholds") or {})
    credentials_ref = monitoring.get("credentials_ref")
    any_enabled = False

    for channel, keys in CHANNEL_SETTINGS_KEYS.items():
        block = _first(settings, keys) or {}
        enabled = block.get("monitoring_enabled", block.get("monitoringEnabled", block.get("enabled", False)))
        if not enabled:
            continue
        any_enabled = True

        account_id = _first(block, ACCOUNT_ID_KEYS[channel])
        if account_id:
            accounts[channel] = str(account_id)
        credentials_ref = credentials_ref or _first(block, ("credentials_ref", "credentialsRef"))
        thresholds.update(block.get("thresholds") or {})

    if not any_enabled:
        return None

    return ClientMonitoringConfig(
        client_id=client_id,
        client_name=client_name,
        enabled=True,
        accounts=accounts,
        credentials_ref=credentials_ref,
        thresholds=thresholds,
        timezone=monitoring.get("timezone"),
    )


class SupabaseConfigProvider(ConfigProvider):
    """Reads active rows of the `clients` table and their settings JSON."""

    TABLE = "clients"

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    async def list_enabled_clients(self) -> List[ClientMonitoringConfig]:
        try:
            result = await asyncio.to_thread(
                lambda: self.supabase.table(self.TABLE).select(
                    "id, name, settings"
                ).eq("is_active", True).order("name").execute()
            )
        except Exception as e:
            raise ConfigProviderError(f"Failed to load clients: {e}") from e

        configs = []
        for row in result.data or []:
            config = parse_client_settings(str(row["id"]), row.get("name") or str(row["id"]), row.get("settings"))
            if config is not None:
                configs.append(config)

        logger.info(f"Loaded {len(configs)} clients with monitoring enabled")
        return configs


class StaticConfigProvider(ConfigProvider):
    """A fixed list of client configs (local runs, tests)."""

    def __init__(self, clients: Sequence[ClientMonitoringConfig]):
        self.clients = list(clients)

    @classmethod
    def from_yaml(cls, path: str) -> "StaticConfigProvider":
        """Load clients from a YAML file with a top-level `clients` list.

        Each entry has `client_id`, `client_name` and optionally `enabled`,
        `accounts` (channel -> account ref), `credentials_ref`, `thresholds`
        and `timezone`.
        """
        config_path = Path(path)
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigProviderError(f"Failed to read clients file {config_path}: {e}") from e

        try:
            return cls([ClientMonitoringConfig.model_validate(entry) for entry in data.get("clients", [])])
        except ValidationError as e:
            raise ConfigProviderError(f"Invalid client entry in {config_path}: {e}") from e

    async def list_enabled_clients(self) -> List[ClientMonitoringConfig]:
        return [client for client in self.clients if client.enabled]
