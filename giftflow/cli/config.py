"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./giftflow.yaml (working directory)
3. ~/.giftflow/config.yaml (user home)

Environment variables override YAML: GIFTFLOW_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
When no file exists, defaults plus environment overrides are used.
"""

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

ENV_PREFIX = "GIFTFLOW_"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class SchedulerConfig(BaseModel):
    """Batch scheduler timing."""

    lead_days: int = 4
    inter_order_delay_seconds: float = 2.0
    interval_minutes: int = 60
    system_error_retry_seconds: int = 900
    enabled: bool = True


class ProviderConfig(BaseModel):
    """Fulfillment provider connection settings."""

    base_url: str = "https://api.zinc.io/v1"
    api_key: str = ""
    retailer: str = "amazon"
    webhook_base_url: str | None = None
    timeout_seconds: float = 30.0


class SecurityConfig(BaseModel):
    """Per-user rate and spend limits enforced before submission."""

    daily_order_limit: int = 10
    daily_spend_limit_cents: int = 50_000
    monthly_spend_limit_cents: int = 200_000
    near_limit_ratio: float = 0.8
    suspicious_hashes_per_hour: int = 20
    retry_abuse_max_retries: int = 5
    max_consecutive_failures: int = 5


class PaymentsConfig(BaseModel):
    """Payment capture settings."""

    stripe_api_key: str = ""


class NotificationsConfig(BaseModel):
    """Outbox recipients that are not customers."""

    admin_email: str = ""
    admin_name: str = "Giftflow Operations"


class ServerConfig(BaseModel):
    """HTTP server settings for ``giftflow serve``."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"


class GiftflowConfig(BaseModel):
    """Top-level configuration for the giftflow fulfillment pipeline."""

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    payments: PaymentsConfig = Field(default_factory=PaymentsConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "giftflow.yaml",
        Path.cwd() / "giftflow.yml",
        Path.home() / ".giftflow" / "config.yaml",
        Path.home() / ".giftflow" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply GIFTFLOW_<SECTION>_<KEY> env var overrides to config data.

    For example, ``GIFTFLOW_SCHEDULER_LEAD_DAYS=3`` sets
    ``scheduler.lead_days``.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    known_sections = sorted(GiftflowConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        section_data = data.setdefault(matched_section, {})
        if isinstance(section_data, dict):
            # Raw strings; pydantic coerces "3" -> int and "true" -> bool
            section_data[matched_field] = value
    return data


def load_config(config_path: str | None = None) -> GiftflowConfig:
    """Load giftflow configuration from YAML with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.giftflow/).

    Returns:
        Parsed and validated GiftflowConfig.

    Raises:
        FileNotFoundError: If config_path is given but does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return GiftflowConfig(**data)


@lru_cache(maxsize=1)
def get_config() -> GiftflowConfig:
    """Process-wide configuration, loaded once.

    Honours GIFTFLOW_CONFIG_PATH so the API server loads the same file as
    the CLI that started it.
    """
    return load_config(config_path=os.environ.get("GIFTFLOW_CONFIG_PATH"))
