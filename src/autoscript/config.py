"""Configuration for Autoscript.

Settings come from the environment (or a ``.env`` file) via pydantic-settings.
An optional YAML file can override repair-policy values per invocation; a
missing or malformed file falls back to the environment values.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .models import ProbePolicy, QualityThresholds, RepairPolicy

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Browser endpoint; required for repair and probe
    cdp_url: Optional[str] = None
    output_dir: str = "./generated"

    model: str = "claude-opus-4-5-20251101"
    max_turns: int = 25
    fixer: Literal["claude-cli", "anthropic"] = "claude-cli"
    anthropic_api_key: Optional[str] = None

    max_fix_iterations: int = 5
    max_syntax_retries: int = 2
    # Script execution timeout (ms)
    fix_timeout: int = 300_000
    # Fix request timeout (ms)
    fix_request_timeout: int = 300_000

    validation_min_price_rate: float = 0.9
    validation_min_rating_rate: float = 0.8
    validation_min_item_count: int = 1
    validation_require_prices: bool = True
    validation_require_ratings: bool = True

    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings()


def require_endpoint(settings: Settings) -> str:
    """Return the configured endpoint or raise ConfigurationError."""
    if not settings.cdp_url:
        raise ConfigurationError("CDP_URL environment variable is required")
    return settings.cdp_url


def load_policy_overrides(path: Optional[Union[str, Path]]) -> Dict[str, Any]:
    """Load the ``repair_policy`` section of a YAML file.

    Falls back to an empty mapping if:
    - No path is given or the file doesn't exist
    - The file is malformed
    - The section is missing or not a mapping

    Returns:
        Override values keyed by RepairPolicy field name
    """
    if path is None:
        return {}

    config_path = Path(path)
    if not config_path.exists():
        logger.warning(f"Policy file {config_path} not found, using environment settings")
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Error loading {config_path}: {e}, using environment settings")
        return {}

    if not isinstance(data, dict) or not isinstance(data.get("repair_policy"), dict):
        logger.warning(f"No 'repair_policy' section in {config_path}, using environment settings")
        return {}

    return dict(data["repair_policy"])


def build_repair_policy(
    settings: Settings,
    overrides: Optional[Dict[str, Any]] = None,
    endpoint: Optional[str] = None,
) -> RepairPolicy:
    """
    Build the session policy from settings and YAML overrides.

    Args:
        settings: Environment settings
        overrides: ``repair_policy`` mapping (nested ``quality_thresholds``/``probe`` allowed)
        endpoint: Explicit endpoint, taking precedence over CDP_URL

    Returns:
        Validated RepairPolicy

    Raises:
        ConfigurationError: If no endpoint is configured or a value is invalid
    """
    overrides = dict(overrides or {})

    thresholds = {
        "min_price_rate": settings.validation_min_price_rate,
        "min_rating_rate": settings.validation_min_rating_rate,
        "min_item_count": settings.validation_min_item_count,
        "require_prices": settings.validation_require_prices,
        "require_ratings": settings.validation_require_ratings,
    }
    threshold_overrides = overrides.pop("quality_thresholds", None) or {}
    probe_values = overrides.pop("probe", None) or {}

    values: Dict[str, Any] = {
        "endpoint": endpoint or overrides.pop("endpoint", None) or require_endpoint(settings),
        "max_iterations": settings.max_fix_iterations,
        "max_syntax_retries": settings.max_syntax_retries,
        "execution_timeout_ms": settings.fix_timeout,
        "fix_request_timeout_ms": settings.fix_request_timeout,
    }
    overrides.pop("endpoint", None)
    values.update(overrides)

    try:
        thresholds.update(threshold_overrides)
        return RepairPolicy(
            **values,
            quality_thresholds=QualityThresholds(**thresholds),
            probe=ProbePolicy(**probe_values),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid repair policy: {e}") from e
