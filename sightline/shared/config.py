"""Configuration loading and validation for sightline.

Validates a JSON config file against the canonical schema, applies
environment variable overlays, and produces a typed ``VisionConfig``.

Usage:
    from sightline.shared.config import load_config, ConfigValidationError
    cfg = load_config("sightline.json")

Config file shape:
    {"vision": {"provider": "anthropic", "model_name": "claude-sonnet-4-6", ...}}

Environment variable overlays:
    SIGHTLINE_VISION__PROVIDER=ollama
    SIGHTLINE_VISION__MAX_COST_PER_HOUR=0.5
"""

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import jsonschema
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("sightline.config")

ENV_PREFIX = "SIGHTLINE_"


class ConfigValidationError(Exception):
    """Raised when config fails schema or type validation."""
    pass


class ProviderName(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"


DEFAULT_BASE_URLS = {
    ProviderName.OPENAI: "https://api.openai.com/v1",
    ProviderName.ANTHROPIC: "https://api.anthropic.com/v1",
    ProviderName.OLLAMA: "http://localhost:11434/api",
}

# Provider-specific credential variables consulted when none is configured
CREDENTIAL_ENV_VARS = {
    ProviderName.OPENAI: "OPENAI_API_KEY",
    ProviderName.ANTHROPIC: "ANTHROPIC_API_KEY",
}


class VisionConfig(BaseModel):
    """All recognized options of the perception pipeline."""

    # General
    enabled: bool = True

    # Provider
    provider: ProviderName = ProviderName.OPENAI
    credential: str = ""
    model_name: str = "gpt-4o"
    custom_base_url: str = ""

    # Capture
    capture_width: int = Field(default=256, ge=64, le=1024)
    capture_height: int = Field(default=256, ge=64, le=1024)
    encoding_quality: int = Field(default=75, ge=50, le=100)

    # Requests
    request_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=2, ge=0, le=5)  # collaborator adapters only

    # Cache
    cache_enabled: bool = True
    cache_ttl: float = Field(default=60.0, ge=0)
    cache_invalidation_distance: float = Field(default=2.0, ge=0)
    cache_invalidation_angle: float = Field(default=30.0, ge=0, le=180)
    max_cache_entries: int = Field(default=50, ge=1)

    # Quality
    min_detection_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    min_verification_confidence: float = Field(default=0.7, ge=0.0, le=1.0)

    # Cost
    max_cost_per_hour: float = Field(default=1.0, ge=0)
    pause_on_budget_exceeded: bool = True

    # Debug
    log_responses: bool = False

    # Collaborator endpoints used by the HTTP adapters
    capture_service_url: str = "http://127.0.0.1:7060"
    world_model_url: str = "http://127.0.0.1:7080"

    def base_url(self) -> str:
        """Custom base URL wins over the provider default."""
        if self.custom_base_url:
            return self.custom_base_url.rstrip("/")
        return DEFAULT_BASE_URLS[self.provider]

    def requires_credential(self) -> bool:
        return self.provider != ProviderName.OLLAMA

    def has_credential(self) -> bool:
        return bool(self.credential)

    def validate_ready(self) -> bool:
        """True when the config could issue requests (ignores budget)."""
        if not self.enabled:
            return True
        if not self.requires_credential():
            return True
        return self.has_credential()


# ---------------------------------------------------------------------------
# JSON schema for the on-disk file
# ---------------------------------------------------------------------------

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "vision": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "provider": {"enum": [p.value for p in ProviderName]},
                "credential": {"type": "string"},
                "model_name": {"type": "string", "minLength": 1},
                "custom_base_url": {"type": "string"},
                "capture_width": {"type": "integer"},
                "capture_height": {"type": "integer"},
                "encoding_quality": {"type": "integer"},
                "request_timeout": {"type": "number", "exclusiveMinimum": 0},
                "max_retries": {"type": "integer", "minimum": 0},
                "cache_enabled": {"type": "boolean"},
                "cache_ttl": {"type": "number", "minimum": 0},
                "cache_invalidation_distance": {"type": "number", "minimum": 0},
                "cache_invalidation_angle": {"type": "number", "minimum": 0},
                "max_cache_entries": {"type": "integer", "minimum": 1},
                "min_detection_confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "min_verification_confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "max_cost_per_hour": {"type": "number", "minimum": 0},
                "pause_on_budget_exceeded": {"type": "boolean"},
                "log_responses": {"type": "boolean"},
                "capture_service_url": {"type": "string"},
                "world_model_url": {"type": "string"},
            },
            "additionalProperties": False,
        },
    },
}


def _coerce(existing: Any, raw: str) -> Any:
    if isinstance(existing, bool):
        return raw.lower() in ("1", "true", "yes")
    if isinstance(existing, int):
        return int(raw)
    if isinstance(existing, float):
        return float(raw)
    return raw


def apply_env_overlays(config: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    """Apply SIGHTLINE_{SECTION}__{KEY} environment variables as overrides.

    Section and key are case-insensitive. Type coercion follows the existing
    value, falling back to the field default when the key is absent.
    """
    defaults = VisionConfig().model_dump(mode="json")
    for env_key, env_val in env.items():
        if not env_key.startswith(ENV_PREFIX):
            continue
        rest = env_key[len(ENV_PREFIX):]
        if "__" not in rest:
            continue
        section, key = (part.lower() for part in rest.split("__", 1))
        if section != "vision":
            logger.debug("Env overlay %s: unknown section '%s', skipping", env_key, section)
            continue
        if key not in defaults:
            logger.debug("Env overlay %s: unknown key '%s', skipping", env_key, key)
            continue

        target = config.setdefault(section, {})
        existing = target.get(key, defaults[key])
        try:
            target[key] = _coerce(existing, env_val)
            logger.info("Env overlay applied: %s.%s", section, key)
        except (ValueError, TypeError) as e:
            logger.warning("Env overlay %s: type coercion failed: %s", env_key, e)

    return config


def load_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> VisionConfig:
    """Load, validate and overlay the sightline configuration.

    Without a path, defaults plus environment overlays are used.
    """
    env = os.environ if env is None else env
    raw: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigValidationError(f"Config file not found: {config_path}")
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(f"Config file is not valid JSON: {e}") from e

    try:
        jsonschema.validate(instance=raw, schema=CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        where = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
        raise ConfigValidationError(
            f"Config validation failed at '{where}': {e.message}"
        ) from e

    merged = apply_env_overlays(json.loads(json.dumps(raw)), env)
    section = merged.get("vision", {})

    try:
        cfg = VisionConfig(**section)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid vision config: {e}") from e

    if not cfg.credential and cfg.provider in CREDENTIAL_ENV_VARS:
        cfg.credential = env.get(CREDENTIAL_ENV_VARS[cfg.provider], "")

    return cfg
