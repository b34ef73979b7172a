"""Settings for the Sprites API client.

Values come from an optional YAML file, then environment overrides
(``SPRITES_TOKEN``, ``SPRITES_API_URL``, ``SPRITES_TIMEOUT``,
``SPRITES_STREAM_TIMEOUT``, ``SPRITES_MAX_RETRIES``).  Example file::

    api_url: https://api.sprites.dev/v1
    timeout: 30
    stream_timeout: 900
    max_retries: 5
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from spritekit.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.sprites.dev/v1"
DEFAULT_TIMEOUT = 30.0
DEFAULT_STREAM_TIMEOUT = 600.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

_ENV_OVERRIDES = {
    "SPRITES_TOKEN": "token",
    "SPRITES_API_URL": "api_url",
    "SPRITES_TIMEOUT": "timeout",
    "SPRITES_STREAM_TIMEOUT": "stream_timeout",
    "SPRITES_MAX_RETRIES": "max_retries",
}


class SpritesSettings(BaseModel):
    token: str | None = Field(default=None, repr=False)
    api_url: str = DEFAULT_API_URL
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0, description="CRUD request timeout (s)")
    stream_timeout: float = Field(
        default=DEFAULT_STREAM_TIMEOUT,
        gt=0,
        description="Timeout for checkpoint, restore and exec streams (s)",
    )
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_base_delay: float = Field(default=DEFAULT_RETRY_BASE_DELAY, ge=0)
    retry_statuses: frozenset[int] = TRANSIENT_STATUS_CODES

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"api_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")

    def require_token(self) -> str:
        if not self.token:
            raise ConfigurationError(
                "Sprites token is required. Set SPRITES_TOKEN or provide the token input."
            )
        return self.token


def load_settings(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> SpritesSettings:
    """Load settings from ``path`` (YAML, optional) and environment overrides.

    Raises:
        ConfigurationError: If the file is missing or invalid, or a value
            fails validation.
    """
    env = os.environ if env is None else env
    raw: dict = {}

    if path is not None:
        if not path.exists():
            raise ConfigurationError(f"Settings file not found: {path}")
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Settings file {path} must contain a mapping")
        if "token" in raw:
            logger.warning("Ignoring 'token' in %s: pass it via SPRITES_TOKEN instead", path)
            raw.pop("token")

    for var, key in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            raw[key] = value

    try:
        settings = SpritesSettings(**raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid Sprites settings: {e}") from e

    logger.debug("Loaded Sprites settings: api_url=%s", settings.api_url)
    return settings
