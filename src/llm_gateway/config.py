"""Configuration snapshots for the gateway.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./llm_gateway.yaml``
  3. ``~/.config/llm-gateway/config.yaml``
  4. Built-in defaults

The credential may also be supplied through ``LLM_GATEWAY_API_KEY``, which
takes precedence over the file.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from llm_gateway.errors import ConfigError

_logger = logging.getLogger(__name__)

API_KEY_ENV = "LLM_GATEWAY_API_KEY"

_DEFAULT_TIMEOUT = 60.0
_MIN_OUTPUT_TOKENS = 64
_OUTPUT_HEADROOM = 256

LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayConfig:
    """Immutable settings snapshot.

    A request binds to the snapshot current at its start; reloading
    produces a new instance via ``dataclasses.replace`` or ``load_config``.
    """

    server_url: str = "http://localhost:8000"
    api_key: str = field(default="", repr=False)
    request_timeout: float = _DEFAULT_TIMEOUT  # seconds, per attempt

    # Token limits
    max_context_tokens: int = 32768
    max_output_tokens: int = 4096

    # Tool calling
    enable_tool_calling: bool = True
    parallel_tool_calling: bool = True

    # Sampling
    temperature: float = 0.7
    agent_temperature: float = 0.0  # used when tools are sent
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0

    # Retry
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds
    max_retry_delay: float = 10.0

    model_cache_ttl: float = 300.0  # seconds, 0 disables the cache
    log_level: str = "info"  # "debug" | "info" | "warn" | "error"

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key)

    @property
    def logging_level(self) -> int:
        return LOG_LEVELS.get(self.log_level, logging.INFO)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_V1_SUFFIX = re.compile(r"/v1/?$")


def validate_config(config: GatewayConfig) -> GatewayConfig:
    """Return a normalized copy of *config*.

    Raises
    ------
    ConfigError
        If the server URL cannot be used.
    """
    changes: dict[str, Any] = {}

    url = config.server_url.strip()
    if _V1_SUFFIX.search(url):
        url = _V1_SUFFIX.sub("", url)
        _logger.info("Stripped trailing /v1 from server_url to avoid a duplicated path")
    url = url.rstrip("/")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        _logger.error("Invalid server URL: %s", config.server_url)
        raise ConfigError(f"Invalid server URL: {config.server_url}")
    if url != config.server_url:
        changes["server_url"] = url

    if config.request_timeout <= 0:
        _logger.error(
            "request_timeout must be > 0; using default %s", _DEFAULT_TIMEOUT,
        )
        changes["request_timeout"] = _DEFAULT_TIMEOUT

    if config.max_output_tokens >= config.max_context_tokens:
        adjusted = max(
            _MIN_OUTPUT_TOKENS, config.max_context_tokens - _OUTPUT_HEADROOM,
        )
        _logger.warning(
            "max_output_tokens (%d) >= max_context_tokens (%d). Adjusting to %d.",
            config.max_output_tokens, config.max_context_tokens, adjusted,
        )
        changes["max_output_tokens"] = adjusted

    if config.log_level not in LOG_LEVELS:
        _logger.warning("Unknown log_level %r; using 'info'", config.log_level)
        changes["log_level"] = "info"

    if not changes:
        return config
    return replace(config, **changes)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./llm_gateway.yaml"),
    Path.home() / ".config" / "llm-gateway" / "config.yaml",
]

_FIELD_NAMES = {f.name for f in fields(GatewayConfig)}


def _parse_config(raw: dict[str, Any]) -> GatewayConfig:
    known: dict[str, Any] = {}
    for key, value in raw.items():
        if value is None:
            continue
        if key not in _FIELD_NAMES:
            _logger.warning("Ignoring unknown config key: %s", key)
            continue
        known[key] = value
    try:
        return GatewayConfig(**known)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_config(path: str | Path | None = None) -> GatewayConfig:
    """Load and validate configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    GatewayConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            config_path = None
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    raw: dict[str, Any] = {}
    if config_path is None:
        _logger.info("No config file found, using defaults")
    else:
        _logger.info("Loading config from %s", config_path)
        with open(config_path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")
        raw = loaded

    env_key = os.environ.get(API_KEY_ENV, "")
    if env_key:
        raw["api_key"] = env_key

    return validate_config(_parse_config(raw))
