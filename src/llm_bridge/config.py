"""
Bridge configuration management.

Configuration is assembled from three sources with a clear priority order:

    1. Environment variables (highest priority)
    2. INI file (``LLM_BRIDGE_CONFIG`` or ``config/llm_bridge.ini``)
    3. Built-in defaults (lowest priority)

Unlike a server, the bridge keeps no module-level configuration object.
``load_config()`` returns a fresh ``BridgeConfig`` and callers pass the
relevant section into each component explicitly, so concurrent calls
never share mutable settings.

Usage:
    from llm_bridge.config import load_config

    cfg = load_config()
    async with OllamaClient(cfg.ollama) as client:
        ...

Environment Variable Mapping:
    LLM_BRIDGE_CONFIG        -> path of the INI file
    LLM_BRIDGE_OLLAMA_URL    -> ollama.url
    LLM_BRIDGE_MODEL         -> ollama.model
    LLM_BRIDGE_TIMEOUT       -> ollama.request_timeout
    LLM_BRIDGE_MAX_ATTEMPTS  -> retry.max_attempts
    LLM_BRIDGE_LOG_LEVEL     -> logging.level
"""

from __future__ import annotations

import configparser
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "llm_bridge.ini"

ENV_CONFIG_FILE = "LLM_BRIDGE_CONFIG"

# =============================================================================
# DEFAULT VALUES
# =============================================================================

DEFAULT_OLLAMA_URL = "http://localhost:11434"

# Larger model by default for better story quality.
DEFAULT_MODEL = "gpt-oss:20b"

# Hard bound on a single /api/generate call.
DEFAULT_REQUEST_TIMEOUT = 60.0

# Hard bound on the whole connection test.
DEFAULT_PROBE_TIMEOUT = 30.0

# Pause between warming a model up and testing it.
DEFAULT_SETTLE_SECONDS = 2.0


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


@dataclass(frozen=True)
class OllamaSettings:
    """
    Where the inference server lives and which model to ask.

    Attributes:
        url: Base URL of the Ollama server, without trailing slash.
        model: Model tag sent with every generate call.
        request_timeout: Seconds before an in-flight generate call is
                         cancelled.
    """

    url: str = DEFAULT_OLLAMA_URL
    model: str = DEFAULT_MODEL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    def __post_init__(self) -> None:
        if not self.url or not self.url.strip():
            raise ValueError("url cannot be empty")
        if not self.model or not self.model.strip():
            raise ValueError("model cannot be empty")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be a positive number")
        # Normalise once so endpoint joins never produce a double slash.
        object.__setattr__(self, "url", self.url.strip().rstrip("/"))


@dataclass(frozen=True)
class GenerationOptions:
    """
    Sampling options forwarded verbatim as ``options`` to ``/api/generate``.

    ``extra`` holds any option the bridge does not name explicitly
    (``top_k``, ``seed``, ``num_ctx``, ...); it is merged last.
    """

    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 1000
    num_predict: int | None = 1000
    extra: dict[str, Any] = field(default_factory=dict)

    def to_options(self) -> dict[str, Any]:
        """Render the options mapping sent to Ollama."""
        options: dict[str, Any] = {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
        }
        if self.num_predict is not None:
            options["num_predict"] = self.num_predict
        options.update(self.extra)
        return options


@dataclass(frozen=True)
class RetrySettings:
    """Retry coordinator bounds."""

    max_attempts: int = 3
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based): 1s, 2s, 4s, ..."""
        return self.base_delay * (2 ** (attempt - 1))


@dataclass(frozen=True)
class ProbeSettings:
    """Connection tester bounds."""

    timeout: float = DEFAULT_PROBE_TIMEOUT
    settle_seconds: float = DEFAULT_SETTLE_SECONDS

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError("probe timeout must be a positive number")
        if self.settle_seconds < 0:
            raise ValueError("settle_seconds cannot be negative")


@dataclass(frozen=True)
class LoggingSettings:
    """Logging configuration (applied by the CLI only)."""

    level: str = "INFO"
    format: Literal["simple", "detailed", "json"] = "simple"


@dataclass(frozen=True)
class BridgeConfig:
    """
    Complete bridge configuration.

    Aggregates all settings sections.  Frozen: build a new one with
    ``dataclasses.replace`` to change anything.
    """

    ollama: OllamaSettings = field(default_factory=OllamaSettings)
    generation: GenerationOptions = field(default_factory=GenerationOptions)
    retry: RetrySettings = field(default_factory=RetrySettings)
    probe: ProbeSettings = field(default_factory=ProbeSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_scalar(value: str) -> Any:
    """Interpret an INI option value as JSON when possible, else as text."""
    try:
        return json.loads(value)
    except ValueError:
        return value


def _load_from_ini(parser: configparser.ConfigParser) -> dict[str, dict[str, Any]]:
    """Collect constructor keyword arguments for each section from an INI file."""
    values: dict[str, dict[str, Any]] = {
        "ollama": {},
        "generation": {},
        "retry": {},
        "probe": {},
        "logging": {},
    }

    # Ollama section
    if parser.has_section("ollama"):
        if parser.has_option("ollama", "url"):
            values["ollama"]["url"] = parser.get("ollama", "url")
        if parser.has_option("ollama", "model"):
            values["ollama"]["model"] = parser.get("ollama", "model")
        if parser.has_option("ollama", "request_timeout"):
            values["ollama"]["request_timeout"] = parser.getfloat("ollama", "request_timeout")

    # Generation section: named options are typed, everything else passes through.
    if parser.has_section("generation"):
        extra: dict[str, Any] = {}
        for key, raw in parser.items("generation"):
            if key in ("temperature", "top_p"):
                values["generation"][key] = float(raw)
            elif key == "max_tokens":
                values["generation"][key] = int(raw)
            elif key == "num_predict":
                values["generation"][key] = None if raw.strip().lower() == "none" else int(raw)
            else:
                extra[key] = _parse_scalar(raw)
        if extra:
            values["generation"]["extra"] = extra

    # Retry section
    if parser.has_section("retry"):
        if parser.has_option("retry", "max_attempts"):
            values["retry"]["max_attempts"] = parser.getint("retry", "max_attempts")
        if parser.has_option("retry", "base_delay"):
            values["retry"]["base_delay"] = parser.getfloat("retry", "base_delay")

    # Probe section
    if parser.has_section("probe"):
        if parser.has_option("probe", "timeout"):
            values["probe"]["timeout"] = parser.getfloat("probe", "timeout")
        if parser.has_option("probe", "settle_seconds"):
            values["probe"]["settle_seconds"] = parser.getfloat("probe", "settle_seconds")

    # Logging section
    if parser.has_section("logging"):
        if parser.has_option("logging", "level"):
            values["logging"]["level"] = parser.get("logging", "level").upper()
        if parser.has_option("logging", "format"):
            val = parser.get("logging", "format").lower()
            if val in ("simple", "detailed", "json"):
                values["logging"]["format"] = val

    return values


def _apply_env_overrides(values: dict[str, dict[str, Any]]) -> None:
    """Apply environment variable overrides to the collected values."""
    if env_url := os.getenv("LLM_BRIDGE_OLLAMA_URL"):
        values["ollama"]["url"] = env_url
    if env_model := os.getenv("LLM_BRIDGE_MODEL"):
        values["ollama"]["model"] = env_model
    if env_timeout := os.getenv("LLM_BRIDGE_TIMEOUT"):
        values["ollama"]["request_timeout"] = float(env_timeout)
    if env_attempts := os.getenv("LLM_BRIDGE_MAX_ATTEMPTS"):
        values["retry"]["max_attempts"] = int(env_attempts)
    if env_log := os.getenv("LLM_BRIDGE_LOG_LEVEL"):
        values["logging"]["level"] = env_log.upper()


def _resolve_config_file(path: Path | str | None) -> Path | None:
    if path is not None:
        return Path(path)
    if env_path := os.getenv(ENV_CONFIG_FILE):
        return Path(env_path)
    if CONFIG_FILE.exists():
        return CONFIG_FILE
    return None


def load_config(path: Path | str | None = None) -> BridgeConfig:
    """
    Load configuration from all sources with proper priority.

    Priority (highest wins):
        1. Environment variables
        2. ``path``, else ``$LLM_BRIDGE_CONFIG``, else ``config/llm_bridge.ini``
        3. Built-in defaults

    Args:
        path: Explicit INI file to read.  A missing explicit file is an
              error; a missing default file is not.

    Returns:
        BridgeConfig: Fully populated configuration object.

    Raises:
        FileNotFoundError: If an explicitly named INI file does not exist.
        ValueError: If a setting is out of range.
    """
    config_file = _resolve_config_file(path)

    values: dict[str, dict[str, Any]] = {
        "ollama": {},
        "generation": {},
        "retry": {},
        "probe": {},
        "logging": {},
    }
    if config_file is not None:
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_file}")
        parser = configparser.ConfigParser()
        parser.read(config_file)
        values = _load_from_ini(parser)

    _apply_env_overrides(values)

    return BridgeConfig(
        ollama=OllamaSettings(**values["ollama"]),
        generation=GenerationOptions(**values["generation"]),
        retry=RetrySettings(**values["retry"]),
        probe=ProbeSettings(**values["probe"]),
        logging=LoggingSettings(**values["logging"]),
    )


# =============================================================================
# LOGGING SETUP
# =============================================================================

_SIMPLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
_DETAILED_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s:%(lineno)d] %(message)s"


class _JsonFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(settings: LoggingSettings) -> None:
    """
    Install a stderr handler on the ``llm_bridge`` logger.

    Library code never calls this; it is for the CLI and for applications
    that want the bridge's log format without configuring it themselves.
    """
    handler = logging.StreamHandler(sys.stderr)
    if settings.format == "json":
        handler.setFormatter(_JsonFormatter())
    elif settings.format == "detailed":
        handler.setFormatter(logging.Formatter(_DETAILED_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(_SIMPLE_FORMAT))

    root = logging.getLogger("llm_bridge")
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.level.upper())
