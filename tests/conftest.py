"""
Shared pytest fixtures for the llm-bridge test suite.

This module provides fixtures that are automatically available to all test files:
- Ollama settings pointing at a fake server (mocked with respx)
- An open OllamaClient bound to those settings
- A recording sleep so backoff and settle pauses cost no wall-clock time
"""

from collections.abc import AsyncGenerator

import pytest

from llm_bridge.config import OllamaSettings, ProbeSettings
from llm_bridge.transport.client import OllamaClient
from tests.constants import MODEL, OLLAMA_URL, RecordingSleep

# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def ollama_settings() -> OllamaSettings:
    """Settings for a fake Ollama server."""
    return OllamaSettings(url=OLLAMA_URL, model=MODEL, request_timeout=5.0)


@pytest.fixture
def probe_settings() -> ProbeSettings:
    """Probe bounds; the settle pause is recorded, never slept."""
    return ProbeSettings(timeout=30.0, settle_seconds=2.0)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """A sleep that returns immediately and remembers each delay."""
    return RecordingSleep()


@pytest.fixture
async def ollama_client(ollama_settings: OllamaSettings) -> AsyncGenerator[OllamaClient, None]:
    """An open client for the fake server."""
    async with OllamaClient(ollama_settings) as client:
        yield client


@pytest.fixture(autouse=True)
def _isolate_config_env(monkeypatch, tmp_path):
    """Keep the developer's environment and config file out of every test."""
    for name in (
        "LLM_BRIDGE_CONFIG",
        "LLM_BRIDGE_OLLAMA_URL",
        "LLM_BRIDGE_MODEL",
        "LLM_BRIDGE_TIMEOUT",
        "LLM_BRIDGE_MAX_ATTEMPTS",
        "LLM_BRIDGE_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("llm_bridge.config.CONFIG_FILE", tmp_path / "absent.ini")
