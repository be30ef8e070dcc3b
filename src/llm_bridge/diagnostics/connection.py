"""Connection and model test for the settings screen.

``ConnectionTester.run(url, model)`` answers "will story generation work
with these settings?" in three stages:

1. **Reachability**: ``GET /api/tags``.  Failure ends the test.
2. **Existence**: the requested model must be listed.  If not, the
   test fails and reports the installed models.
3. **Generation**: candidates are tried in order: the requested model,
   then fallbacks from :func:`~llm_bridge.diagnostics.ranking.rank_candidates`.
   Each candidate is warmed up with a tiny generate call (which makes
   Ollama load it into memory), given a settle pause, then asked for a
   short real generation.  The first candidate that reports ``done`` with
   non-empty text wins.

The whole probe is raced against one overall timer (30 s by default);
when the timer wins the probe is cancelled and a timeout result is
returned.  Candidates are tried strictly one after another: each must be
loaded and settled before it is tested, and loading several models at
once would compete for the inference server's memory.

``run`` never raises for network or server problems; everything is
reported through :class:`~llm_bridge.types.ConnectionTestResult`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from llm_bridge.config import OllamaSettings, ProbeSettings
from llm_bridge.diagnostics.ranking import RankFn, rank_candidates, size_tier
from llm_bridge.errors import OllamaHTTPError, TransportError
from llm_bridge.transport.client import OllamaClient
from llm_bridge.types import ConnectionTestResult

logger = logging.getLogger(__name__)

WARMUP_PROMPT = "Hi"
WARMUP_OPTIONS: dict[str, Any] = {"temperature": 0.1, "num_predict": 10}

TEST_PROMPT = "Hello! Please respond with a simple greeting."
TEST_OPTIONS: dict[str, Any] = {
    "temperature": 0.1,
    "num_predict": 50,
    "top_p": 1.0,
    "top_k": 40,
}

# Characters of the sample response kept in the success diagnostics.
SAMPLE_CHARS = 100


class ConnectionTester:
    """Runs the three-stage connection and model test.

    Attributes:
        _settings: Overall timeout and settle pause.
        _rank:     Model-name ranking heuristic for fallbacks.
        _sleep:    Awaitable used for the settle pause.
        _log:      Logger for stage-by-stage tracing.
    """

    def __init__(
        self,
        settings: ProbeSettings | None = None,
        *,
        rank: RankFn = size_tier,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._settings = settings or ProbeSettings()
        self._rank = rank
        self._sleep = sleep
        self._log = log or logger

    async def run(self, url: str, model: str) -> ConnectionTestResult:
        """Test ``model`` on the Ollama server at ``url``.

        Returns:
            A result with ``success``, a human-readable ``message`` and
            ``details`` for the settings screen.
        """
        try:
            target = OllamaSettings(url=url, model=model, request_timeout=self._settings.timeout)
        except ValueError as exc:
            return ConnectionTestResult(success=False, message=f"Test failed: {exc}")

        timeout = self._settings.timeout
        try:
            async with OllamaClient(target, log=self._log) as client:
                return await asyncio.wait_for(self._probe(client, target.model), timeout=timeout)
        except asyncio.TimeoutError:
            self._log.warning("Connection test against %s timed out after %.0fs", target.url, timeout)
            return ConnectionTestResult(
                success=False,
                message=f"Test failed: Test timeout after {timeout:g} seconds",
            )
        except httpx.InvalidURL as exc:
            self._log.warning("Cannot build a client for %s: %s", target.url, exc)
            return ConnectionTestResult(success=False, message=f"Test failed: {exc}")

    # ── Stages ───────────────────────────────────────────────────────────────

    async def _probe(self, client: OllamaClient, model: str) -> ConnectionTestResult:
        # Stage 1: reachability.
        try:
            available = await client.list_models()
        except OllamaHTTPError as exc:
            return ConnectionTestResult(
                success=False,
                message=f"Server unreachable: {exc.status_code} {exc.reason}",
            )
        except TransportError as exc:
            self._log.error("Ollama connection test error: %s", exc)
            return ConnectionTestResult(success=False, message=f"Connection test failed: {exc}")

        self._log.info("Ollama reachable; %d model(s) installed", len(available))

        # Stage 2: existence.
        if model not in available:
            return ConnectionTestResult(
                success=False,
                message=f"Model '{model}' not found. Available models: {', '.join(available)}",
                details={"available_models": available},
            )

        # Stage 3: ranked generation test.
        candidates = rank_candidates(model, available, rank=self._rank)
        tested: list[str] = []
        last_error = ""

        for candidate in candidates:
            name = candidate.name
            tested.append(name)
            self._log.info("Testing model %r (size tier %d)", name, candidate.size_tier)
            try:
                if not await self._warm_up(client, name):
                    last_error = f"Failed to load model '{name}'"
                    continue

                await self._sleep(self._settings.settle_seconds)

                data = await client.generate(
                    TEST_PROMPT, model=name, options=TEST_OPTIONS, require_text=False
                )
            except OllamaHTTPError as exc:
                last_error = f"Generation test failed: {exc.status_code} {exc.reason}"
                continue
            except TransportError as exc:
                last_error = f"Model '{name}' test failed: {exc}"
                continue

            if data.get("done") is not True:
                last_error = f"Model '{name}' response incomplete. Done: {data.get('done')}"
                continue

            text = data.get("response")
            if not isinstance(text, str) or not text.strip():
                last_error = (
                    f"Model '{name}' returned empty response. "
                    f"Done reason: {data.get('done_reason')}"
                )
                continue

            return ConnectionTestResult(
                success=True,
                message=f"Connection successful! Model '{name}' is ready.",
                details={
                    "available_models": available,
                    "selected_model": name,
                    "response_time": data.get("total_duration") or 0,
                    "response": text[:SAMPLE_CHARS],
                },
            )

        self._log.warning("All tested models failed. Last error: %s", last_error)
        return ConnectionTestResult(
            success=False,
            message=f"All tested models failed. Last error: {last_error}",
            details={"available_models": available, "tested_models": tested},
        )

    async def _warm_up(self, client: OllamaClient, name: str) -> bool:
        """Load ``name`` into memory; ``True`` once Ollama reports ``done``.

        An empty reply still counts: only the load matters here.
        """
        try:
            data = await client.generate(
                WARMUP_PROMPT, model=name, options=WARMUP_OPTIONS, require_text=False
            )
        except TransportError as exc:
            self._log.warning("Model loading failed for %r: %s", name, exc)
            return False
        return data.get("done") is True


async def probe_connection(
    url: str, model: str, settings: ProbeSettings | None = None
) -> ConnectionTestResult:
    """Convenience wrapper: run a :class:`ConnectionTester` with defaults."""
    return await ConnectionTester(settings).run(url, model)
