"""
Async HTTP client for a local Ollama server.

This module is the only place in the bridge that talks to the network.
It wraps the three Ollama endpoints the bridge needs:

    POST /api/generate   text generation (non-streaming)
    GET  /api/tags       list installed models
    POST /api/show       model metadata

The client is designed to be used as an async context manager so the
underlying connection pool is always released:

    async with OllamaClient(OllamaSettings(url="http://localhost:11434")) as client:
        models = await client.list_models()
        body = await client.generate("Hello", options={"temperature": 0.1})

Timeouts and cancellation
-------------------------
Every call is raced against a timer with ``asyncio.wait_for``.  When the
timer wins, the in-flight request task is cancelled (closing its
connection) and :class:`~llm_bridge.errors.RequestTimeoutError` is
raised.  ``generate`` defaults to the configured 60-second bound.

Errors
------
All failures surface as subclasses of
:class:`~llm_bridge.errors.TransportError`; raw ``httpx`` exceptions
never escape this module.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from llm_bridge.config import OllamaSettings
from llm_bridge.errors import (
    EmptyResponseError,
    OllamaConnectionError,
    OllamaHTTPError,
    RequestTimeoutError,
)
from llm_bridge.types import ModelMetadata

logger = logging.getLogger(__name__)

# Timeout for the cheap metadata endpoints (/api/tags, /api/show).
METADATA_TIMEOUT = 10.0

_IMAGE_DATA_RE = re.compile(r"data:image/[^;]+;base64,[A-Za-z0-9+/=]+")


def sanitize_for_log(text: str) -> str:
    """Replace inline base64 image payloads with ``[Image Data]``."""
    return _IMAGE_DATA_RE.sub("[Image Data]", text)


@dataclass
class OllamaClient:
    """
    Async client for the Ollama REST API.

    Attributes:
        settings: Server URL, default model and generate timeout.
        log: Logger for request/response tracing.  Defaults to this
             module's logger.
    """

    settings: OllamaSettings
    log: logging.Logger | logging.LoggerAdapter = field(default=logger, repr=False)

    _http_client: httpx.AsyncClient | None = field(default=None, repr=False)

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> OllamaClient:
        self._http_client = httpx.AsyncClient(
            base_url=self.settings.url,
            timeout=self.settings.request_timeout,
            headers={"Accept": "application/json"},
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """
        The underlying httpx client.

        Raises:
            RuntimeError: If accessed outside of the async context manager.
        """
        if self._http_client is None:
            raise RuntimeError(
                "OllamaClient must be used as an async context manager. "
                "Use 'async with OllamaClient(settings) as client:'"
            )
        return self._http_client

    # -------------------------------------------------------------------------
    # Request plumbing
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        timeout: float,
    ) -> dict[str, Any]:
        """
        Send one request bounded by ``timeout`` and return the decoded body.

        Raises:
            RequestTimeoutError: The bound expired; the request was cancelled.
            OllamaConnectionError: The server could not be reached, or the
                exchange failed below HTTP (bad encoding, redirect loop).
            OllamaHTTPError: The server answered with a non-2xx status.
            EmptyResponseError: The body was not a JSON object.
        """
        url = f"{self.settings.url}{path}"
        try:
            response = await asyncio.wait_for(
                self.http_client.request(method, path, json=json, timeout=timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            self.log.warning("Request to %s timed out after %.1fs", url, timeout)
            raise RequestTimeoutError(timeout) from exc
        except httpx.RequestError as exc:
            self.log.warning("Cannot connect to Ollama at %s: %s", url, exc)
            raise OllamaConnectionError(url, exc) from exc

        self.log.debug("%s %s -> %d %s", method, url, response.status_code, response.reason_phrase)
        if not response.is_success:
            raise OllamaHTTPError(response.status_code, response.reason_phrase, response.text)

        try:
            data = response.json()
        except ValueError as exc:
            raise EmptyResponseError(f"Ollama returned a non-JSON body from {path}") from exc
        if not isinstance(data, dict):
            raise EmptyResponseError(f"Ollama returned an unexpected body from {path}")
        return data

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        options: dict[str, Any] | None = None,
        timeout: float | None = None,
        require_text: bool = True,
    ) -> dict[str, Any]:
        """
        Run a non-streaming generation.

        Args:
            prompt: Complete prompt text.
            model: Model tag; defaults to ``settings.model``.
            options: Generation options passed through untouched.
            timeout: Hard bound in seconds; defaults to
                     ``settings.request_timeout``.
            require_text: Raise if the ``response`` field is absent or
                          blank.  The connection tester turns this off to
                          inspect ``done``/``done_reason`` itself.

        Returns:
            The decoded Ollama body (``response``, ``done``,
            ``done_reason``, ``total_duration``, ...).

        Raises:
            TransportError: See :meth:`_request`.
            EmptyResponseError: ``require_text`` and no text came back.
        """
        body = {
            "model": model or self.settings.model,
            "prompt": prompt,
            "stream": False,
            "options": dict(options or {}),
        }
        bound = timeout if timeout is not None else self.settings.request_timeout

        self.log.info("POST %s/api/generate (model=%s)", self.settings.url, body["model"])
        self.log.debug("Prompt sent to model:\n%s", sanitize_for_log(prompt))

        data = await self._request("POST", "/api/generate", json=body, timeout=bound)

        text = data.get("response")
        self.log.info("Model response text: %s", sanitize_for_log(str(text)))
        if require_text and (not isinstance(text, str) or not text.strip()):
            self.log.error("No response field in Ollama body: %s", sanitize_for_log(str(data)))
            raise EmptyResponseError()
        return data

    # -------------------------------------------------------------------------
    # Model discovery
    # -------------------------------------------------------------------------

    async def list_models(self, *, timeout: float = METADATA_TIMEOUT) -> list[str]:
        """Names of the models installed on the server (``GET /api/tags``)."""
        data = await self._request("GET", "/api/tags", timeout=timeout)
        models = data.get("models") or []
        return [str(entry["name"]) for entry in models if isinstance(entry, dict) and entry.get("name")]

    async def show_model(
        self, name: str | None = None, *, timeout: float = METADATA_TIMEOUT
    ) -> ModelMetadata:
        """Metadata for one model (``POST /api/show``)."""
        model_name = name or self.settings.model
        data = await self._request("POST", "/api/show", json={"name": model_name}, timeout=timeout)
        return ModelMetadata.from_response(data, fallback_name=model_name)

    async def get_context_limit(self, name: str | None = None) -> int | None:
        """
        Context window of a model in tokens, or ``None`` if it cannot be told.

        Advisory only: failures are logged and swallowed so callers can
        fall back to their own token limit.
        """
        try:
            metadata = await self.show_model(name)
        except (OllamaConnectionError, OllamaHTTPError, RequestTimeoutError, EmptyResponseError) as exc:
            self.log.warning("Could not determine context limit for model %r: %s", name, exc)
            return None
        return metadata.context_length
