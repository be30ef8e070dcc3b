"""Structured-response service: the pipeline plus retry-with-backoff.

``StructuredResponseService`` is the single public entry point used by
the game orchestrator.  One attempt runs the whole pipeline:

1. ``build_prompt``                 system prompt + history → prompt text
2. ``OllamaClient.generate``        POST /api/generate, 60 s bound
3. ``repair_json``                  recover JSON from the model text
4. ``reconstruct_missing_fields``   validate, fill reconstructable gaps
5. ``normalize_choices``            only when ``choices`` was requested

Caller contract
---------------
``request()`` either returns a :class:`~llm_bridge.types.StructuredResult`
whose ``data`` holds every requested field, or raises
:class:`~llm_bridge.errors.RetryExhaustedError` after ``max_attempts``
failed attempts.  Attempts are independent: nothing is merged across
them, and the first success returns immediately.

Between attempts the service sleeps ``base_delay * 2**(attempt - 1)``
seconds (1 s, 2 s, 4 s, ...).  The sleep is an ``await`` so concurrent
callers are not blocked, and it goes through the injectable ``sleep``
callable so tests can record delays instead of waiting.

Failure history
---------------
Failed attempts are collected as :class:`~llm_bridge.types.AttemptRecord`
values.  On success they travel in ``StructuredResult.history``; on
exhaustion they are attached to the raised error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from llm_bridge.config import BridgeConfig, GenerationOptions, RetrySettings
from llm_bridge.errors import BridgeError, JSONRepairError, RetryExhaustedError
from llm_bridge.structured.choices import CHOICES_FIELD, normalize_choices
from llm_bridge.structured.prompt import build_prompt
from llm_bridge.structured.repair import repair_json, turn_marker_fields
from llm_bridge.structured.validator import reconstruct_missing_fields
from llm_bridge.transport.client import OllamaClient, sanitize_for_log
from llm_bridge.types import AttemptRecord, FieldSpec, Message, StructuredResult

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class StructuredResponseService:
    """Turns free-text model output into validated structured responses.

    Attributes:
        _client:  Open :class:`OllamaClient` used for every attempt.
        _options: Generation options sent with every attempt.
        _retry:   Attempt count and backoff base.
        _sleep:   Awaitable used for backoff.
        _log:     Logger for the pipeline trail.
    """

    def __init__(
        self,
        client: OllamaClient,
        *,
        options: GenerationOptions | None = None,
        retry: RetrySettings | None = None,
        sleep: SleepFn = asyncio.sleep,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._client = client
        self._options = options or GenerationOptions()
        self._retry = retry or RetrySettings()
        self._sleep = sleep
        self._log = log or logger

    # ── Single attempt ────────────────────────────────────────────────────────

    async def attempt(
        self,
        system_prompt: str,
        history: Sequence[Message],
        fields: Sequence[FieldSpec],
    ) -> StructuredResult:
        """Run the pipeline once.

        Raises:
            TransportError: The generate call failed or returned no text.
            JSONRepairError: No JSON object could be recovered.
            SchemaValidationError: The response cannot be reconstructed.
            ChoiceCountError: ``choices`` was requested and is unusable.
        """
        field_names = [spec.name for spec in fields]
        prompt = build_prompt(system_prompt, history)
        self._log.debug("Expected fields: %s", field_names)

        body = await self._client.generate(prompt, options=self._options.to_options())
        raw_text: str = body["response"]

        repair = repair_json(raw_text, marker_fields=turn_marker_fields(field_names))
        if not repair.success:
            self._log.error(
                "Failed to parse JSON response: %s | raw: %s | cleaned: %s",
                repair.error,
                sanitize_for_log(raw_text),
                sanitize_for_log(repair.cleaned),
            )
            raise JSONRepairError(
                repair.error, raw=raw_text, cleaned=repair.cleaned, issues=repair.issues
            )
        if repair.issues:
            self._log.warning("JSON required cleaning: %s", ", ".join(repair.issues))

        issues = list(repair.issues)
        data, reconstructed = reconstruct_missing_fields(repair.parsed, fields, log=self._log)
        issues.extend(f"Reconstructed missing field: {name}" for name in reconstructed)

        if CHOICES_FIELD in field_names:
            issues.extend(normalize_choices(data, log=self._log))

        return StructuredResult(
            data=data,
            issues=issues,
            reconstructed=reconstructed,
            raw_text=raw_text,
        )

    # ── Retry coordinator ────────────────────────────────────────────────────

    async def request(
        self,
        system_prompt: str,
        history: Sequence[Message],
        fields: Sequence[FieldSpec],
        *,
        max_attempts: int | None = None,
    ) -> StructuredResult:
        """Run the pipeline until it succeeds or attempts run out.

        Args:
            system_prompt: Instructions for the model.
            history:       Conversation so far, oldest first.
            fields:        Fields the response must contain.
            max_attempts:  Overrides ``RetrySettings.max_attempts``.

        Raises:
            RetryExhaustedError: Every attempt failed.  Names the attempt
                count and wraps the last underlying error.
        """
        attempts = max_attempts if max_attempts is not None else self._retry.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        failures: list[AttemptRecord] = []
        for attempt in range(1, attempts + 1):
            self._log.info("Structured request attempt %d/%d", attempt, attempts)
            try:
                result = await self.attempt(system_prompt, history, fields)
            except BridgeError as exc:
                delay = self._retry.delay_after(attempt) if attempt < attempts else 0.0
                failures.append(AttemptRecord(attempt=attempt, error=exc, delay=delay))
                self._log.warning("Attempt %d/%d failed: %s", attempt, attempts, exc)
                if delay:
                    self._log.info("Waiting %.1fs before retry", delay)
                    await self._sleep(delay)
                continue

            result.attempts = attempt
            result.history = failures
            return result

        error = RetryExhaustedError(attempts, failures)
        self._log.error("%s", error)
        raise error


async def request_structured(
    config: BridgeConfig,
    system_prompt: str,
    history: Sequence[Message],
    fields: Sequence[FieldSpec],
    *,
    max_attempts: int | None = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> StructuredResult:
    """Open a client for ``config`` and run one retried structured request."""
    async with OllamaClient(config.ollama, log=log or logger) as client:
        service = StructuredResponseService(
            client,
            options=config.generation,
            retry=config.retry,
            log=log,
        )
        return await service.request(system_prompt, history, fields, max_attempts=max_attempts)
