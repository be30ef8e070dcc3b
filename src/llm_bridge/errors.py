"""Typed exception hierarchy for the structured-output pipeline.

Every failure the pipeline raises derives from :class:`BridgeError` and
carries an :class:`ErrorKind`.  The error classifier reads ``kind``
directly instead of pattern-matching the message, so messages can be
reworded without breaking classification.  Messages are still written to
be diagnosable on their own (status codes, raw/cleaned text snippets),
because they end up in logs and in the retry coordinator's summary.

Recoverable conditions (repairable JSON, reconstructable fields, too many
choices) never raise; they are recorded in the issue trail instead.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from llm_bridge.types import AttemptRecord

# Longest raw/cleaned excerpt embedded in an error message.
_SNIPPET_CHARS = 200


def _snippet(text: str) -> str:
    text = text.strip()
    if len(text) <= _SNIPPET_CHARS:
        return text
    return text[:_SNIPPET_CHARS] + "..."


class ErrorKind(str, Enum):
    """Failure categories surfaced to the caller's UI."""

    NETWORK = "network"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    PARSE_ERROR = "parse_error"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


class BridgeError(RuntimeError):
    """Base class for every error raised by this package."""

    kind: ErrorKind = ErrorKind.UNKNOWN


# ── Transport ────────────────────────────────────────────────────────────────


class TransportError(BridgeError):
    """The HTTP exchange with Ollama failed."""

    kind = ErrorKind.NETWORK


class OllamaConnectionError(TransportError):
    """Ollama could not be reached (refused, DNS, reset, ...)."""

    def __init__(self, url: str, cause: Exception | str) -> None:
        super().__init__(f"Failed to fetch {url}: {cause}")
        self.url = url
        self.cause = cause


class RequestTimeoutError(TransportError):
    """No response arrived within the hard bound; the request was cancelled."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Request timeout after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds


class OllamaHTTPError(TransportError):
    """Ollama answered with a non-2xx status."""

    def __init__(self, status_code: int, reason: str, detail: str = "") -> None:
        message = f"Ollama API error: {status_code} {reason}".rstrip()
        if detail:
            message = f"{message} ({_snippet(detail)})"
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason
        self.detail = detail
        if status_code == 404:
            self.kind = ErrorKind.NOT_FOUND
        elif status_code >= 500:
            self.kind = ErrorKind.SERVER_ERROR
        else:
            self.kind = ErrorKind.UNKNOWN


class EmptyResponseError(TransportError):
    """The generate call succeeded but carried no text."""

    kind = ErrorKind.SERVER_ERROR

    def __init__(self, message: str = "No response received from Ollama") -> None:
        super().__init__(message)


# ── Content ──────────────────────────────────────────────────────────────────


class JSONRepairError(BridgeError):
    """No JSON object could be recovered from the model text."""

    kind = ErrorKind.PARSE_ERROR

    def __init__(
        self,
        error: str,
        *,
        raw: str = "",
        cleaned: str = "",
        issues: Sequence[str] = (),
    ) -> None:
        message = f"Invalid JSON response from LLM: {error}"
        if cleaned:
            message = f"{message} | cleaned: {_snippet(cleaned)!r}"
        super().__init__(message)
        self.raw = raw
        self.cleaned = cleaned
        self.issues = list(issues)


class SchemaValidationError(BridgeError):
    """Required fields are missing and cannot be reconstructed."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, missing: Iterable[str], *, parsed: object = None) -> None:
        self.missing = tuple(sorted(missing))
        if self.missing or isinstance(parsed, dict):
            message = f"Missing required fields: {', '.join(self.missing)}"
        else:
            message = f"Expected a JSON object, got {type(parsed).__name__}"
        super().__init__(message)
        self.parsed = parsed


class ChoiceCountError(BridgeError):
    """The ``choices`` field cannot serve as a branching point."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, choices: object) -> None:
        if isinstance(choices, list):
            self.count: int | None = len(choices)
            message = f"Invalid choices array. Expected at least 2 choices, got: {self.count}"
        else:
            self.count = None
            message = (
                "Invalid choices array. Expected array with at least 2 elements, "
                f"got: {_snippet(repr(choices))}"
            )
        super().__init__(message)
        self.choices = choices


# ── Orchestration ────────────────────────────────────────────────────────────


class RetryExhaustedError(BridgeError):
    """Every attempt made by the retry coordinator failed.

    ``kind`` mirrors the last underlying error so a classifier looking at
    the summary error still sees what actually went wrong.
    """

    def __init__(self, attempts: int, history: Sequence[AttemptRecord]) -> None:
        self.attempts = attempts
        self.history = list(history)
        last = self.last_error
        last_message = str(last) if last is not None else "unknown error"
        super().__init__(f"Ollama API failed after {attempts} attempts. Last error: {last_message}")
        if isinstance(last, BridgeError):
            self.kind = last.kind

    @property
    def last_error(self) -> BaseException | None:
        return self.history[-1].error if self.history else None
