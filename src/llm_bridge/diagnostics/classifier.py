"""Translate failures into user-facing guidance.

``classify_error`` is the single place where internal error text becomes
something a player can act on.  It is advisory: it never raises and it
never changes control flow.

Errors raised by this package carry an :class:`~llm_bridge.errors.ErrorKind`
and are classified from that.  Anything else (foreign exceptions, plain
message strings from a UI) goes through an ordered substring rule table;
the first matching rule wins.
"""

from __future__ import annotations

from llm_bridge.errors import BridgeError, ChoiceCountError, ErrorKind, RetryExhaustedError
from llm_bridge.types import ErrorClassification

NETWORK_MESSAGE = "Cannot connect to Ollama server. Please check if Ollama is running."
NOT_FOUND_MESSAGE = "Ollama server not found. Please check the URL."
SERVER_ERROR_MESSAGE = "Ollama server error. Please try again."
PARSE_ERROR_MESSAGE = "Invalid response from LLM. Please try again."
MISSING_FIELDS_MESSAGE = "LLM response missing required information. Please try again."
CHOICES_MESSAGE = "LLM response format issue. Please try again."
UNKNOWN_MESSAGE = "An unexpected error occurred"

_BY_KIND: dict[ErrorKind, ErrorClassification] = {
    ErrorKind.NETWORK: ErrorClassification("network", NETWORK_MESSAGE, True, "check_connection"),
    ErrorKind.NOT_FOUND: ErrorClassification("not_found", NOT_FOUND_MESSAGE, False, "check_url"),
    ErrorKind.SERVER_ERROR: ErrorClassification("server_error", SERVER_ERROR_MESSAGE, True, "retry"),
    ErrorKind.PARSE_ERROR: ErrorClassification("parse_error", PARSE_ERROR_MESSAGE, True, "retry"),
    ErrorKind.VALIDATION_ERROR: ErrorClassification(
        "validation_error", MISSING_FIELDS_MESSAGE, True, "retry"
    ),
    ErrorKind.UNKNOWN: ErrorClassification("unknown", UNKNOWN_MESSAGE, False, "none"),
}

_CHOICES_CLASSIFICATION = ErrorClassification("validation_error", CHOICES_MESSAGE, True, "retry")

# Ordered (lowercased needle, classification) rules for untyped errors.
_RULES: tuple[tuple[str, ErrorClassification], ...] = (
    ("fetch", _BY_KIND[ErrorKind.NETWORK]),
    ("connection refused", _BY_KIND[ErrorKind.NETWORK]),
    ("timeout", _BY_KIND[ErrorKind.NETWORK]),
    ("404", _BY_KIND[ErrorKind.NOT_FOUND]),
    ("500", _BY_KIND[ErrorKind.SERVER_ERROR]),
    ("invalid json", _BY_KIND[ErrorKind.PARSE_ERROR]),
    ("missing required fields", _BY_KIND[ErrorKind.VALIDATION_ERROR]),
    ("invalid choices array", _CHOICES_CLASSIFICATION),
)


def _is_choice_failure(error: BaseException) -> bool:
    if isinstance(error, RetryExhaustedError) and error.last_error is not None:
        error = error.last_error
    return isinstance(error, ChoiceCountError)


def classify_error(error: BaseException | str | None) -> ErrorClassification:
    """Map a failure to an :class:`ErrorClassification`.

    Args:
        error: An exception or a bare message string.

    Returns:
        The classification; ``unknown`` when nothing matches.
    """
    if isinstance(error, BridgeError):
        if error.kind is ErrorKind.VALIDATION_ERROR and _is_choice_failure(error):
            return _CHOICES_CLASSIFICATION
        return _BY_KIND.get(error.kind, _BY_KIND[ErrorKind.UNKNOWN])

    if isinstance(error, TimeoutError):
        return _BY_KIND[ErrorKind.NETWORK]

    message = str(error or "").lower()
    for needle, classification in _RULES:
        if needle in message:
            return classification
    return _BY_KIND[ErrorKind.UNKNOWN]
