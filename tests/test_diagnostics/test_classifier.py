"""Unit tests for the error classifier."""

import pytest

from llm_bridge.diagnostics.classifier import classify_error
from llm_bridge.errors import (
    ChoiceCountError,
    EmptyResponseError,
    JSONRepairError,
    OllamaConnectionError,
    OllamaHTTPError,
    RequestTimeoutError,
    RetryExhaustedError,
    SchemaValidationError,
)
from llm_bridge.types import AttemptRecord


@pytest.mark.unit
class TestStringRules:
    def test_fetch_is_network(self):
        result = classify_error("TypeError: Failed to fetch")

        assert result.kind == "network"
        assert result.retryable is True
        assert result.action == "check_connection"
        assert result.user_message == (
            "Cannot connect to Ollama server. Please check if Ollama is running."
        )

    def test_404_is_not_found(self):
        result = classify_error(Exception("Ollama API error: 404 Not Found"))

        assert result.kind == "not_found"
        assert result.retryable is False
        assert result.action == "check_url"

    def test_500_is_server_error(self):
        result = classify_error("HTTP 500")

        assert (result.kind, result.retryable, result.action) == ("server_error", True, "retry")

    def test_invalid_json_is_parse_error(self):
        assert classify_error("Invalid JSON response from LLM: x").kind == "parse_error"

    def test_missing_fields_is_validation(self):
        result = classify_error("Missing required fields: story")

        assert result.kind == "validation_error"
        assert result.user_message == "LLM response missing required information. Please try again."

    def test_choice_count_is_validation(self):
        result = classify_error("Invalid choices array. Expected at least 2 choices, got: 1")

        assert result.kind == "validation_error"
        assert result.user_message == "LLM response format issue. Please try again."

    def test_unrecognised_is_unknown(self):
        result = classify_error("something odd happened")

        assert result.kind == "unknown"
        assert result.retryable is False
        assert result.action == "none"
        assert result.user_message == "An unexpected error occurred"

    def test_rules_are_ordered(self):
        # A fetch failure quoting a 404 is still a connectivity problem.
        assert classify_error("failed to fetch: 404").kind == "network"

    @pytest.mark.parametrize("value", [None, "", object()])
    def test_never_raises(self, value):
        assert classify_error(value).kind == "unknown"


@pytest.mark.unit
class TestTypedErrors:
    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (OllamaConnectionError("http://x/api/tags", "refused"), "network"),
            (RequestTimeoutError(60), "network"),
            (OllamaHTTPError(404, "Not Found"), "not_found"),
            (OllamaHTTPError(503, "Service Unavailable"), "server_error"),
            (OllamaHTTPError(400, "Bad Request"), "unknown"),
            (EmptyResponseError(), "server_error"),
            (JSONRepairError("Expecting value"), "parse_error"),
            (SchemaValidationError(["story"]), "validation_error"),
        ],
    )
    def test_kind_is_read_from_error(self, error, kind):
        assert classify_error(error).kind == kind

    def test_choice_error_gets_format_message(self):
        result = classify_error(ChoiceCountError(["only"]))

        assert result.user_message == "LLM response format issue. Please try again."

    def test_exhaustion_classified_by_last_error(self):
        history = [
            AttemptRecord(1, OllamaConnectionError("http://x", "refused"), 1.0),
            AttemptRecord(2, ChoiceCountError([]), 0.0),
        ]

        result = classify_error(RetryExhaustedError(2, history))

        assert result.kind == "validation_error"
        assert result.user_message == "LLM response format issue. Please try again."

    def test_builtin_timeout_is_network(self):
        assert classify_error(TimeoutError()).kind == "network"

    def test_to_dict(self):
        assert classify_error("404").to_dict() == {
            "kind": "not_found",
            "user_message": "Ollama server not found. Please check the URL.",
            "retryable": False,
            "action": "check_url",
        }
