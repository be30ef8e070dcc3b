"""Unit tests for StructuredResponseService and request_structured.

Test organisation
-----------------
``TestAttempt``
    One pass through the pipeline with a mocked transport.

``TestRetryCoordinator``
    Attempt counting, backoff delays, history and exhaustion.

``TestRequestStructured``
    The module-level helper end to end against respx.
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest
import respx
from httpx import Response

from llm_bridge.config import BridgeConfig, GenerationOptions, OllamaSettings, RetrySettings
from llm_bridge.errors import (
    ChoiceCountError,
    EmptyResponseError,
    JSONRepairError,
    RetryExhaustedError,
    SchemaValidationError,
)
from llm_bridge.structured.prompt import JSON_ONLY_DIRECTIVE
from llm_bridge.structured.service import StructuredResponseService, request_structured
from llm_bridge.types import STORY_TURN_FIELDS, FieldSpec, Message
from tests.constants import MODEL, OLLAMA_URL, STORY_JSON, RecordingSleep, generate_body

HISTORY = [Message("user", "Open the door.")]


def _client(*texts_or_errors):
    """A stand-in OllamaClient whose generate() replays the given outcomes."""
    client = AsyncMock()
    client.generate.side_effect = [
        item if isinstance(item, Exception) else generate_body(item) for item in texts_or_errors
    ]
    return client


def _service(client, sleep=None, **retry):
    return StructuredResponseService(
        client,
        retry=RetrySettings(**retry) if retry else None,
        sleep=sleep or RecordingSleep(),
    )


# ── Single attempt ────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestAttempt:
    async def test_clean_story_turn(self):
        service = _service(_client(STORY_JSON))

        result = await service.attempt("You narrate.", HISTORY, STORY_TURN_FIELDS)

        assert result.data == json.loads(STORY_JSON)
        assert result.issues == []
        assert result.reconstructed == ()
        assert result.raw_text == STORY_JSON

    async def test_prompt_and_options_are_sent(self):
        client = _client(STORY_JSON)
        service = StructuredResponseService(client, options=GenerationOptions(temperature=0.2))

        await service.attempt("You narrate.", HISTORY, STORY_TURN_FIELDS)

        prompt = client.generate.await_args.args[0]
        assert prompt.startswith("System: You narrate.\n\nUser: Open the door.")
        assert prompt.endswith(JSON_ONLY_DIRECTIVE)
        assert client.generate.await_args.kwargs["options"]["temperature"] == 0.2

    async def test_issue_trail_collects_every_recovery(self):
        text = '```json\n{"story": "A cave.", "choices": ["In", "Out", "Up", "Down", "Back", "Wait", "Dig"]}\n```'
        service = _service(_client(text))

        result = await service.attempt("sys", HISTORY, STORY_TURN_FIELDS)

        assert result.issues == [
            "Removed markdown json wrapper",
            "Reconstructed missing field: image_prompt",
            "Truncated choices from 7 to 6",
        ]
        assert result.reconstructed == ("image_prompt",)
        assert len(result.data["choices"]) == 6

    async def test_choices_not_inspected_when_not_requested(self):
        service = _service(_client('{"title": "x", "choices": ["only one"]}'))

        result = await service.attempt("sys", HISTORY, [FieldSpec("title")])

        assert result.data["choices"] == ["only one"]

    async def test_unparseable_text_raises_repair_error(self):
        service = _service(_client("I refuse."))

        with pytest.raises(JSONRepairError) as exc_info:
            await service.attempt("sys", HISTORY, [FieldSpec("title")])

        assert exc_info.value.raw == "I refuse."
        assert "Invalid JSON response from LLM" in str(exc_info.value)

    async def test_single_choice_raises(self):
        service = _service(_client('{"story": "x", "image_prompt": "y", "choices": ["a"]}'))

        with pytest.raises(ChoiceCountError):
            await service.attempt("sys", HISTORY, STORY_TURN_FIELDS)


# ── Retry coordinator ────────────────────────────────────────────────────────


@pytest.mark.unit
class TestRetryCoordinator:
    async def test_first_success_short_circuits(self):
        client = _client(STORY_JSON, STORY_JSON)
        sleep = RecordingSleep()

        result = await _service(client, sleep).request("sys", HISTORY, STORY_TURN_FIELDS)

        assert result.attempts == 1
        assert result.history == []
        assert client.generate.await_count == 1
        assert sleep.delays == []

    async def test_always_failing_makes_three_attempts_with_backoff(self):
        client = _client(
            EmptyResponseError(),
            JSONRepairError("bad"),
            SchemaValidationError(["story"]),
        )
        sleep = RecordingSleep()

        with pytest.raises(RetryExhaustedError) as exc_info:
            await _service(client, sleep, max_attempts=3).request(
                "sys", HISTORY, STORY_TURN_FIELDS
            )

        error = exc_info.value
        assert client.generate.await_count == 3
        assert sleep.delays == [1.0, 2.0]
        assert "3" in str(error)
        assert "Missing required fields: story" in str(error)
        assert isinstance(error.last_error, SchemaValidationError)
        assert [record.attempt for record in error.history] == [1, 2, 3]
        assert [record.delay for record in error.history] == [1.0, 2.0, 0.0]

    async def test_recovers_on_later_attempt(self):
        client = _client("not json at all", STORY_JSON)
        sleep = RecordingSleep()

        result = await _service(client, sleep).request("sys", HISTORY, STORY_TURN_FIELDS)

        assert result.attempts == 2
        assert len(result.history) == 1
        assert isinstance(result.history[0].error, JSONRepairError)
        assert sleep.delays == [1.0]

    async def test_attempts_are_not_merged(self):
        client = _client(
            '{"story": "partial", "choices": ["a"]}',
            '{"story": "second", "image_prompt": "p", "choices": ["a", "b", "c", "d"]}',
        )

        result = await _service(client).request("sys", HISTORY, STORY_TURN_FIELDS)

        assert result.data["story"] == "second"

    async def test_max_attempts_override(self):
        client = _client(EmptyResponseError(), EmptyResponseError(), EmptyResponseError())
        sleep = RecordingSleep()

        with pytest.raises(RetryExhaustedError, match="after 2 attempts"):
            await _service(client, sleep).request(
                "sys", HISTORY, STORY_TURN_FIELDS, max_attempts=2
            )

        assert sleep.delays == [1.0]

    async def test_exhaustion_keeps_error_kind(self):
        client = _client(JSONRepairError("x"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await _service(client, max_attempts=1).request("sys", HISTORY, [FieldSpec("a")])

        assert exc_info.value.kind.value == "parse_error"

    async def test_non_bridge_errors_propagate(self):
        client = _client(KeyError("bug"))

        with pytest.raises(KeyError):
            await _service(client).request("sys", HISTORY, [FieldSpec("a")])

    async def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            await _service(_client()).request("sys", HISTORY, [FieldSpec("a")], max_attempts=0)


# ── Module-level helper ──────────────────────────────────────────────────────


@pytest.mark.unit
class TestRequestStructured:
    @respx.mock
    async def test_end_to_end(self):
        route = respx.post(f"{OLLAMA_URL}/api/generate").mock(
            return_value=Response(200, json=generate_body(f"Sure! {STORY_JSON}"))
        )
        config = BridgeConfig(ollama=OllamaSettings(url=OLLAMA_URL, model=MODEL))

        result = await request_structured(config, "You narrate.", HISTORY, STORY_TURN_FIELDS)

        assert result.data["story"] == "The door creaks open."
        body = json.loads(route.calls.last.request.content)
        assert body["model"] == MODEL
        assert body["stream"] is False
        assert body["options"]["num_predict"] == 1000

    @respx.mock
    async def test_connection_failure_exhausts(self):
        respx.post(f"{OLLAMA_URL}/api/generate").mock(side_effect=httpx.ConnectError("refused"))
        config = BridgeConfig(
            ollama=OllamaSettings(url=OLLAMA_URL, model=MODEL),
            retry=RetrySettings(max_attempts=2, base_delay=0.0),
        )

        with pytest.raises(RetryExhaustedError) as exc_info:
            await request_structured(config, "sys", HISTORY, [FieldSpec("a")])

        assert "Failed to fetch" in str(exc_info.value)
        assert exc_info.value.kind.value == "network"

    @respx.mock
    async def test_undecodable_body_is_retried(self):
        route = respx.post(f"{OLLAMA_URL}/api/generate").mock(
            return_value=Response(200, content=b"not gzip", headers={"content-encoding": "gzip"})
        )
        config = BridgeConfig(
            ollama=OllamaSettings(url=OLLAMA_URL, model=MODEL),
            retry=RetrySettings(max_attempts=3, base_delay=0.0),
        )

        with pytest.raises(RetryExhaustedError) as exc_info:
            await request_structured(config, "sys", HISTORY, [FieldSpec("a")])

        assert route.call_count == 3
        assert exc_info.value.kind.value == "network"
