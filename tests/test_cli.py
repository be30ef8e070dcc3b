"""
Unit tests for CLI module (llm_bridge/cli.py).

Tests cover:
- Command parsing and global overrides
- test-connection, models, show and generate commands
- Failure output (classified error on stderr, exit code 1)
"""

import argparse
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx
from httpx import Response

from llm_bridge import cli
from llm_bridge.config import BridgeConfig
from llm_bridge.errors import EmptyResponseError, RetryExhaustedError
from llm_bridge.types import AttemptRecord, ConnectionTestResult, StructuredResult
from tests.constants import MODEL, OLLAMA_URL, tags_body


def _args(**kwargs) -> argparse.Namespace:
    defaults = {
        "config": None,
        "url": OLLAMA_URL,
        "model": MODEL,
        "system": "You narrate.",
        "user": "Open the door.",
        "field": None,
        "story": False,
        "memories": False,
        "max_attempts": None,
        "name": None,
    }
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


# ============================================================================
# MAIN / PARSING TESTS
# ============================================================================


@pytest.mark.unit
def test_main_without_command_prints_help(capsys):
    assert cli.main([]) == 0
    assert "usage: llm-bridge" in capsys.readouterr().out


@pytest.mark.unit
def test_main_dispatches_with_overrides():
    with (
        patch("llm_bridge.cli.configure_logging") as mock_logging,
        patch("llm_bridge.cli.cmd_models", return_value=0) as mock_cmd,
    ):
        result = cli.main(["--url", "http://gpu-box:11434", "models"])

    assert result == 0
    mock_logging.assert_called_once()
    assert mock_cmd.call_args.args[0].url == "http://gpu-box:11434"


@pytest.mark.unit
def test_main_rejects_missing_config(tmp_path, capsys):
    result = cli.main(["--config", str(tmp_path / "nope.ini"), "models"])

    assert result == 1
    assert "Config file not found" in capsys.readouterr().err


@pytest.mark.unit
def test_load_applies_overrides():
    config = cli._load(_args(url="http://gpu-box:11434/", model="phi3:mini"))

    assert config.ollama.url == "http://gpu-box:11434"
    assert config.ollama.model == "phi3:mini"


@pytest.mark.unit
def test_main_loads_config_once():
    result = ConnectionTestResult(True, "ok", {})
    with (
        patch("llm_bridge.cli.load_config", return_value=BridgeConfig()) as mock_load,
        patch("llm_bridge.cli.configure_logging"),
        patch("llm_bridge.cli.ConnectionTester.run", new=AsyncMock(return_value=result)),
    ):
        assert cli.main(["test-connection"]) == 0

    assert mock_load.call_count == 1


@pytest.mark.unit
@pytest.mark.parametrize("value", ["0", "-2", "many"])
def test_generate_rejects_bad_max_attempts(value, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["generate", "--field", "a", "--max-attempts", value])

    assert exc_info.value.code == 2
    assert "--max-attempts" in capsys.readouterr().err


# ============================================================================
# TEST-CONNECTION COMMAND TESTS
# ============================================================================


@pytest.mark.unit
def test_cmd_test_connection_success(capsys):
    result = ConnectionTestResult(True, f"Connection successful! Model '{MODEL}' is ready.", {})
    with patch("llm_bridge.cli.ConnectionTester.run", new=AsyncMock(return_value=result)):
        assert cli.cmd_test_connection(_args()) == 0

    assert "Connection successful!" in capsys.readouterr().out


@pytest.mark.unit
def test_cmd_test_connection_failure_prints_details(capsys):
    result = ConnectionTestResult(
        False,
        f"Model '{MODEL}' not found. Available models: gemma2:2b",
        {"available_models": ["gemma2:2b"]},
    )
    with patch("llm_bridge.cli.ConnectionTester.run", new=AsyncMock(return_value=result)):
        assert cli.cmd_test_connection(_args()) == 1

    out = capsys.readouterr().out
    assert "not found" in out
    assert '"gemma2:2b"' in out


# ============================================================================
# MODELS / SHOW COMMAND TESTS
# ============================================================================


@pytest.mark.unit
@respx.mock
def test_cmd_models(capsys):
    respx.get(f"{OLLAMA_URL}/api/tags").mock(
        return_value=Response(200, json=tags_body(MODEL, "gemma2:2b"))
    )

    assert cli.cmd_models(_args()) == 0
    assert capsys.readouterr().out.splitlines() == [MODEL, "gemma2:2b"]


@pytest.mark.unit
@respx.mock
def test_cmd_models_unreachable(capsys):
    respx.get(f"{OLLAMA_URL}/api/tags").mock(side_effect=httpx.ConnectError("refused"))

    assert cli.cmd_models(_args()) == 1
    err = capsys.readouterr().err
    assert "Failed to fetch" in err
    assert '"kind": "network"' in err


@pytest.mark.unit
@respx.mock
def test_cmd_show(capsys):
    respx.post(f"{OLLAMA_URL}/api/show").mock(
        return_value=Response(200, json={"details": {"family": "gemma2"}, "context_length": 8192})
    )

    assert cli.cmd_show(_args(name="gemma2:2b")) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["name"] == "gemma2:2b"
    assert data["family"] == "gemma2"
    assert data["context_length"] == 8192


# ============================================================================
# GENERATE COMMAND TESTS
# ============================================================================


@pytest.mark.unit
def test_field_specs_story_and_extra():
    specs = cli._field_specs(_args(story=True, memories=True, field=["mood:string", "story"]))

    assert [spec.name for spec in specs] == ["story", "image_prompt", "choices", "new_memories", "mood"]


@pytest.mark.unit
def test_cmd_generate_requires_fields(capsys):
    assert cli.cmd_generate(_args()) == 1
    assert "--field or --story" in capsys.readouterr().err


@pytest.mark.unit
def test_cmd_generate_bad_field(capsys):
    assert cli.cmd_generate(_args(field=[":array"])) == 1
    assert "no name" in capsys.readouterr().err


@pytest.mark.unit
def test_cmd_generate_success(capsys):
    result = StructuredResult(
        data={"title": "The Gate"},
        issues=["Removed markdown json wrapper"],
    )
    with patch("llm_bridge.cli.request_structured", new=AsyncMock(return_value=result)) as mock_request:
        assert cli.cmd_generate(_args(field=["title"], max_attempts=2)) == 0

    captured = capsys.readouterr()
    assert json.loads(captured.out) == {"title": "The Gate"}
    assert "note: Removed markdown json wrapper" in captured.err
    config, system, history, fields = mock_request.await_args.args
    assert config.ollama.model == MODEL
    assert system == "You narrate."
    assert history[0].content == "Open the door."
    assert [spec.name for spec in fields] == ["title"]
    assert mock_request.await_args.kwargs["max_attempts"] == 2


@pytest.mark.unit
def test_cmd_generate_failure_is_classified(capsys):
    error = RetryExhaustedError(1, [AttemptRecord(1, EmptyResponseError())])
    with patch("llm_bridge.cli.request_structured", new=AsyncMock(side_effect=error)):
        assert cli.cmd_generate(_args(story=True)) == 1

    err = capsys.readouterr().err
    assert "Ollama API failed after 1 attempts" in err
    assert '"kind": "server_error"' in err
