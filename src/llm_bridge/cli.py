"""
Command-line interface for llm-bridge.

Provides commands for checking an Ollama setup and trying structured
requests by hand:
- test-connection: Run the three-stage connection and model test
- models: List the models installed on the server
- show: Print metadata for one model
- generate: Run one retried structured request and print the JSON

Usage:
    llm-bridge test-connection [--url URL] [--model MODEL]
    llm-bridge models
    llm-bridge show [NAME]
    llm-bridge generate --story --system "You narrate." --user "Open the door."
    llm-bridge generate --field title:string --field tags:array --user "..."

Environment Variables:
    LLM_BRIDGE_CONFIG: Path of the INI file (default: config/llm_bridge.ini)
    LLM_BRIDGE_OLLAMA_URL: Ollama server URL (default: http://localhost:11434)
    LLM_BRIDGE_MODEL: Model tag (default: gpt-oss:20b)
"""

import argparse
import asyncio
import dataclasses
import json
import sys

from llm_bridge.config import BridgeConfig, configure_logging, load_config
from llm_bridge.diagnostics.classifier import classify_error
from llm_bridge.diagnostics.connection import ConnectionTester
from llm_bridge.errors import BridgeError
from llm_bridge.structured.service import request_structured
from llm_bridge.transport.client import OllamaClient
from llm_bridge.types import NEW_MEMORIES_FIELD, STORY_TURN_FIELDS, FieldSpec, Message


def _load(args: argparse.Namespace) -> BridgeConfig:
    """Load configuration and apply ``--url`` / ``--model`` overrides.

    Reuses the configuration ``main`` already loaded, if any.
    """
    loaded = getattr(args, "bridge_config", None)
    if loaded is not None:
        return loaded
    config = load_config(getattr(args, "config", None))
    overrides = {}
    if getattr(args, "url", None):
        overrides["url"] = args.url
    if getattr(args, "model", None):
        overrides["model"] = args.model
    if overrides:
        config = dataclasses.replace(config, ollama=dataclasses.replace(config.ollama, **overrides))
    return config


def _positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{text}'") from None
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return value


def _print_failure(error: BaseException) -> None:
    classification = classify_error(error)
    print(f"Error: {error}", file=sys.stderr)
    print(json.dumps(classification.to_dict(), indent=2), file=sys.stderr)


def _field_specs(args: argparse.Namespace) -> list[FieldSpec]:
    fields: list[FieldSpec] = []
    if getattr(args, "story", False):
        fields.extend(STORY_TURN_FIELDS)
        if getattr(args, "memories", False):
            fields.append(NEW_MEMORIES_FIELD)
    for text in getattr(args, "field", None) or []:
        spec = FieldSpec.parse(text)
        if spec.name not in {existing.name for existing in fields}:
            fields.append(spec)
    return fields


def cmd_test_connection(args: argparse.Namespace) -> int:
    """
    Test the configured server and model.

    Returns:
        0 if a model answered, 1 otherwise
    """
    config = _load(args)
    tester = ConnectionTester(config.probe)
    result = asyncio.run(tester.run(config.ollama.url, config.ollama.model))

    print(result.message)
    if result.details:
        print(json.dumps(result.details, indent=2))
    return 0 if result.success else 1


def cmd_models(args: argparse.Namespace) -> int:
    """
    List installed models, one per line.

    Returns:
        0 on success, 1 on error
    """
    config = _load(args)

    async def _list() -> list[str]:
        async with OllamaClient(config.ollama) as client:
            return await client.list_models()

    try:
        names = asyncio.run(_list())
    except BridgeError as exc:
        _print_failure(exc)
        return 1

    for name in names:
        print(name)
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    """
    Print ``/api/show`` metadata for a model as JSON.

    Returns:
        0 on success, 1 on error
    """
    config = _load(args)

    async def _show():
        async with OllamaClient(config.ollama) as client:
            return await client.show_model(args.name)

    try:
        metadata = asyncio.run(_show())
    except BridgeError as exc:
        _print_failure(exc)
        return 1

    print(json.dumps(dataclasses.asdict(metadata), indent=2))
    return 0


def cmd_generate(args: argparse.Namespace) -> int:
    """
    Run one structured request and print the validated JSON.

    Repair notes go to stderr so stdout stays machine-readable.

    Returns:
        0 on success, 1 on error or bad arguments
    """
    try:
        fields = _field_specs(args)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if not fields:
        print("Error: request at least one field with --field or --story", file=sys.stderr)
        return 1

    config = _load(args)
    history = [Message(role="user", content=args.user)] if args.user else []

    try:
        result = asyncio.run(
            request_structured(
                config,
                args.system,
                history,
                fields,
                max_attempts=args.max_attempts,
            )
        )
    except BridgeError as exc:
        _print_failure(exc)
        return 1

    for issue in result.issues:
        print(f"note: {issue}", file=sys.stderr)
    print(json.dumps(result.data, indent=2, ensure_ascii=False))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="llm-bridge",
        description="llm-bridge - structured JSON from a local Ollama server",
    )
    parser.add_argument("--config", type=str, help="INI file (default: LLM_BRIDGE_CONFIG env var)")
    parser.add_argument("--url", type=str, help="Ollama server URL override")
    parser.add_argument("--model", type=str, help="Model tag override")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    test_parser = subparsers.add_parser(
        "test-connection",
        help="Test the server and model",
        description=(
            "Check that the server is reachable, the model is installed and a "
            "model answers a short prompt. Falls back to other installed models."
        ),
    )
    test_parser.set_defaults(func=cmd_test_connection)

    models_parser = subparsers.add_parser("models", help="List installed models")
    models_parser.set_defaults(func=cmd_models)

    show_parser = subparsers.add_parser("show", help="Show model metadata")
    show_parser.add_argument("name", nargs="?", help="Model tag (default: configured model)")
    show_parser.set_defaults(func=cmd_show)

    generate_parser = subparsers.add_parser(
        "generate",
        help="Run one structured request",
        description="Ask the model for a JSON object with the requested fields.",
    )
    generate_parser.add_argument("--system", default="", help="System prompt")
    generate_parser.add_argument("--user", default="", help="User turn")
    generate_parser.add_argument(
        "--field",
        action="append",
        metavar="NAME[:TYPE]",
        help="Required field; may be repeated (TYPE: string, array, object, number, boolean)",
    )
    generate_parser.add_argument(
        "--story",
        action="store_true",
        help="Require the story turn fields (story, image_prompt, choices)",
    )
    generate_parser.add_argument(
        "--memories",
        action="store_true",
        help="With --story, also require new_memories",
    )
    generate_parser.add_argument(
        "--max-attempts",
        type=_positive_int,
        help="Attempts before giving up (default: retry.max_attempts)",
    )
    generate_parser.set_defaults(func=cmd_generate)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        config = _load(args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    configure_logging(config.logging)
    args.bridge_config = config

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
