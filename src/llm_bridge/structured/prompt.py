"""Prompt assembly for Ollama's ``/api/generate`` endpoint.

``/api/generate`` takes one flat prompt string rather than a message list,
so the system prompt and the conversation history are rendered into a
single transcript.  Only two speaker labels are used: ``System:`` for the
system turn and ``User:`` for everything else.  Small local models follow
this two-label transcript more reliably than one that also labels their
own earlier turns.

The trailing directive is the single most effective guard against prose
and markdown wrappers around the JSON object; the repair engine handles
whatever still slips through.
"""

from __future__ import annotations

from collections.abc import Sequence

from llm_bridge.types import Message

JSON_ONLY_DIRECTIVE = (
    "Assistant: RESPOND WITH ONLY A COMPLETE JSON OBJECT. NO OTHER TEXT. "
    "NO EXPLANATIONS. NO MARKDOWN. JUST THE JSON."
)

_TURN_SEPARATOR = "\n\n"


def _render_turn(message: Message) -> str:
    label = "System: " if message.role == "system" else "User: "
    return f"{label}{message.content}"


def build_prompt(system_prompt: str, history: Sequence[Message]) -> str:
    """Render a system prompt and conversation history as one prompt string.

    Pure and deterministic: identical inputs always produce byte-identical
    output.

    Args:
        system_prompt: Instructions placed first, as a ``System:`` turn.
        history:       Conversation so far, oldest first.

    Returns:
        The transcript, turns separated by blank lines, ending with the
        JSON-only directive.
    """
    turns = [Message(role="system", content=system_prompt), *history]
    transcript = _TURN_SEPARATOR.join(_render_turn(turn) for turn in turns)
    return f"{transcript}{_TURN_SEPARATOR}{JSON_ONLY_DIRECTIVE}"
