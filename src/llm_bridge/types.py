"""Value types shared by the structured-output pipeline and the diagnostics.

Every type here is created per call and discarded once the call resolves.
Request-side types (``Message``, ``FieldSpec``) are frozen; result types
that the pipeline fills in step by step (``RepairResult``) are not.

``StructuredResponse`` is deliberately an open mapping rather than a
fixed class: the caller declares the shape it wants with a list of
:class:`FieldSpec` objects and the validator checks the parsed value
against that list.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant"]

StructuredResponse = dict[str, Any]


@dataclass(frozen=True)
class Message:
    """One turn of conversation context.

    Attributes:
        role:    ``"system"``, ``"user"`` or ``"assistant"``.
        content: The text of the turn.
    """

    role: Role
    content: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Build a message from a ``{"role": ..., "content": ...}`` dict."""
        role = str(data.get("role", "user"))
        if role not in ("system", "user", "assistant"):
            raise ValueError(f"Unknown message role: {role!r}")
        return cls(role=role, content=str(data.get("content", "")))  # type: ignore[arg-type]


@dataclass(frozen=True)
class FieldSpec:
    """A field the caller expects in the structured response.

    ``type`` is an advisory hint (``"string"``, ``"array"``, ...) used only
    to pick a placeholder when the field has to be reconstructed.  It is
    never enforced against the parsed value.

    Attributes:
        name:    Key expected in the response object.
        type:    Advisory type hint.
        default: Explicit placeholder used on reconstruction instead of
                 the type-derived one.
    """

    name: str
    type: str = "string"
    default: Any = None

    @classmethod
    def parse(cls, text: str) -> FieldSpec:
        """Parse ``"name"`` or ``"name:type"`` (the CLI ``--field`` syntax)."""
        name, _, type_hint = text.partition(":")
        name = name.strip()
        if not name:
            raise ValueError(f"Field spec has no name: {text!r}")
        return cls(name=name, type=type_hint.strip() or "string")


# Story turn produced by the adventure prompt.  The defaults are what the
# game shows when the model drops a field, so a turn stays playable.
STORY_TURN_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec(
        "story",
        "string",
        "The story continues, but the details are unclear at this moment.",
    ),
    FieldSpec(
        "image_prompt",
        "string",
        "A mysterious scene with unclear details, shadows and ambient lighting",
    ),
    FieldSpec(
        "choices",
        "array",
        ("Continue exploring", "Investigate further", "Take action", "Proceed carefully"),
    ),
)

NEW_MEMORIES_FIELD = FieldSpec("new_memories", "array", ())


@dataclass
class RepairResult:
    """Outcome of running the JSON repair engine over raw model text.

    Attributes:
        success: Whether a JSON value was recovered.
        parsed:  The recovered value; ``None`` unless ``success``.
        cleaned: The last candidate string handed to the JSON parser.
        error:   Parser error message when ``success`` is ``False``.
        issues:  Ordered notes describing every corrective action taken.
                 Empty when the text was already valid JSON.
    """

    success: bool
    parsed: Any = None
    cleaned: str = ""
    error: str = ""
    issues: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationResult:
    """Which required fields are absent from a parsed response."""

    valid: bool
    missing: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ErrorClassification:
    """User-facing interpretation of a failure.

    Attributes:
        kind:         ``network``, ``not_found``, ``server_error``,
                      ``parse_error``, ``validation_error`` or ``unknown``.
        user_message: Text suitable for showing to a player.
        retryable:    Whether offering a retry makes sense.
        action:       ``none``, ``check_connection``, ``check_url`` or
                      ``retry``.
    """

    kind: str
    user_message: str
    retryable: bool
    action: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "action": self.action,
        }


@dataclass(frozen=True)
class ModelCandidate:
    """A model considered during the connection test.

    ``size_tier`` is an ordinal derived from the model name: positive for
    large models (higher is larger), negative for small fallbacks (closer
    to zero is smaller) and ``0`` for names the heuristic does not know.
    """

    name: str
    size_tier: int


@dataclass(frozen=True)
class AttemptRecord:
    """One failed attempt made by the retry coordinator.

    Attributes:
        attempt: 1-based attempt number.
        error:   The exception that ended the attempt.
        delay:   Seconds slept before the next attempt (``0.0`` after the
                 final attempt).
    """

    attempt: int
    error: BaseException
    delay: float = 0.0


@dataclass
class StructuredResult:
    """Successful result of :func:`~llm_bridge.structured.service.request_structured`.

    Attributes:
        data:          The validated response.  Every requested field is
                       present.
        issues:        Diagnostic trail from the successful attempt (repair
                       notes, reconstructed fields, choice warnings).
        attempts:      Number of attempts it took, including this one.
        history:       Failed attempts that came before the successful one.
        reconstructed: Names of fields synthesised because the model
                       omitted them.
        raw_text:      Model text of the successful attempt.
    """

    data: StructuredResponse
    issues: list[str] = field(default_factory=list)
    attempts: int = 1
    history: list[AttemptRecord] = field(default_factory=list)
    reconstructed: tuple[str, ...] = ()
    raw_text: str = ""


@dataclass
class ConnectionTestResult:
    """Outcome of :meth:`~llm_bridge.diagnostics.connection.ConnectionTester.run`.

    ``details`` carries the diagnostics the settings screen renders:
    ``available_models``, and on success ``selected_model``,
    ``response_time`` and ``response``; on exhaustion ``tested_models``.
    """

    success: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelMetadata:
    """Model facts reported by Ollama's ``/api/show`` endpoint."""

    name: str
    context_length: int | None = None
    embedding_length: int | None = None
    parameters: str | None = None
    quantization_level: str | None = None
    format: str | None = None
    family: str | None = None
    parameter_size: str | None = None
    modified_at: str | None = None
    size: int | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any], *, fallback_name: str) -> ModelMetadata:
        """Read metadata fields from a ``/api/show`` body.

        Newer Ollama releases nest most facts under ``details`` and
        ``model_info``; flat keys win when both are present.
        """
        details = data.get("details") or {}
        model_info = data.get("model_info") or {}

        def _lookup(key: str) -> Any:
            if data.get(key) is not None:
                return data[key]
            if details.get(key) is not None:
                return details[key]
            for info_key, value in model_info.items():
                if info_key.endswith(f".{key}"):
                    return value
            return None

        context_length = _lookup("context_length")
        embedding_length = _lookup("embedding_length")
        size = _lookup("size")
        return cls(
            name=str(data.get("name") or fallback_name),
            context_length=int(context_length) if context_length is not None else None,
            embedding_length=int(embedding_length) if embedding_length is not None else None,
            parameters=_lookup("parameters"),
            quantization_level=_lookup("quantization_level"),
            format=_lookup("format"),
            family=_lookup("family"),
            parameter_size=_lookup("parameter_size"),
            modified_at=_lookup("modified_at"),
            size=int(size) if size is not None else None,
        )
