"""Required-field validation and best-effort reconstruction.

``validate_fields`` reports which requested fields are absent from a
parsed response.  ``reconstruct_missing_fields`` fills the gaps with
placeholders so the response stays usable instead of failing the call.

Reconstruction is a recovery, not a silent success: every synthesised
field is reported back to the caller (and logged at WARNING) so the
issue trail shows it happened.

When reconstruction is impossible
---------------------------------
Filling gaps only makes sense when the model produced *something* of the
requested shape.  The response is rejected with
:class:`~llm_bridge.errors.SchemaValidationError` when:

- the parsed value is not a JSON object, or
- none of the requested fields is present (placeholders would make up
  the entire response).
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Sequence
from typing import Any

from llm_bridge.errors import SchemaValidationError
from llm_bridge.types import FieldSpec, StructuredResponse, ValidationResult

logger = logging.getLogger(__name__)

_TYPE_PLACEHOLDERS: dict[str, Any] = {
    "string": "",
    "str": "",
    "text": "",
    "array": [],
    "list": [],
    "object": {},
    "dict": {},
    "number": 0,
    "integer": 0,
    "int": 0,
    "float": 0.0,
    "boolean": False,
    "bool": False,
}


def placeholder_for(spec: FieldSpec) -> Any:
    """Structurally valid stand-in value for a missing field."""
    if spec.default is not None:
        if isinstance(spec.default, tuple):
            return list(spec.default)
        return copy.deepcopy(spec.default)
    return copy.deepcopy(_TYPE_PLACEHOLDERS.get(spec.type.strip().lower()))


def validate_fields(parsed: Any, field_names: Sequence[str]) -> ValidationResult:
    """Check that every requested field name is a key of ``parsed``.

    A non-object value is missing every field.
    """
    if not isinstance(parsed, dict):
        return ValidationResult(valid=False, missing=frozenset(field_names))
    missing = frozenset(name for name in field_names if name not in parsed)
    return ValidationResult(valid=not missing, missing=missing)


def reconstruct_missing_fields(
    parsed: Any,
    fields: Sequence[FieldSpec],
    *,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> tuple[StructuredResponse, tuple[str, ...]]:
    """Validate ``parsed`` against ``fields`` and fill in what is missing.

    ``parsed`` is updated in place when it is a dict.

    Args:
        parsed: Value recovered by the repair engine.
        fields: The caller's requested fields.
        log:    Logger to report reconstruction on; defaults to this
                module's logger.

    Returns:
        ``(response, reconstructed_names)``.  ``reconstructed_names`` is
        empty when nothing was missing; otherwise it lists the
        synthesised fields in request order.

    Raises:
        SchemaValidationError: If ``parsed`` is not an object or carries
            none of the requested fields.
    """
    log = log or logger
    names = [spec.name for spec in fields]
    result = validate_fields(parsed, names)
    if result.valid:
        return parsed, ()

    if not isinstance(parsed, dict) or len(result.missing) == len(set(names)):
        log.error("Response carries none of the required fields %s", names)
        raise SchemaValidationError(result.missing, parsed=parsed)

    reconstructed: list[str] = []
    for spec in fields:
        if spec.name in result.missing and spec.name not in parsed:
            parsed[spec.name] = placeholder_for(spec)
            reconstructed.append(spec.name)

    log.warning("Reconstructed missing fields with placeholders: %s", ", ".join(reconstructed))
    return parsed, tuple(reconstructed)
