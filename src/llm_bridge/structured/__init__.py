"""Prompt, repair, validation and retry pipeline for structured responses."""

from llm_bridge.structured.choices import normalize_choices
from llm_bridge.structured.prompt import JSON_ONLY_DIRECTIVE, build_prompt
from llm_bridge.structured.repair import repair_json
from llm_bridge.structured.service import StructuredResponseService, request_structured
from llm_bridge.structured.validator import reconstruct_missing_fields, validate_fields

__all__ = [
    "JSON_ONLY_DIRECTIVE",
    "StructuredResponseService",
    "build_prompt",
    "normalize_choices",
    "reconstruct_missing_fields",
    "repair_json",
    "request_structured",
    "validate_fields",
]
