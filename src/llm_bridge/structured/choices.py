"""Domain rules for the ``choices`` field of a story turn.

The game presents ``choices`` as the player's branching options:

- fewer than 2   → unusable as a branching point; hard failure.
- 2 or 3         → accepted, with a warning (fewer than the preferred 4).
- 4 to 6         → accepted as-is.
- more than 6    → truncated to the first 6, order preserved.

Choices are never invented to top up a short list; the model decides
how many options make sense.
"""

from __future__ import annotations

import logging

from llm_bridge.errors import ChoiceCountError
from llm_bridge.types import StructuredResponse

logger = logging.getLogger(__name__)

CHOICES_FIELD = "choices"
MIN_CHOICES = 2
PREFERRED_MIN_CHOICES = 4
MAX_CHOICES = 6


def normalize_choices(
    response: StructuredResponse,
    *,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> list[str]:
    """Enforce the choice-count rules on ``response["choices"]`` in place.

    Call only when ``choices`` was requested; other responses are not
    inspected.

    Returns:
        Issue notes (soft warning or truncation); empty when the list was
        already within 4 to 6 elements.

    Raises:
        ChoiceCountError: If ``choices`` is not a list or has fewer than
            two elements.
    """
    log = log or logger
    choices = response.get(CHOICES_FIELD)

    if not isinstance(choices, list) or len(choices) < MIN_CHOICES:
        log.error("Invalid choices array: %r", choices)
        raise ChoiceCountError(choices)

    count = len(choices)
    if count < PREFERRED_MIN_CHOICES:
        log.warning(
            "Choices array has %d elements (fewer than preferred %d)", count, PREFERRED_MIN_CHOICES
        )
        return [f"Choices array has {count} elements (fewer than preferred {PREFERRED_MIN_CHOICES})"]

    if count > MAX_CHOICES:
        log.warning("Choices array has %d elements, truncating to first %d", count, MAX_CHOICES)
        response[CHOICES_FIELD] = choices[:MAX_CHOICES]
        return [f"Truncated choices from {count} to {MAX_CHOICES}"]

    log.debug("Choices array has %d elements (acceptable)", count)
    return []
