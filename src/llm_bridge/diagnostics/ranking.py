"""Fallback ordering of models for the connection test.

The order is decided purely from name substrings.  That encodes
assumptions about how model tags are spelled (``gemma2:2b``,
``llama2:13b``, ``gpt-oss:20b``) and will not generalise to every
naming scheme, so the heuristic lives behind a single ``RankFn`` that
callers can replace.

Tiers
-----
Positive tiers are large models, tried first as higher-quality
fallbacks (larger first).  Negative tiers are small, fast models kept as
last resorts (smaller first).  Tier ``0`` means the name is not
recognised and the model is not used as a fallback.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from llm_bridge.types import ModelCandidate

RankFn = Callable[[str], int]

# Checked in order; the first matching substring wins, so "12b" is seen
# before the "2b" it contains.
_LARGE_TIERS: tuple[tuple[str, int], ...] = (
    ("20b", 4),
    ("13b", 3),
    ("12b", 2),
    ("gpt-oss", 1),
)

_SMALL_TIERS: tuple[tuple[str, int], ...] = (
    ("2b", -1),
    ("phi", -2),
    ("gemma2", -3),
)


def size_tier(name: str) -> int:
    """Ordinal size rank of a model name (see module docstring)."""
    lowered = name.lower()
    for needle, tier in _LARGE_TIERS + _SMALL_TIERS:
        if needle in lowered:
            return tier
    return 0


def rank_candidates(
    requested: str,
    available: Iterable[str],
    *,
    rank: RankFn = size_tier,
) -> list[ModelCandidate]:
    """Order the models the connection test should try.

    The requested model always comes first.  Other recognised models
    follow, large before small; ties keep server listing order.  Each
    name appears at most once.
    """
    ordered = [ModelCandidate(requested, rank(requested))]
    seen = {requested}
    fallbacks: list[ModelCandidate] = []
    for name in available:
        if name in seen:
            continue
        seen.add(name)
        tier = rank(name)
        if tier != 0:
            fallbacks.append(ModelCandidate(name, tier))

    fallbacks.sort(key=lambda candidate: candidate.size_tier, reverse=True)
    ordered.extend(fallbacks)
    return ordered
