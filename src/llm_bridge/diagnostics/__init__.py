"""Connection testing and error classification."""

from llm_bridge.diagnostics.classifier import classify_error
from llm_bridge.diagnostics.connection import ConnectionTester, probe_connection
from llm_bridge.diagnostics.ranking import rank_candidates, size_tier

__all__ = [
    "ConnectionTester",
    "classify_error",
    "rank_candidates",
    "size_tier",
    "probe_connection",
]
