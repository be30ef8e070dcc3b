"""HTTP transport to the Ollama server."""

from llm_bridge.transport.client import OllamaClient, sanitize_for_log

__all__ = ["OllamaClient", "sanitize_for_log"]
