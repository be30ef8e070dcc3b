"""llm-bridge: structured JSON out of a local Ollama server.

Local language models are asked for JSON and answer with almost-JSON:
markdown fences, chatter before and after, trailing commas, missing
fields, a choice list that is too long.  This package sits between a
game and Ollama and turns those answers into dependable structured data,
retrying with backoff when an answer cannot be salvaged.

Entry points:

- :func:`llm_bridge.structured.request_structured` for one retried request.
- :class:`llm_bridge.diagnostics.ConnectionTester` for the settings screen.
- :func:`llm_bridge.diagnostics.classify_error` to explain a failure.

``__version__`` is read from the installed package metadata.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__: str = version("llm-bridge")
except PackageNotFoundError:
    __version__ = "0.1.0"
