"""GitHub Copilot chat exposed through an Ollama-compatible API."""

__version__ = "0.1.0"
