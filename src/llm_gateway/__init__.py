"""LLM Gateway: streaming chat bridge to OpenAI-compatible inference servers."""

__version__ = "0.1.0"
