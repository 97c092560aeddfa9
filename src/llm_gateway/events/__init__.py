"""Event bus used to publish streamed responses."""

from llm_gateway.events.bus import EventBus

__all__ = ["EventBus"]
