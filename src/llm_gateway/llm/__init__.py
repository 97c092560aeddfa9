"""HTTP client, retrying transport and stream parsing."""

from llm_gateway.llm.client import GatewayClient, build_headers
from llm_gateway.llm.json_repair import repair_json
from llm_gateway.llm.response_parser import EventStreamDecoder, ToolCallAccumulator
from llm_gateway.llm.transport import RetryingTransport, RetryPolicy, backoff_delay

__all__ = [
    "EventStreamDecoder",
    "GatewayClient",
    "RetryPolicy",
    "RetryingTransport",
    "ToolCallAccumulator",
    "backoff_delay",
    "build_headers",
    "repair_json",
]
