"""Request orchestration: message conversion, budgeting, completion engine."""

from llm_gateway.core.context import ContextBudgeter, count_tokens, truncate_messages
from llm_gateway.core.engine import CompletionEngine, CompletionSummary
from llm_gateway.core.messages import convert_message, convert_messages, parse_message
from llm_gateway.core.schema import default_for_schema, fill_missing_required

__all__ = [
    "CompletionEngine",
    "CompletionSummary",
    "ContextBudgeter",
    "convert_message",
    "convert_messages",
    "count_tokens",
    "default_for_schema",
    "fill_missing_required",
    "parse_message",
    "truncate_messages",
]
