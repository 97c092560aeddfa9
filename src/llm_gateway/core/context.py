"""Token budgeting for outgoing requests.

Token counts are approximated as ``ceil(chars / 4)``.  The budgeter decides
which messages fit in the input budget and how many output tokens the
request may ask for.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Sequence

from llm_gateway.config import GatewayConfig
from llm_gateway.types import ChatMessage, TruncationDecision, dumps_compact

_logger = logging.getLogger(__name__)

# Rough chars-per-token ratio for budget estimation
_CHARS_PER_TOKEN = 4

SAFETY_MARGIN = 256
MIN_OUTPUT_TOKENS = 64
# Inflation applied to estimates where under-counting would overflow
_ESTIMATE_INFLATION = 1.2


def estimate_tokens(text: str) -> int:
    """Rough token count estimate."""
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def message_text(message: dict[str, Any]) -> str:
    """Text a message contributes to the prompt, tool calls included."""
    content = message.get("content")
    if isinstance(content, str):
        text = content
    elif content:
        text = dumps_compact(content)
    else:
        text = ""
    if message.get("tool_calls"):
        text += dumps_compact(message["tool_calls"])
    return text


def estimate_message_tokens(message: dict[str, Any]) -> int:
    return estimate_tokens(message_text(message))


def estimate_tools_tokens(tools: Sequence[dict[str, Any]] | None) -> int:
    if not tools:
        return 0
    return estimate_tokens(dumps_compact(list(tools)))


def truncate_messages(
    messages: Sequence[dict[str, Any]],
    max_tokens: int,
) -> TruncationDecision:
    """Keep the first message plus as many recent messages as fit.

    Messages are added newest to oldest and the walk stops at the first one
    that does not fit, so the kept tail is contiguous.
    """
    if not messages:
        return TruncationDecision(messages=[], total_tokens=0, truncated=False)

    message_tokens = [estimate_message_tokens(m) for m in messages]
    total = sum(message_tokens)
    if total <= max_tokens:
        return TruncationDecision(
            messages=list(messages), total_tokens=total, truncated=False,
        )

    _logger.info(
        "Context overflow: %d tokens > %d limit. Truncating...", total, max_tokens,
    )

    used = message_tokens[0]
    start = len(messages)
    for i in range(len(messages) - 1, 0, -1):
        if used + message_tokens[i] > max_tokens:
            break
        used += message_tokens[i]
        start = i

    kept = [messages[0], *messages[start:]]
    _logger.info(
        "Truncated: kept %d/%d messages, ~%d tokens", len(kept), len(messages), used,
    )
    return TruncationDecision(messages=kept, total_tokens=used, truncated=True)


@dataclass(frozen=True)
class BudgetPlan:
    """Outcome of budgeting one request."""

    decision: TruncationDecision
    input_budget: int
    input_tokens: int
    tools_tokens: int
    max_output_tokens: int

    @property
    def messages(self) -> list[dict[str, Any]]:
        return self.decision.messages


class ContextBudgeter:
    """Fit a conversation and its tool definitions into the context window.

    Usage::

        budgeter = ContextBudgeter(config)
        plan = budgeter.plan(messages, tools)
        request["messages"] = plan.messages
        request["max_tokens"] = plan.max_output_tokens
    """

    def __init__(self, config: GatewayConfig) -> None:
        self.context_window = config.max_context_tokens
        self.max_output_tokens = config.max_output_tokens

    @property
    def desired_output_tokens(self) -> int:
        return min(self.max_output_tokens, self.context_window // 2)

    def input_budget(self, tools: Sequence[dict[str, Any]] | None = None) -> int:
        """Tokens available to messages once output, tools and margin are reserved."""
        tools_estimate = 0
        if tools:
            tools_estimate = math.ceil(
                len(dumps_compact(list(tools))) / _CHARS_PER_TOKEN * _ESTIMATE_INFLATION,
            )
        return (
            self.context_window
            - self.desired_output_tokens
            - tools_estimate
            - SAFETY_MARGIN
        )

    def safe_output_tokens(self, input_tokens: int, tools_tokens: int = 0) -> int:
        """Output ceiling for the request, never below ``MIN_OUTPUT_TOKENS``."""
        conservative = math.ceil((input_tokens + tools_tokens) * _ESTIMATE_INFLATION)
        ceiling = min(
            self.max_output_tokens,
            math.floor(self.context_window - conservative - SAFETY_MARGIN),
        )
        return max(MIN_OUTPUT_TOKENS, ceiling)

    def plan(
        self,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[dict[str, Any]] | None = None,
    ) -> BudgetPlan:
        budget = self.input_budget(tools)
        decision = truncate_messages(messages, budget)
        if decision.truncated:
            _logger.warning(
                "Truncated conversation from %d to %d messages to fit context limit",
                len(messages), len(decision.messages),
            )

        input_text = "\n".join(message_text(m) for m in decision.messages)
        input_tokens = estimate_tokens(input_text)
        tools_tokens = estimate_tools_tokens(tools)
        max_output = self.safe_output_tokens(input_tokens, tools_tokens)

        _logger.debug(
            "Token estimate: input=%d, tools=%d, model_context=%d, chosen_max_tokens=%d",
            input_tokens, tools_tokens, self.context_window, max_output,
        )
        return BudgetPlan(
            decision=decision,
            input_budget=budget,
            input_tokens=input_tokens,
            tools_tokens=tools_tokens,
            max_output_tokens=max_output,
        )


def count_tokens(value: str | ChatMessage) -> int:
    """Estimate tokens for host text or the text parts of a host message."""
    if isinstance(value, ChatMessage):
        return estimate_tokens(value.text)
    return estimate_tokens(value)
