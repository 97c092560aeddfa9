"""CompletionEngine: drives one chat request end to end.

Per request:
1. Bind the configuration snapshot current at request start.
2. Convert host messages and tools to the OpenAI shape.
3. Budget tokens (truncate history, choose ``max_tokens``).
4. Stream through ``GatewayClient`` and surface text as it arrives.
5. Repair each finalized tool call's arguments and fill required
   properties from the tool schema.
6. Reply with a diagnostic when the model produced nothing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, AsyncGenerator, Literal, Sequence, Union

import httpx

from llm_gateway.config import GatewayConfig
from llm_gateway.errors import GatewayError, RequestCancelledError
from llm_gateway.events.bus import EventBus
from llm_gateway.llm.client import GatewayClient, make_http_client
from llm_gateway.llm.json_repair import repair_json
from llm_gateway.types import (
    AgentEvent,
    ChatMessage,
    EventType,
    FinalizedToolCall,
    ModelInfo,
    TextPart,
    ToolCallPart,
    ToolDefinition,
)

from .context import BudgetPlan, ContextBudgeter, count_tokens
from .messages import convert_messages, drop_orphan_tool_results, parse_message
from .schema import fill_missing_required

_logger = logging.getLogger(__name__)

MODEL_FAMILY = "local-model-provider"

ToolMode = Literal["auto", "required"]
ResponsePart = Union[TextPart, ToolCallPart]

_REQUEST_LOG_LIMIT = 2000
_ARGUMENT_LOG_LIMIT = 1000
_TOOL_FORMAT_MARKERS = ("HarmonyError", "unexpected tokens")


# ---------------------------------------------------------------------------
# Model cache
# ---------------------------------------------------------------------------

@dataclass
class ModelCache:
    """Model list with a TTL.  ``ttl <= 0`` disables caching."""

    ttl: float
    models: list[ModelInfo] | None = None
    fetched_at: float = 0.0

    def get(self, now: float) -> list[ModelInfo] | None:
        if self.models is None or self.ttl <= 0:
            return None
        if now - self.fetched_at >= self.ttl:
            return None
        return self.models

    def store(self, models: list[ModelInfo], now: float) -> None:
        self.models = models
        self.fetched_at = now

    def invalidate(self) -> None:
        self.models = None
        self.fetched_at = 0.0


# ---------------------------------------------------------------------------
# Request preparation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PreparedRequest:
    """A request body plus what the engine needs to post-process it."""

    body: dict[str, Any]
    plan: BudgetPlan
    tool_schemas: dict[str, Any]
    message_count: int

    @property
    def tool_count(self) -> int:
        return len(self.body.get("tools", []))


@dataclass(frozen=True)
class CompletionSummary:
    model: str
    text_chars: int
    tool_calls: int
    latency_ms: float
    cancelled: bool = False


def _as_tool(tool: ToolDefinition | dict[str, Any]) -> ToolDefinition:
    if isinstance(tool, ToolDefinition):
        return tool
    schema = tool.get("inputSchema", tool.get("input_schema", tool.get("parameters")))
    return ToolDefinition(
        name=str(tool["name"]),
        description=str(tool.get("description") or ""),
        input_schema=schema,
    )


def _as_message(message: ChatMessage | dict[str, Any]) -> ChatMessage:
    if isinstance(message, ChatMessage):
        return message
    return parse_message(message)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class CompletionEngine:
    """Orchestrates budgeting, streaming, and tool-call repair.

    Parameters
    ----------
    config:
        Initial configuration snapshot.  Replace it with ``update_config()``;
        requests already running keep the snapshot they started with.
    http_client:
        Optional shared ``httpx.AsyncClient``; by default one is created and
        closed by ``close()``.
    """

    def __init__(
        self,
        config: GatewayConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_http = http_client is None
        self._http = http_client or make_http_client(config)
        self._models = ModelCache(ttl=config.model_cache_ttl)

    # ------------------------------------------------------------------
    # Configuration and model metadata
    # ------------------------------------------------------------------

    @property
    def config(self) -> GatewayConfig:
        return self._config

    def update_config(self, config: GatewayConfig) -> None:
        """Swap in a new snapshot and drop cached model metadata."""
        self._config = config
        self._models = ModelCache(ttl=config.model_cache_ttl)
        _logger.info("Configuration reloaded")

    def invalidate_models(self) -> None:
        self._models.invalidate()

    async def provide_models(
        self,
        *,
        refresh: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> list[ModelInfo]:
        """Models advertised by the server, served from cache while fresh.

        Raises
        ------
        GatewayError
            If the server cannot be reached.
        """
        config = self._config
        cache = self._models
        now = time.monotonic()
        if refresh:
            cache.invalidate()
        cached = cache.get(now)
        if cached is not None:
            _logger.debug(
                "Using cached models (%d models, cache age: %.1fs)",
                len(cached), now - cache.fetched_at,
            )
            return cached

        _logger.info("Fetching models from inference server...")
        client = GatewayClient(config, self._http)
        try:
            ids = await client.fetch_models(cancel_event)
        except GatewayError as e:
            _logger.error("Failed to fetch models: %s", e)
            raise

        models = [
            ModelInfo(
                id=model_id,
                name=model_id,
                family=MODEL_FAMILY,
                max_input_tokens=config.max_context_tokens,
                max_output_tokens=config.max_output_tokens,
                tool_calling=config.enable_tool_calling,
            )
            for model_id in ids
        ]
        cache.store(models, now)
        _logger.info("Found %d models: %s", len(models), ", ".join(ids))
        return models

    def count_tokens(self, value: str | ChatMessage) -> int:
        return count_tokens(value)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def prepare_request(
        self,
        model_id: str,
        messages: Sequence[ChatMessage | dict[str, Any]],
        *,
        tools: Sequence[ToolDefinition | dict[str, Any]] | None = None,
        tool_mode: ToolMode | None = None,
        model_options: dict[str, Any] | None = None,
        config: GatewayConfig | None = None,
    ) -> PreparedRequest:
        """Build the request body for *model_id* under one config snapshot."""
        config = config or self._config

        converted = convert_messages(_as_message(m) for m in messages)
        openai_messages = [m.to_openai() for m in converted]
        _logger.debug("Converted to %d OpenAI messages", len(openai_messages))
        for i, msg in enumerate(openai_messages, start=1):
            _logger.debug(
                "  Message %d: role=%s, hasContent=%s, hasToolCalls=%s, toolCallId=%s",
                i, msg["role"], bool(msg.get("content")),
                bool(msg.get("tool_calls")), msg.get("tool_call_id", "none"),
            )

        tool_payload: list[dict[str, Any]] = []
        tool_schemas: dict[str, Any] = {}
        if config.enable_tool_calling and tools:
            for tool in map(_as_tool, tools):
                tool_schemas[tool.name] = tool.input_schema
                tool_payload.append(tool.to_openai())
                required = (tool.input_schema or {}).get("required")
                _logger.debug(
                    "Tool: %s (required: %s)", tool.name,
                    ", ".join(required) if isinstance(required, list) else "none",
                )

        plan = ContextBudgeter(config).plan(openai_messages, tool_payload or None)
        outgoing = drop_orphan_tool_results(plan.messages)

        body: dict[str, Any] = {
            "model": model_id,
            "messages": outgoing,
            "max_tokens": plan.max_output_tokens,
            "temperature": config.agent_temperature if tool_payload else config.temperature,
            "top_p": config.top_p,
            "frequency_penalty": config.frequency_penalty,
            "presence_penalty": config.presence_penalty,
        }
        if tool_payload:
            body["tools"] = tool_payload
            if tool_mode is not None:
                body["tool_choice"] = "required" if tool_mode == "required" else "auto"
            body["parallel_tool_calls"] = config.parallel_tool_calling
            _logger.info(
                "Sending %d tools to model (parallel: %s)",
                len(tool_payload), config.parallel_tool_calling,
            )
        if model_options:
            body.update(model_options)

        debug_request = json.dumps(body, indent=2, ensure_ascii=False)
        if len(debug_request) > _REQUEST_LOG_LIMIT:
            _logger.debug("Request (truncated): %s...", debug_request[:_REQUEST_LOG_LIMIT])
        else:
            _logger.debug("Request: %s", debug_request)

        return PreparedRequest(
            body=body,
            plan=plan,
            tool_schemas=tool_schemas,
            message_count=len(openai_messages),
        )

    # ------------------------------------------------------------------
    # Responding
    # ------------------------------------------------------------------

    async def respond(
        self,
        model_id: str,
        messages: Sequence[ChatMessage | dict[str, Any]],
        *,
        tools: Sequence[ToolDefinition | dict[str, Any]] | None = None,
        tool_mode: ToolMode | None = None,
        model_options: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[ResponsePart, None]:
        """Stream the model's reply as ``TextPart`` and ``ToolCallPart`` items.

        Raises
        ------
        GatewayError
            On a terminal transport failure.  Caller cancellation ends the
            stream quietly instead.
        """
        config = self._config
        _logger.info("Sending chat request to model: %s", model_id)
        _logger.debug(
            "API key configured: %s", "yes" if config.has_credential else "no",
        )

        prepared = self.prepare_request(
            model_id, messages,
            tools=tools, tool_mode=tool_mode, model_options=model_options,
            config=config,
        )
        client = GatewayClient(config, self._http)

        text_chars = 0
        tool_calls = 0
        stream = client.stream_chat_completion(prepared.body, cancel_event)
        try:
            async for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    break
                if chunk.content:
                    text_chars += len(chunk.content)
                    yield TextPart(chunk.content)
                for call in chunk.finished_tool_calls:
                    tool_calls += 1
                    repaired = self._repair_call(call, prepared.tool_schemas)
                    yield ToolCallPart(
                        call_id=repaired.id, name=repaired.name, input=repaired.parsed or {},
                    )
        except RequestCancelledError:
            _logger.info("Chat request cancelled before a response arrived")
            return
        except GatewayError as e:
            self._log_failure(e)
            raise
        finally:
            await stream.aclose()

        if cancel_event is not None and cancel_event.is_set():
            _logger.info("Chat request cancelled")
            return

        _logger.info(
            "Completed chat request, received %d characters, %d tool calls",
            text_chars, tool_calls,
        )
        if text_chars == 0 and tool_calls == 0:
            yield TextPart(self._empty_response_text(model_id, prepared, config))

    async def dispatch(
        self,
        sink: EventBus,
        model_id: str,
        messages: Sequence[ChatMessage | dict[str, Any]],
        *,
        tools: Sequence[ToolDefinition | dict[str, Any]] | None = None,
        tool_mode: ToolMode | None = None,
        model_options: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> CompletionSummary:
        """Run ``respond()`` and publish every part to *sink*.

        Terminal errors are published as ``LLM_ERROR`` and re-raised.
        """
        start = time.monotonic()
        text_chars = 0
        tool_calls = 0
        try:
            async for part in self.respond(
                model_id, messages,
                tools=tools, tool_mode=tool_mode, model_options=model_options,
                cancel_event=cancel_event,
            ):
                if isinstance(part, TextPart):
                    text_chars += len(part.value)
                    await sink.emit(
                        AgentEvent(EventType.LLM_STREAMING, {"text": part.value}),
                    )
                else:
                    tool_calls += 1
                    await sink.emit(
                        AgentEvent(
                            EventType.TOOL_CALL,
                            {"id": part.call_id, "name": part.name, "input": part.input},
                        ),
                    )
        except GatewayError as e:
            await sink.emit(
                AgentEvent(
                    EventType.LLM_ERROR,
                    {"error": str(e), "status_code": e.status_code},
                ),
            )
            raise

        cancelled = cancel_event is not None and cancel_event.is_set()
        summary = CompletionSummary(
            model=model_id,
            text_chars=text_chars,
            tool_calls=tool_calls,
            latency_ms=(time.monotonic() - start) * 1000,
            cancelled=cancelled,
        )
        event_type = EventType.LLM_CANCELLED if cancelled else EventType.LLM_RESPONSE
        await sink.emit(
            AgentEvent(
                event_type,
                {
                    "model": model_id,
                    "text_chars": text_chars,
                    "tool_calls": tool_calls,
                    "latency_ms": summary.latency_ms,
                },
            ),
        )
        return summary

    async def close(self) -> None:
        """Close the HTTP connection pool if the engine created it."""
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _repair_call(
        self,
        call: FinalizedToolCall,
        tool_schemas: dict[str, Any],
    ) -> FinalizedToolCall:
        """Return *call* with repaired, schema-completed ``parsed`` arguments."""
        _logger.info("Tool call received: id=%s, name=%s", call.id, call.name)
        raw = call.arguments
        _logger.debug(
            "  Raw arguments: %s%s",
            raw[:_ARGUMENT_LOG_LIMIT], "..." if len(raw) > _ARGUMENT_LOG_LIMIT else "",
        )

        parsed = repair_json(raw)
        if parsed is None:
            _logger.error(
                "Failed to parse tool call arguments for %s; using empty arguments",
                call.name,
            )
            args: dict[str, Any] = {}
        elif not isinstance(parsed, dict):
            _logger.warning(
                "Tool call arguments for %s are not an object; using empty arguments",
                call.name,
            )
            args = {}
        else:
            args = parsed
            _logger.debug(
                "  Parsed argument keys: %s", ", ".join(args) or "(none)",
            )

        schema = tool_schemas.get(call.name)
        if schema:
            args = fill_missing_required(args, call.name, schema)

        return replace(call, parsed=args)

    @staticmethod
    def _empty_response_text(
        model_id: str,
        prepared: PreparedRequest,
        config: GatewayConfig,
    ) -> str:
        tool_count = prepared.tool_count
        input_tokens = prepared.plan.input_tokens
        _logger.warning("Model returned empty response with no tool calls.")
        _logger.warning(
            "  Input tokens estimated: %d, messages: %d, tools: %d",
            input_tokens, prepared.message_count, tool_count,
        )
        if tool_count > 0:
            hint = (
                "The model returned an empty response. This typically indicates "
                "the model failed to generate valid output with tool calling "
                "enabled. Check the inference server logs for errors."
            )
        else:
            hint = (
                "The model returned an empty response. Check the inference "
                "server logs for details."
            )
        return (
            f"I was unable to generate a response. {hint}\n\n"
            f"Diagnostic info:\n"
            f"- Model: {model_id}\n"
            f"- Tools provided: {tool_count}\n"
            f"- Estimated input tokens: {input_tokens}\n"
            f"- Context limit: {config.max_context_tokens}\n\n"
            f"Run with --verbose for detailed logs."
        )

    @staticmethod
    def _log_failure(error: GatewayError) -> None:
        _logger.error("Chat request failed: %s", error)
        if any(marker in str(error) for marker in _TOOL_FORMAT_MARKERS):
            _logger.error(
                "HINT: This appears to be a tool calling format error. The model "
                "may not support function calling properly. Try a different "
                "model, disable tool calling, or check the inference server logs.",
            )
