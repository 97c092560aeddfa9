"""Async client for OpenAI-compatible inference servers.

Talks to ``{server_url}/v1/models`` and streams
``{server_url}/v1/chat/completions``.  Retries live in
``RetryingTransport``; stream decoding in ``response_parser``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator

import httpx

from llm_gateway.config import GatewayConfig
from llm_gateway.errors import GatewayError
from llm_gateway.types import StreamChunk

from .response_parser import EventStreamDecoder, ToolCallAccumulator
from .transport import RetryingTransport, RetryPolicy

_logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 500


def build_headers(config: GatewayConfig, *, json_body: bool = False) -> dict[str, str]:
    """Request headers, including the credential when one is configured."""
    headers: dict[str, str] = {}
    if config.api_key:
        raw = config.api_key.strip()
        bearer = raw if raw.lower().startswith("bearer ") else f"Bearer {raw}"
        headers["Authorization"] = bearer
        # Some gateways expect the raw key in x-api-key instead
        headers["x-api-key"] = raw
    headers["Accept"] = "application/json"
    if json_body:
        headers["Content-Type"] = "application/json"
    return headers


def make_http_client(config: GatewayConfig) -> httpx.AsyncClient:
    """Shared connection pool.  Reads are bounded by the request timeout."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.request_timeout, connect=30),
    )


class GatewayClient:
    """Binds one configuration snapshot to an HTTP connection pool.

    Parameters
    ----------
    config:
        The snapshot every request made through this client uses.
    http_client:
        Optional shared ``httpx.AsyncClient``.  When omitted the client
        creates and owns one, closed by ``close()``.
    """

    def __init__(
        self,
        config: GatewayConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self._owns_client = http_client is None
        self._http = http_client or make_http_client(config)
        self._transport = RetryingTransport(
            self._http,
            RetryPolicy(
                max_retries=config.max_retries,
                base_delay=config.retry_delay,
                max_delay=config.max_retry_delay,
            ),
            timeout=config.request_timeout,
        )

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def fetch_models(
        self, cancel_event: asyncio.Event | None = None,
    ) -> list[str]:
        """Return the model ids the server advertises."""
        url = f"{self.config.server_url}/v1/models"
        response = await self._transport.send(
            "GET", url, "Fetch models",
            headers=build_headers(self.config),
            cancel_event=cancel_event,
        )
        try:
            if response.status_code >= 400:
                raise await self._status_error("Failed to fetch models", response)
            await response.aread()
            try:
                data = response.json()
            except ValueError as e:
                raise GatewayError(
                    "Failed to fetch models: invalid JSON response", cause=e,
                ) from e
        finally:
            await response.aclose()

        entries = data.get("data", []) if isinstance(data, dict) else []
        return [
            str(entry["id"]) for entry in entries
            if isinstance(entry, dict) and entry.get("id")
        ]

    # ------------------------------------------------------------------
    # Streaming chat
    # ------------------------------------------------------------------

    async def stream_chat_completion(
        self,
        request: dict[str, Any],
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Stream a chat completion.  Yields one ``StreamChunk`` per record.

        Tool calls are tracked by slot index while streaming; finalized calls
        arrive in ``finished_tool_calls``.  After the last record, slots still
        pending are drained into a final chunk.  On cancellation the
        connection is closed and pending calls are discarded.
        """
        url = f"{self.config.server_url}/v1/chat/completions"
        accumulator = ToolCallAccumulator()
        decoder = EventStreamDecoder()

        response = await self._transport.send(
            "POST", url, "Chat completion",
            headers=build_headers(self.config, json_body=True),
            json={**request, "stream": True},
            cancel_event=cancel_event,
        )
        try:
            if response.status_code >= 400:
                raise await self._status_error("Chat completion failed", response)

            try:
                async for record in decoder.iter_records(
                    response.aiter_bytes(), cancel_event,
                ):
                    chunk = accumulator.feed(record)
                    if chunk.content or chunk.finished_tool_calls:
                        yield chunk
            except httpx.HTTPError as e:
                raise GatewayError(
                    f"Chat completion request failed: {e}", cause=e,
                ) from e

            if cancel_event is not None and cancel_event.is_set():
                _logger.info("Chat completion cancelled; discarding pending tool calls")
                return

            remaining = accumulator.drain()
            if remaining:
                yield StreamChunk(finished_tool_calls=remaining)
        finally:
            await response.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _status_error(prefix: str, response: httpx.Response) -> GatewayError:
        body = ""
        try:
            body = (await response.aread()).decode(errors="replace")
        except httpx.HTTPError:
            _logger.debug("Could not read error body for status %d", response.status_code)
        message = f"{prefix}: {response.status_code} {response.reason_phrase}"
        if body:
            message += f" - {body[:_ERROR_BODY_LIMIT]}"
        return GatewayError(
            message,
            status_code=response.status_code,
            retryable=False,
        )

    async def close(self) -> None:
        """Close the connection pool if this client created it."""
        if self._owns_client:
            await self._http.aclose()
