"""Server-sent-event decoding and streamed tool-call accumulation.

``EventStreamDecoder`` turns raw byte chunks into ``StreamRecord`` objects.
``ToolCallAccumulator`` turns records into text fragments and finalized
tool calls.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import secrets
import time
from typing import Any, AsyncGenerator, AsyncIterable, Iterable

from llm_gateway.types import (
    FinalizedToolCall,
    PendingToolCall,
    StreamChunk,
    StreamRecord,
)

_logger = logging.getLogger(__name__)

_DATA_PREFIX = "data: "
_DONE_LINE = "data: [DONE]"
_TOOL_FINISH_REASONS = ("tool_calls", "function_call")


# ---------------------------------------------------------------------------
# Record extraction
# ---------------------------------------------------------------------------

def parse_sse_data(data: str) -> StreamRecord | None:
    """Parse the JSON payload of one ``data:`` line.

    Returns ``None`` (after logging) when the payload is not valid JSON.
    """
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        _logger.warning("Failed to parse SSE chunk: %s", data[:200])
        return None
    if not isinstance(parsed, dict):
        _logger.warning("Ignoring non-object SSE chunk: %s", data[:200])
        return None

    choices = parsed.get("choices")
    choice: dict[str, Any] = {}
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        choice = choices[0]

    delta = choice.get("delta")
    message = choice.get("message")
    response_id = parsed.get("id")
    return StreamRecord(
        delta=delta if isinstance(delta, dict) else None,
        message=message if isinstance(message, dict) else None,
        finish_reason=choice.get("finish_reason") or None,
        response_id=str(response_id) if response_id else None,
    )


def parse_sse_line(line: str) -> StreamRecord | None:
    """Decode one complete line; ``None`` for anything that is not data."""
    trimmed = line.strip()
    if not trimmed or trimmed == _DONE_LINE:
        return None
    if not trimmed.startswith(_DATA_PREFIX):
        _logger.debug("Skipping non-data SSE line: %s", trimmed[:80])
        return None
    return parse_sse_data(trimmed[len(_DATA_PREFIX):])


# ---------------------------------------------------------------------------
# EventStreamDecoder
# ---------------------------------------------------------------------------

class EventStreamDecoder:
    """Incrementally split a byte stream into SSE records.

    A partial trailing line is kept in ``buffer`` and prefixed onto the
    next chunk, so a line is only parsed once all of its bytes arrived.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.buffer = ""

    def feed(self, chunk: bytes) -> list[StreamRecord]:
        """Consume one chunk and return the records it completed."""
        self.buffer += self._decoder.decode(chunk)
        lines = self.buffer.split("\n")
        self.buffer = lines.pop()
        return self._parse_lines(lines)

    def finish(self) -> list[StreamRecord]:
        """Flush the decoder at end-of-stream."""
        self.buffer += self._decoder.decode(b"", final=True)
        remainder, self.buffer = self.buffer, ""
        return self._parse_lines([remainder])

    async def iter_records(
        self,
        chunks: AsyncIterable[bytes],
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamRecord, None]:
        """Yield records from *chunks* until end-of-stream or cancellation.

        On cancellation nothing further is yielded, including the buffered
        remainder.
        """
        async for chunk in chunks:
            if _cancelled(cancel_event):
                return
            for record in self.feed(chunk):
                if _cancelled(cancel_event):
                    return
                yield record
        if _cancelled(cancel_event):
            return
        for record in self.finish():
            yield record

    @staticmethod
    def _parse_lines(lines: Iterable[str]) -> list[StreamRecord]:
        records: list[StreamRecord] = []
        for line in lines:
            record = parse_sse_line(line)
            if record is not None:
                records.append(record)
        return records


def _cancelled(cancel_event: asyncio.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


# ---------------------------------------------------------------------------
# ToolCallAccumulator
# ---------------------------------------------------------------------------

def new_request_id() -> str:
    """Per-response id: millisecond timestamp plus a random suffix."""
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class ToolCallAccumulator:
    """Rebuild tool calls from streamed fragments.

    Calls are tracked by slot ``index`` while streaming, not by id: servers
    may send the id only in the first fragment of a slot, or only in the
    last.  Each slot is finalized at most once.
    """

    def __init__(self, request_id: str | None = None) -> None:
        self.request_id = request_id or new_request_id()
        self._pending: dict[int, PendingToolCall] = {}
        self._finalized: set[int] = set()
        # Server index -> slot; _claimed holds slots handed out by _claim_index
        self._slots: dict[int, int] = {}
        self._claimed: set[int] = set()
        self._next_index = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, record: StreamRecord) -> StreamChunk:
        """Process one record.  Returns its text and newly finalized calls."""
        if record.delta is not None:
            return self._feed_delta(record)
        if record.message is not None:
            return self._feed_message(record)
        if record.finish_reason in _TOOL_FINISH_REASONS:
            return StreamChunk(finished_tool_calls=self._finalize_pending())
        return StreamChunk()

    def drain(self) -> list[FinalizedToolCall]:
        """Finalize slots left pending when the stream ended.

        Slots that never received a name or any argument text are dropped.
        """
        remaining: list[FinalizedToolCall] = []
        for index in sorted(self._pending):
            pending = self._pending[index]
            if pending.name or pending.arguments:
                remaining.append(self._finalize(pending))
            else:
                _logger.debug("Dropping empty tool call slot %d", index)
                self._finalized.add(index)
        self._pending.clear()
        if remaining:
            _logger.info(
                "Stream ended with %d unfinished tool call(s); finalizing",
                len(remaining),
            )
        return remaining

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    # ------------------------------------------------------------------
    # Delta shape
    # ------------------------------------------------------------------

    def _feed_delta(self, record: StreamRecord) -> StreamChunk:
        delta = record.delta or {}

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            for fragment in tool_calls:
                if isinstance(fragment, dict):
                    self._apply_fragment(fragment)

        function_call = delta.get("function_call")
        if isinstance(function_call, dict):
            self._apply_fragment(
                {
                    "index": 0,
                    "id": record.response_id or "",
                    "function": function_call,
                },
            )

        finished: list[FinalizedToolCall] = []
        if record.finish_reason in _TOOL_FINISH_REASONS:
            finished = self._finalize_pending()

        return StreamChunk(
            content=_text(delta.get("content")),
            finished_tool_calls=finished,
        )

    def _apply_fragment(self, fragment: dict[str, Any]) -> None:
        index = self._slot(fragment.get("index"))

        if index in self._finalized:
            _logger.debug("Ignoring fragment for finalized tool call slot %d", index)
            return

        pending = self._pending.get(index)
        if pending is None:
            pending = PendingToolCall(index=index)
            self._pending[index] = pending

        function = fragment.get("function")
        if not isinstance(function, dict):
            function = {}

        call_id = fragment.get("id")
        if call_id and not pending.id:
            pending.id = str(call_id)
        name = function.get("name")
        if name and not pending.name:
            pending.name = str(name)
        arguments = function.get("arguments")
        if arguments:
            pending.arguments += arguments if isinstance(arguments, str) else json.dumps(arguments)

    def _slot(self, index: Any) -> int:
        """Slot for a server-sent index; a fresh slot when it is missing.

        An explicit index that collides with a slot already claimed by an
        unindexed fragment is moved to a fresh slot so both calls survive.
        """
        if not isinstance(index, int):
            slot = self._claim_index()
            self._claimed.add(slot)
            return slot
        slot = self._slots.get(index)
        if slot is None:
            slot = index
            if index in self._claimed:
                slot = self._claim_index()
                self._claimed.add(slot)
                _logger.warning(
                    "Tool call index %d already used by an unindexed call; using slot %d",
                    index, slot,
                )
            self._slots[index] = slot
        return slot

    def _claim_index(self) -> int:
        while self._next_index in self._pending or self._next_index in self._finalized:
            self._next_index += 1
        index = self._next_index
        self._next_index += 1
        return index

    # ------------------------------------------------------------------
    # Full-message shape
    # ------------------------------------------------------------------

    def _feed_message(self, record: StreamRecord) -> StreamChunk:
        message = record.message or {}
        finished: list[FinalizedToolCall] = []

        tool_calls = message.get("tool_calls")
        if isinstance(tool_calls, list):
            for position, tc in enumerate(tool_calls):
                if not isinstance(tc, dict):
                    continue
                index = tc.get("index")
                if not isinstance(index, int):
                    index = position
                function = tc.get("function") if isinstance(tc.get("function"), dict) else {}
                call = self._finalize_complete(
                    index, tc.get("id"), function.get("name"), function.get("arguments"),
                )
                if call is not None:
                    finished.append(call)

        function_call = message.get("function_call")
        if isinstance(function_call, dict):
            call = self._finalize_complete(
                0,
                record.response_id,
                function_call.get("name"),
                function_call.get("arguments"),
            )
            if call is not None:
                finished.append(call)

        content = _text(message.get("content")) or _text(message.get("text"))
        return StreamChunk(content=content, finished_tool_calls=finished)

    def _finalize_complete(
        self,
        index: int,
        call_id: Any,
        name: Any,
        arguments: Any,
    ) -> FinalizedToolCall | None:
        index = self._slot(index)
        if index in self._finalized:
            return None
        self._pending.pop(index, None)
        if arguments is not None and not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        pending = PendingToolCall(
            index=index,
            id=str(call_id) if call_id else "",
            name=str(name) if name else "",
            arguments=arguments or "",
        )
        return self._finalize(pending)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finalize_pending(self) -> list[FinalizedToolCall]:
        finished = [self._finalize(self._pending[i]) for i in sorted(self._pending)]
        self._pending.clear()
        return finished

    def _finalize(self, pending: PendingToolCall) -> FinalizedToolCall:
        self._finalized.add(pending.index)
        call_id = pending.id or f"call_{self.request_id}_{pending.index}"
        return FinalizedToolCall(
            id=call_id, name=pending.name, arguments=pending.arguments,
        )


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""
