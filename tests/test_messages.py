"""Tests for host message parsing and conversion."""

from __future__ import annotations

import pytest

from llm_gateway.core.messages import (
    convert_message,
    convert_messages,
    drop_orphan_tool_results,
    parse_message,
    parse_part,
)
from llm_gateway.types import (
    ChatMessage,
    ConversationMessage,
    TextPart,
    ToolCallPart,
    ToolCallRequest,
    ToolResultBinding,
    ToolResultPart,
)


class TestParsePart:
    def test_string(self):
        assert parse_part("hi") == TextPart("hi")

    def test_typed_part_passthrough(self):
        part = ToolCallPart("c1", "ls", {"path": "."})
        assert parse_part(part) is part

    def test_tool_call_dict(self):
        part = parse_part({"callId": "c1", "name": "ls", "input": {"path": "."}})
        assert part == ToolCallPart("c1", "ls", {"path": "."})

    def test_tool_result_dict(self):
        part = parse_part({"call_id": "c1", "content": "file.txt"})
        assert part == ToolResultPart("c1", "file.txt")

    def test_text_dicts(self):
        assert parse_part({"value": "a"}) == TextPart("a")
        assert parse_part({"text": "b"}) == TextPart("b")

    def test_unrecognized(self):
        assert parse_part({"image": "..."}) is None
        assert parse_part(42) is None


class TestParseMessage:
    def test_string_content(self):
        message = parse_message({"role": "user", "content": "hello"})
        assert message.role == "user"
        assert message.parts == [TextPart("hello")]

    def test_unknown_role_becomes_user(self):
        assert parse_message({"role": "narrator", "content": "x"}).role == "user"

    def test_mixed_parts(self):
        message = parse_message({
            "role": "assistant",
            "content": [{"value": "Looking"}, {"callId": "c1", "name": "ls", "input": {}}],
        })
        assert message.parts == [TextPart("Looking"), ToolCallPart("c1", "ls", {})]


class TestConvertMessage:
    def test_plain_text(self):
        converted = convert_message(ChatMessage("system", [TextPart("Be brief.")]))
        assert [m.to_openai() for m in converted] == [
            {"role": "system", "content": "Be brief."},
        ]

    def test_text_parts_concatenated(self):
        converted = convert_message(ChatMessage("user", [TextPart("a"), TextPart("b")]))
        assert converted[0].content == "ab"

    def test_tool_calls_with_text(self):
        message = ChatMessage("assistant", [
            TextPart("Reading."),
            ToolCallPart("c1", "read_file", {"path": "a.txt"}),
            ToolCallPart("c2", "ls", {}),
        ])
        [converted] = convert_message(message)
        assert converted.to_openai() == {
            "role": "assistant",
            "content": "Reading.",
            "tool_calls": [
                {"id": "c1", "type": "function",
                 "function": {"name": "read_file", "arguments": '{"path":"a.txt"}'}},
                {"id": "c2", "type": "function",
                 "function": {"name": "ls", "arguments": "{}"}},
            ],
        }

    def test_tool_calls_without_text(self):
        [converted] = convert_message(ChatMessage("assistant", [ToolCallPart("c1", "ls", {})]))
        assert converted.to_openai()["content"] is None

    def test_tool_results_expand(self):
        message = ChatMessage("user", [
            ToolResultPart("c1", "a.txt"),
            ToolResultPart("c2", [TextPart("x"), "y"]),
        ])
        assert [m.to_openai() for m in convert_message(message)] == [
            {"role": "tool", "tool_call_id": "c1", "content": "a.txt"},
            {"role": "tool", "tool_call_id": "c2", "content": "xy"},
        ]

    def test_tool_result_structured_content(self):
        [converted] = convert_message(ChatMessage("user", [ToolResultPart("c1", {"ok": True})]))
        assert converted.to_openai()["content"] == '{"ok":true}'

    def test_tool_results_with_text_keep_text(self):
        message = ChatMessage("user", [ToolResultPart("c1", "done"), TextPart("Now summarize.")])
        converted = convert_message(message)
        assert [m.role for m in converted] == ["tool", "user"]
        assert converted[1].content == "Now summarize."

    def test_empty_message_dropped(self):
        assert convert_message(ChatMessage("user", [])) == []

    def test_convert_messages_flattens(self):
        converted = convert_messages([
            ChatMessage("user", [TextPart("list files")]),
            ChatMessage("assistant", [ToolCallPart("c1", "ls", {})]),
            ChatMessage("user", [ToolResultPart("c1", "a.txt")]),
        ])
        assert [m.role for m in converted] == ["user", "assistant", "tool"]


class TestConversationMessageInvariants:
    def test_both_tool_calls_and_result(self):
        with pytest.raises(ValueError):
            ConversationMessage(
                role="assistant",
                tool_calls=(ToolCallRequest("c", "ls", "{}"),),
                tool_result=ToolResultBinding("c", "x"),
            )

    def test_tool_calls_on_user(self):
        with pytest.raises(ValueError):
            ConversationMessage(role="user", tool_calls=(ToolCallRequest("c", "ls", "{}"),))

    def test_tool_role_requires_result(self):
        with pytest.raises(ValueError):
            ConversationMessage(role="tool", content="x")


class TestDropOrphanToolResults:
    def test_orphan_dropped(self):
        messages = [
            {"role": "system", "content": "s"},
            {"role": "tool", "tool_call_id": "gone", "content": "x"},
            {"role": "user", "content": "u"},
        ]
        assert drop_orphan_tool_results(messages) == [messages[0], messages[2]]

    def test_matched_result_kept(self):
        messages = [
            {"role": "assistant", "content": None, "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "ls", "arguments": "{}"}},
            ]},
            {"role": "tool", "tool_call_id": "c1", "content": "a.txt"},
        ]
        assert drop_orphan_tool_results(messages) == messages
