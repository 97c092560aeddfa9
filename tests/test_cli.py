"""Tests for the llm-gateway command line."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from llm_gateway.cli import main
from llm_gateway.config import API_KEY_ENV
from llm_gateway.core.engine import CompletionEngine, CompletionSummary
from llm_gateway.errors import GatewayError
from llm_gateway.types import ModelInfo


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.delenv(API_KEY_ENV, raising=False)
    path = tmp_path / "llm_gateway.yaml"
    path.write_text("server_url: http://gpu-box:8080/v1\nlog_level: error\n")
    return str(path)


def _model(model_id: str) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        name=model_id,
        family="local-model-provider",
        max_input_tokens=32768,
        max_output_tokens=4096,
        tool_calling=True,
    )


class TestModelsCommand:
    def test_lists_models(self, config_file):
        with patch.object(
            CompletionEngine, "provide_models",
            new=AsyncMock(return_value=[_model("qwen3-8b")]),
        ):
            result = CliRunner().invoke(main, ["-c", config_file, "models"])
        assert result.exit_code == 0
        assert "qwen3-8b" in result.output

    def test_connection_failure(self, config_file):
        with patch.object(
            CompletionEngine, "provide_models",
            new=AsyncMock(side_effect=GatewayError("Fetch models failed after 4 attempts")),
        ):
            result = CliRunner().invoke(main, ["-c", config_file, "models"])
        assert result.exit_code == 1

    def test_invalid_config(self, tmp_path, monkeypatch):
        monkeypatch.delenv(API_KEY_ENV, raising=False)
        path = tmp_path / "bad.yaml"
        path.write_text("server_url: not-a-url\n")
        result = CliRunner().invoke(main, ["-c", str(path), "models"])
        assert result.exit_code != 0
        assert "Invalid server URL" in result.output


class TestChatCommand:
    def test_chat_uses_given_model(self, config_file):
        dispatch = AsyncMock(return_value=CompletionSummary(
            model="m", text_chars=2, tool_calls=0, latency_ms=5.0,
        ))
        with patch.object(CompletionEngine, "dispatch", new=dispatch):
            result = CliRunner().invoke(
                main, ["-c", config_file, "chat", "hello", "--model", "m", "-s", "Be brief."],
            )
        assert result.exit_code == 0
        _, model, messages = dispatch.await_args.args
        assert model == "m"
        assert [m.role for m in messages] == ["system", "user"]
        assert messages[1].text == "hello"

    def test_chat_defaults_to_first_model(self, config_file):
        dispatch = AsyncMock(return_value=CompletionSummary(
            model="a", text_chars=0, tool_calls=0, latency_ms=1.0,
        ))
        with patch.object(
            CompletionEngine, "provide_models",
            new=AsyncMock(return_value=[_model("a"), _model("b")]),
        ), patch.object(CompletionEngine, "dispatch", new=dispatch):
            result = CliRunner().invoke(main, ["-c", config_file, "chat", "hi"])
        assert result.exit_code == 0
        assert dispatch.await_args.args[1] == "a"

    def test_chat_reports_model_lookup_failure(self, config_file):
        with patch.object(
            CompletionEngine, "provide_models",
            new=AsyncMock(side_effect=GatewayError("Fetch models failed after 4 attempts")),
        ):
            result = CliRunner().invoke(main, ["-c", config_file, "chat", "hi"])
        assert result.exit_code == 1
        assert "Connection failed" in result.output
        assert "Fetch models failed" in result.output
