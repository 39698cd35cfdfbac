"""Tests for the multi-model provider abstraction and tool loop."""

import asyncio
import json
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from storyloom.collector import AnalysisCollector, create_analysis_tools
from storyloom.models import ContentPart, ContextMessage
from storyloom.providers import (
    MODELS, Completion, GenerationAborted, ModelConfig, ToolCall,
    _anthropic_messages, _get_api_key, _send_anthropic, _send_openai,
    collect_text, generate, resolve_model, run_tool_loop,
)

HI = [{"role": "user", "content": "hi"}]


def drain(gen):
    async def collect():
        return [event async for event in gen]
    return asyncio.run(collect())


class TestModelRegistry:

    def test_expected_models_exist(self):
        assert "gpt-4o" in MODELS
        assert "gemini-flash" in MODELS
        assert "claude-sonnet" in MODELS

    def test_model_configs_have_required_fields(self):
        for key, config in MODELS.items():
            assert config.provider in ("openai", "google", "anthropic")
            assert config.model_id
            assert config.env_key

    def test_resolve_explicit(self):
        assert resolve_model("gpt-4o") == "gpt-4o"

    def test_resolve_from_env(self):
        with patch.dict(os.environ, {"STORYLOOM_MODEL": "gemini-flash"}):
            assert resolve_model() == "gemini-flash"
            assert resolve_model("o3") == "o3"

    def test_resolve_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert resolve_model() == "claude-sonnet"

    def test_resolve_unknown(self):
        with pytest.raises(ValueError, match="Unknown model: nope"):
            resolve_model("nope")


class TestAPIKey:

    def test_missing_api_key_raises(self):
        config = ModelConfig("openai", "gpt-4o", "NONEXISTENT_KEY_12345")
        with pytest.raises(ValueError, match="NONEXISTENT_KEY_12345"):
            _get_api_key(config)

    def test_api_key_from_env(self):
        config = ModelConfig("openai", "gpt-4o", "TEST_OPENAI_KEY_XYZ")
        with patch.dict(os.environ, {"TEST_OPENAI_KEY_XYZ": "sk-test123"}):
            assert _get_api_key(config) == "sk-test123"


class TestGenerate:

    def test_unknown_model_raises(self):
        with pytest.raises(ValueError, match="Unknown model"):
            asyncio.run(generate("nonexistent-model", HI))

    @pytest.mark.parametrize("model_key", ["gpt-4o", "gemini-flash", "claude-sonnet"])
    @patch("storyloom.providers._DISPATCH")
    def test_dispatch(self, mock_dispatch, model_key):
        mock_fn = AsyncMock(return_value=Completion("response"))
        mock_dispatch.__getitem__ = MagicMock(return_value=mock_fn)
        result = asyncio.run(generate(model_key, HI))
        assert result.text == "response"
        assert mock_fn.call_args[0][0] is MODELS[model_key]

    @patch("storyloom.providers._DISPATCH")
    def test_context_messages_converted(self, mock_dispatch):
        mock_fn = AsyncMock(return_value=Completion("ok"))
        mock_dispatch.__getitem__ = MagicMock(return_value=mock_fn)
        asyncio.run(generate("gpt-4o", [ContextMessage("user", [ContentPart("a", cache=True)])]))
        assert mock_fn.call_args[0][1] == [
            {"role": "user", "content": [{"text": "a", "cache": True}]},
        ]


class TestOpenAIProvider:

    @patch("storyloom.providers._get_api_key", return_value="sk-test")
    def test_send_openai_basic(self, mock_key):
        with patch.dict("sys.modules", {"openai": MagicMock()}):
            import sys
            mock_openai = sys.modules["openai"]
            mock_client = MagicMock()
            mock_openai.AsyncOpenAI.return_value = mock_client
            mock_response = MagicMock()
            mock_response.choices = [MagicMock()]
            mock_response.choices[0].message.content = "Hello from GPT"
            mock_response.choices[0].message.tool_calls = None
            mock_response.choices[0].finish_reason = "stop"
            mock_client.chat.completions.create = AsyncMock(return_value=mock_response)

            messages = [{"role": "system", "content": "Be brief"}, *HI]
            result = asyncio.run(_send_openai(MODELS["gpt-4o"], messages, None))
            assert result.text == "Hello from GPT"
            assert result.tool_calls == []

            call_kwargs = mock_client.chat.completions.create.call_args[1]
            assert call_kwargs["messages"][0] == {"role": "system", "content": "Be brief"}
            assert call_kwargs["messages"][1] == {"role": "user", "content": "hi"}
            assert "tools" not in call_kwargs

    @patch("storyloom.providers._get_api_key", return_value="sk-test")
    def test_send_openai_tool_calls(self, mock_key):
        with patch.dict("sys.modules", {"openai": MagicMock()}):
            import sys
            mock_client = MagicMock()
            sys.modules["openai"].AsyncOpenAI.return_value = mock_client
            call = MagicMock()
            call.id = "call-1"
            call.function.name = "updateSummary"
            call.function.arguments = '{"summary": "Storm."}'
            mock_response = MagicMock()
            mock_response.choices = [MagicMock()]
            mock_response.choices[0].message.content = None
            mock_response.choices[0].message.tool_calls = [call]
            mock_response.choices[0].finish_reason = "tool_calls"
            mock_client.chat.completions.create = AsyncMock(return_value=mock_response)

            tools = create_analysis_tools(AnalysisCollector())
            result = asyncio.run(_send_openai(MODELS["gpt-4o"], HI, tools))
            assert result.tool_calls == [ToolCall("call-1", "updateSummary", {"summary": "Storm."})]
            sent = mock_client.chat.completions.create.call_args[1]["tools"]
            assert sent[0]["function"]["name"] == "updateSummary"


class TestAnthropicProvider:

    def test_message_conversion(self):
        system, out = _anthropic_messages([
            {"role": "system", "content": [{"text": "rules", "cache": True}]},
            {"role": "user", "content": [{"text": "old", "cache": True}, {"text": "new", "cache": False}]},
            {"role": "assistant", "content": "", "tool_calls": [
                {"id": "t1", "name": "getCharacter", "arguments": {"id": "ch-mara"}},
                {"id": "t2", "name": "listProse", "arguments": {}},
            ]},
            {"role": "tool", "tool_call_id": "t1", "name": "getCharacter", "content": "{}"},
            {"role": "tool", "tool_call_id": "t2", "name": "listProse", "content": "{}"},
        ])
        assert system == [{"type": "text", "text": "rules", "cache_control": {"type": "ephemeral"}}]
        assert out[0]["content"][0]["cache_control"] == {"type": "ephemeral"}
        assert "cache_control" not in out[0]["content"][1]
        assert [b["type"] for b in out[1]["content"]] == ["tool_use", "tool_use"]
        assert len(out) == 3
        assert [b["tool_use_id"] for b in out[2]["content"]] == ["t1", "t2"]

    def test_plain_system_string(self):
        system, out = _anthropic_messages([{"role": "system", "content": "Be concise"}, *HI])
        assert system == [{"type": "text", "text": "Be concise"}]
        assert out == [{"role": "user", "content": "hi"}]

    @patch("storyloom.providers._get_api_key", return_value="ant-test")
    @patch("storyloom.providers.httpx.AsyncClient")
    def test_send_anthropic(self, mock_client_cls, mock_key):
        mock_response = MagicMock()
        mock_response.json.return_value = {
            "content": [
                {"type": "thinking", "thinking": "hmm"},
                {"type": "text", "text": "Hello from Claude"},
                {"type": "tool_use", "id": "t1", "name": "listProse", "input": {}},
            ],
            "stop_reason": "tool_use",
        }
        client = MagicMock()
        client.post = AsyncMock(return_value=mock_response)
        mock_client_cls.return_value.__aenter__.return_value = client

        messages = [{"role": "system", "content": "Be concise"}, *HI]
        result = asyncio.run(_send_anthropic(MODELS["claude-sonnet"], messages, None))
        assert result.text == "Hello from Claude"
        assert result.tool_calls == [ToolCall("t1", "listProse", {})]
        assert result.finish_reason == "tool_use"

        body = client.post.call_args[1]["json"]
        assert body["system"] == [{"type": "text", "text": "Be concise"}]
        assert body["model"] == MODELS["claude-sonnet"].model_id


class TestToolLoop:

    def test_text_only(self):
        with patch("storyloom.providers.generate", AsyncMock(return_value=Completion("Once."))):
            events = drain(run_tool_loop("gpt-4o", HI))
        assert events == [
            {"type": "text-delta", "text": "Once."},
            {"type": "finish", "finish_reason": "stop", "step_count": 1},
        ]

    def test_tool_call_then_text(self):
        collector = AnalysisCollector()
        tools = create_analysis_tools(collector)
        responses = [
            Completion("", [ToolCall("c1", "updateSummary", {"summary": "Storm."})], "tool-calls"),
            Completion("Done."),
        ]
        mock = AsyncMock(side_effect=responses)
        with patch("storyloom.providers.generate", mock):
            events = drain(run_tool_loop("gpt-4o", HI, tools))

        assert [e["type"] for e in events] == ["tool-call", "tool-result", "text-delta", "finish"]
        assert events[1]["output"] == {"ok": True}
        assert events[-1]["step_count"] == 2
        assert collector.summary_update == "Storm."

        second_conversation = mock.call_args_list[1][0][1]
        assert second_conversation[-1] == {
            "role": "tool", "tool_call_id": "c1", "name": "updateSummary",
            "content": json.dumps({"ok": True}),
        }
        assert second_conversation[-2]["tool_calls"][0]["name"] == "updateSummary"

    def test_unknown_tool(self):
        responses = [Completion("", [ToolCall("c1", "rewriteStory", {})]), Completion("")]
        with patch("storyloom.providers.generate", AsyncMock(side_effect=responses)):
            events = drain(run_tool_loop("gpt-4o", HI, []))
        assert events[1]["output"] == {"error": "Unknown tool: rewriteStory"}

    def test_max_steps(self):
        looping = Completion("", [ToolCall("c1", "listProse", {})])
        with patch("storyloom.providers.generate", AsyncMock(return_value=looping)):
            events = drain(run_tool_loop("gpt-4o", HI, [], max_steps=3))
        assert events[-1] == {"type": "finish", "finish_reason": "max-steps", "step_count": 3}
        assert sum(e["type"] == "tool-call" for e in events) == 3

    def test_abort(self):
        async def run():
            abort = asyncio.Event()
            abort.set()
            return [e async for e in run_tool_loop("gpt-4o", HI, abort=abort)]

        with patch("storyloom.providers.generate", AsyncMock(return_value=Completion("x"))) as mock:
            with pytest.raises(GenerationAborted):
                asyncio.run(run())
        mock.assert_not_called()

    def test_collect_text(self):
        responses = [Completion("Part one. ", [ToolCall("c1", "x", {})]), Completion("Part two.")]
        with patch("storyloom.providers.generate", AsyncMock(side_effect=responses)):
            text = asyncio.run(collect_text(run_tool_loop("gpt-4o", HI)))
        assert text == "Part one. Part two."
