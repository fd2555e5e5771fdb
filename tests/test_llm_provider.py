"""Tests for model routing and request building (no network)."""

from types import SimpleNamespace

import pytest

from src.chronograph.llm import provider as provider_module
from src.chronograph.llm.provider import LLMConfig, LLMProvider, route_for


class TestRouting:

    @pytest.mark.parametrize("model,expected", [
        ("gpt-4o-mini", "openai"),
        ("claude-sonnet-4", "anthropic"),
        ("qwen-plus", "dashscope"),
        ("deepseek-chat", "deepseek"),
        ("ollama/llama3", "ollama"),
        ("some-local-model", "openai"),
    ])
    def test_route_for(self, model, expected):
        assert route_for(model).name == expected

    def test_dashscope_gets_openai_prefix(self, monkeypatch):
        monkeypatch.setenv("DASHSCOPE_API_KEY", "sk-test")
        llm = LLMProvider(LLMConfig(model="qwen-plus"))
        assert llm.model_name() == "openai/qwen-plus"
        assert llm.config.api_key == "sk-test"


class TestRequestParams:

    def test_json_mode_only_where_supported(self):
        openai = LLMProvider(LLMConfig(model="gpt-4o-mini", api_key="k"))
        anthropic = LLMProvider(LLMConfig(model="claude-sonnet-4", api_key="k"))
        messages = [{"role": "user", "content": "Reply with JSON"}]

        assert openai.request_params(messages)["response_format"] == {"type": "json_object"}
        assert "response_format" not in anthropic.request_params(messages)

    def test_explicit_base_url_wins(self, monkeypatch):
        monkeypatch.setenv("OPENAI_BASE_URL", "http://env")
        llm = LLMProvider(LLMConfig(api_base="http://explicit", api_key="k"))
        assert llm.request_params([])["api_base"] == "http://explicit"


class TestComplete:

    @pytest.mark.asyncio
    async def test_complete_tracks_usage(self, monkeypatch):
        async def fake_acompletion(**params):
            return SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(content='{"ok": true}'), finish_reason="stop")],
                usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
            )

        monkeypatch.setattr(provider_module, "acompletion", fake_acompletion)
        llm = LLMProvider(LLMConfig(api_key="k"))
        response = await llm.complete([{"role": "user", "content": "hi"}])

        assert response.content == '{"ok": true}'
        assert llm.usage.to_dict() == {"calls": 1, "prompt_tokens": 12, "completion_tokens": 3}
        assert llm.get_provider_info()["usage"]["calls"] == 1
