"""Tests for provider resolution, LiteLLM routing and the model client."""

import pytest
from unittest.mock import patch, MagicMock

from agentic_terminal import agent
from agentic_terminal.agent import LLMClient, call_llm, resolve_provider
from agentic_terminal.report import ConfigError, ModelCallError


def _mock_response(content="ls", finish_reason="stop"):
    choice = MagicMock()
    choice.message = MagicMock(content=content)
    choice.finish_reason = finish_reason
    resp = MagicMock()
    resp.choices = [choice]
    return resp


@pytest.fixture
def no_key_env(monkeypatch):
    for name in ("API_KEY", "ANTHROPIC_API_KEY", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# resolve_provider
# ---------------------------------------------------------------------------


class TestResolveProvider:
    def test_anthropic_default_model(self, no_key_env, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
        model, kwargs = resolve_provider("anthropic", None, None, None)
        assert model == "anthropic/claude-3-5-sonnet-latest"
        assert kwargs == {"api_key": "sk-ant"}

    def test_openai_default_model(self, no_key_env, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-oai")
        model, kwargs = resolve_provider("openai", None, None, None)
        assert model == "openai/gpt-4o"
        assert kwargs["api_key"] == "sk-oai"

    def test_prefixed_model_not_doubled(self, no_key_env):
        model, _ = resolve_provider("openai", "openai/gpt-4o-mini", "k", None)
        assert model == "openai/gpt-4o-mini"

    def test_generic_api_key_env_wins_over_provider_env(self, no_key_env, monkeypatch):
        monkeypatch.setenv("API_KEY", "generic")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "specific")
        _, kwargs = resolve_provider("anthropic", None, None, None)
        assert kwargs["api_key"] == "generic"

    def test_explicit_key_wins(self, no_key_env, monkeypatch):
        monkeypatch.setenv("API_KEY", "generic")
        _, kwargs = resolve_provider("anthropic", None, "explicit", None)
        assert kwargs["api_key"] == "explicit"

    def test_missing_key(self, no_key_env):
        with pytest.raises(ConfigError, match="ANTHROPIC_API_KEY"):
            resolve_provider("anthropic", None, None, None)

    def test_base_url_passed_through(self, no_key_env):
        _, kwargs = resolve_provider("openai", None, "k", "https://proxy.example/v1")
        assert kwargs["api_base"] == "https://proxy.example/v1"

    def test_lmstudio(self, no_key_env):
        model, kwargs = resolve_provider("lmstudio", "qwen3", None, None)
        assert model == "openai/qwen3"
        assert kwargs == {"api_base": "http://127.0.0.1:1234/v1", "api_key": "lm-studio"}

    def test_lmstudio_custom_base(self, no_key_env):
        _, kwargs = resolve_provider("lmstudio", "qwen3", None, "http://box:8080/")
        assert kwargs["api_base"] == "http://box:8080/v1"

    def test_lmstudio_requires_model(self, no_key_env):
        with pytest.raises(ConfigError, match="--model"):
            resolve_provider("lmstudio", None, None, None)

    def test_unknown_provider(self):
        with pytest.raises(ConfigError, match="unknown provider"):
            resolve_provider("mystery", "m", "k", None)


# ---------------------------------------------------------------------------
# call_llm
# ---------------------------------------------------------------------------


class TestCallLlm:
    def test_routing(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response("pwd", "stop")
            content, finish_reason = call_llm(
                "openai/my-model",
                [{"role": "user", "content": "hi"}],
                100,
                None,
                None,
                None,
                False,
                api_base="http://localhost:1234/v1",
                api_key="lm-studio",
            )
        assert (content, finish_reason) == ("pwd", "stop")
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "openai/my-model"
        assert kwargs["max_tokens"] == 100
        assert kwargs["api_base"] == "http://localhost:1234/v1"
        assert kwargs["api_key"] == "lm-studio"
        for absent in ("temperature", "top_p", "seed", "num_retries"):
            assert absent not in kwargs

    def test_sampling_params_and_retries(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            call_llm(
                "anthropic/claude",
                [],
                50,
                0.2,
                0.9,
                7,
                False,
                num_retries=3,
                api_key="k",
            )
        kwargs = mock_comp.call_args[1]
        assert kwargs["temperature"] == 0.2
        assert kwargs["top_p"] == 0.9
        assert kwargs["seed"] == 7
        assert kwargs["num_retries"] == 3

    def test_none_content_becomes_empty(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response(None, "length")
            content, finish_reason = call_llm("m", [], 10, None, None, None, False)
        assert content == ""
        assert finish_reason == "length"

    def test_failure_wrapped(self):
        with patch("litellm.completion", side_effect=RuntimeError("401 Unauthorized")):
            with pytest.raises(ModelCallError, match="LLM call failed: 401 Unauthorized"):
                call_llm("m", [], 10, None, None, None, False)

    def test_empty_choices(self):
        resp = MagicMock()
        resp.choices = []
        with patch("litellm.completion", return_value=resp):
            with pytest.raises(ModelCallError, match="no choices"):
                call_llm("m", [], 10, None, None, None, False)


# ---------------------------------------------------------------------------
# LLMClient
# ---------------------------------------------------------------------------


class TestLLMClient:
    def test_messages_are_system_then_prompt(self):
        client = LLMClient("openai/gpt-4o", system_prompt="be terse", api_key="k")
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response("ls -la")
            assert client.complete("Task: list files") == "ls -la"
        messages = mock_comp.call_args[1]["messages"]
        assert messages == [
            {"role": "system", "content": "be terse"},
            {"role": "user", "content": "Task: list files"},
        ]

    def test_without_system_prompt(self):
        client = LLMClient("m", max_output_tokens=64)
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            client.complete("p")
        kwargs = mock_comp.call_args[1]
        assert kwargs["messages"] == [{"role": "user", "content": "p"}]
        assert kwargs["max_tokens"] == 64

    def test_error_propagates(self):
        client = LLMClient("m")
        with patch("litellm.completion", side_effect=ConnectionError("refused")):
            with pytest.raises(ModelCallError):
                client.complete("p")


# ---------------------------------------------------------------------------
# Token estimate and system prompt
# ---------------------------------------------------------------------------


class TestEstimateTokens:
    def test_counts_each_text_plus_overhead(self, monkeypatch):
        enc = MagicMock()
        enc.encode.side_effect = lambda text, **kw: text.split()
        monkeypatch.setattr(agent, "_encoder", lambda: enc)
        assert agent.estimate_tokens("one two", "three") == 3 + 8

    def test_empty_text_only_overhead(self, monkeypatch):
        enc = MagicMock()
        monkeypatch.setattr(agent, "_encoder", lambda: enc)
        assert agent.estimate_tokens("") == 4
        enc.encode.assert_not_called()


class TestSystemPrompt:
    def test_default_prompt_mentions_exit(self):
        text = agent.load_system_prompt()
        assert "exit" in text
        assert "ONLY" in text

    def test_override(self):
        assert agent.load_system_prompt("custom") == "custom"
