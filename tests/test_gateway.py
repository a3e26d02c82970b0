"""Tests for gtllm/gateway.py."""

import asyncio

import pytest

from config.config_loader import AppConfig, ModelConfig
from gtllm.gateway import InvocationGateway, build_providers
from gtllm.models import Agent, FailureKind
from gtllm.providers.anthropic import AnthropicProvider
from gtllm.providers.base import ProviderError, kind_from_status, split_system
from gtllm.providers.openai_provider import OpenAIProvider
from tests.conftest import MockProvider, ScriptedProvider

AGENT = Agent(id="a", label="a", model="a")


async def test_invoke_uses_model_params(make_gateway):
    provider = MockProvider("a", "hello")
    gateway = make_gateway({"a": provider})

    completion = await gateway.invoke(AGENT, [{"role": "user", "content": "hi"}])

    assert completion.content == "hello"
    _, params = provider.generate.call_args.args
    assert params.max_tokens == 256


async def test_invoke_timeout_is_classified(make_gateway):
    class Hanging(ScriptedProvider):
        async def generate(self, messages, params):
            await asyncio.sleep(9999)

    gateway = make_gateway({"a": Hanging("a", lambda messages: "")})
    with pytest.raises(ProviderError) as exc_info:
        await gateway.invoke(AGENT, [{"role": "user", "content": "hi"}], timeout=0.05)
    assert exc_info.value.kind is FailureKind.TIMEOUT


async def test_invoke_passes_provider_errors_through(make_gateway):
    def boom(messages):
        raise ProviderError("a", "429 Too Many Requests", FailureKind.RATE_LIMITED)

    gateway = make_gateway({"a": ScriptedProvider("a", boom)})
    with pytest.raises(ProviderError) as exc_info:
        await gateway.invoke(AGENT, [{"role": "user", "content": "hi"}])
    assert exc_info.value.kind is FailureKind.RATE_LIMITED


async def test_invoke_unknown_model(make_gateway):
    gateway = make_gateway({})
    assert not gateway.has_model("a")
    with pytest.raises(ProviderError):
        await gateway.invoke(AGENT, [{"role": "user", "content": "hi"}])


def test_default_timeout(make_gateway):
    assert make_gateway({"a": MockProvider("a")}).default_timeout(AGENT) == 5.0


@pytest.mark.parametrize("status, kind", [
    (401, FailureKind.AUTH),
    (403, FailureKind.AUTH),
    (408, FailureKind.TIMEOUT),
    (429, FailureKind.RATE_LIMITED),
    (500, FailureKind.UNAVAILABLE),
    (None, FailureKind.UNAVAILABLE),
])
def test_kind_from_status(status, kind):
    assert kind_from_status(status) is kind


def test_split_system():
    system, rest = split_system([
        {"role": "system", "content": "be terse"},
        {"role": "user", "content": "hi"},
    ])
    assert system == "be terse"
    assert rest == [{"role": "user", "content": "hi"}]


def test_build_providers_by_sdk(sample_app_config: AppConfig, monkeypatch):
    monkeypatch.setenv("TEST_CLAUDE_KEY", "sk-test")
    monkeypatch.setenv("TEST_GROK_KEY", "xai-test")
    sample_app_config.models = {
        "claude": ModelConfig("claude", "anthropic", "claude-opus-4-6", "TEST_CLAUDE_KEY", 60, 1024),
        "grok": ModelConfig("grok", "openai", "grok-4", "TEST_GROK_KEY", 60, 1024, base_url="https://api.x.ai/v1"),
        "odd": ModelConfig("odd", "carrier-pigeon", "coo", "TEST_ODD_KEY", 60, 1024),
    }
    sample_app_config.available_providers = {"claude", "grok", "odd"}

    providers = build_providers(sample_app_config)

    assert set(providers) == {"claude", "grok"}
    assert isinstance(providers["claude"], AnthropicProvider)
    assert isinstance(providers["grok"], OpenAIProvider)
    assert providers["grok"].name() == "grok"


def test_gateway_dispatches_by_model(sample_app_config):
    gateway = InvocationGateway({"a": MockProvider("a")}, sample_app_config.models)
    assert gateway.has_model("a")
    assert not gateway.has_model("b")
