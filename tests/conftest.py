"""Shared pytest fixtures."""

import random
import re
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, PromptsConfig, RetryConfig
from gtllm.gateway import InvocationGateway
from gtllm.models import Completion
from gtllm.providers.base import AIProvider, GenerationParams
from gtllm.session import ConversationSession

_BALLOT_RE = re.compile(r"--- Proposal ([A-Z]) ---\n(.*?)(?=\n\n--- Proposal |\Z)", re.DOTALL)

MODEL_NAMES = ("a", "b", "c", "d", "mod", "judge")


def _model_config(name: str) -> ModelConfig:
    return ModelConfig(
        name=name,
        sdk="test",
        model=f"{name}-model-1",
        api_key_env=f"TEST_{name.upper()}_KEY",
        timeout_sec=5,
        max_tokens=256,
    )


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return _model_config("test_model")


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        system="You are {label} in {mode} as {role}.",
        pvp_opening="OPENING {question}",
        pvp_rebuttal="REBUTTAL round {round}: {opponent_response}\nQ: {question}",
        pvp_moderator="MODERATE {question}\n{transcript}",
        collaborative_initial="COLLAB {question}",
        collaborative_refine="REFINE round {round} Q: {question}",
        convergence_judge="SAME? {question}\n{proposals}",
        competitive_proposal="PROPOSE {question}",
        competitive_vote="VOTE ON {question}\n{ballot}",
        choice_intent="INTENT {peer_count} {question}",
    )


@pytest.fixture
def sample_defaults_config() -> DefaultsConfig:
    return DefaultsConfig(
        round_cap=3,
        pvp_rounds=1,
        convergence="exact",
        cancel_timeout_sec=1.0,
        roster=["a", "b", "c"],
        moderator="mod",
        judge="judge",
    )


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
) -> AppConfig:
    return AppConfig(
        defaults=sample_defaults_config,
        retry=RetryConfig(max_retries=2, backoff_sec=0.0, timeout_multiplier=1.5),
        models={name: _model_config(name) for name in MODEL_NAMES},
        prompts=sample_prompts_config,
        available_providers=set(MODEL_NAMES),
    )


def last_user(messages: list[dict[str, str]]) -> str:
    return next(m["content"] for m in reversed(messages) if m["role"] == "user")


def ballot_of(prompt: str) -> dict[str, str]:
    """Parse a vote prompt back into {label: proposal text}."""
    return {label: text.strip() for label, text in _BALLOT_RE.findall(prompt)}


def label_for(prompt: str, proposal: str) -> str:
    return next(label for label, text in ballot_of(prompt).items() if text == proposal)


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(self, provider_name: str = "mock", response_content: str = "Mock response") -> None:
        self._name = provider_name
        self._response_content = response_content
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because generate is defined in the class body below.
        self.generate = AsyncMock(  # type: ignore[assignment]
            return_value=Completion(
                provider=provider_name,
                model="mock-model",
                content=response_content,
                latency_sec=0.1,
                token_count=10,
            )
        )

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def generate(self, messages: list[dict[str, str]], params: GenerationParams) -> Completion:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return Completion(self._name, "mock-model", self._response_content, 0.1, 10)


class ScriptedProvider(AIProvider):
    """Provider whose reply is computed from the chat context.

    ``responder`` gets the message list and returns text, or raises
    ProviderError to simulate a failure. Every context is recorded.
    """

    def __init__(self, provider_name: str, responder: Callable[[list[dict[str, str]]], str]) -> None:
        self._name = provider_name
        self._responder = responder
        self.calls: list[list[dict[str, str]]] = []

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return f"{self._name}-model-1"

    async def generate(self, messages: list[dict[str, str]], params: GenerationParams) -> Completion:
        self.calls.append(messages)
        content = self._responder(messages)
        return Completion(self._name, self.model_string(), content, 0.01, 5)


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def make_gateway(sample_app_config: AppConfig) -> Callable[[dict[str, AIProvider]], InvocationGateway]:
    def _make(providers: dict[str, AIProvider]) -> InvocationGateway:
        return InvocationGateway(providers, sample_app_config.models)
    return _make


@pytest.fixture
def make_session(sample_app_config: AppConfig, make_gateway) -> Callable[..., ConversationSession]:
    def _make(providers: dict[str, AIProvider]) -> ConversationSession:
        return ConversationSession(sample_app_config, make_gateway(providers), rng=random.Random(7))
    return _make

