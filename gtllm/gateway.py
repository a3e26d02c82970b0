"""Invocation gateway: one request/response exchange for an agent and a chat context."""

import asyncio
import logging

from config.config_loader import AppConfig, ModelConfig
from gtllm.models import Agent, Completion, FailureKind
from gtllm.providers.anthropic import AnthropicProvider
from gtllm.providers.base import AIProvider, GenerationParams, ProviderError
from gtllm.providers.gemini import GeminiProvider
from gtllm.providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def build_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build a provider for every model with an API key. Returns dict keyed by model name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_providers):
        model_cfg = config.models[name]
        provider_cls = PROVIDER_CLASSES.get(model_cfg.sdk)
        if provider_cls is None:
            logger.warning("Model '%s' uses unknown sdk '%s', skipping", name, model_cfg.sdk)
            continue
        try:
            providers[name] = provider_cls(model_cfg)
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


class InvocationGateway:
    """Dispatches agent invocations to the provider configured for the agent's model.

    Calls are independent of each other and safe to issue concurrently.
    """

    def __init__(self, providers: dict[str, AIProvider], models: dict[str, ModelConfig]) -> None:
        self._providers = providers
        self._models = models

    def has_model(self, model: str) -> bool:
        return model in self._providers

    def default_params(self, agent: Agent) -> GenerationParams:
        cfg = self._models[agent.model]
        return GenerationParams(max_tokens=cfg.max_tokens, temperature=cfg.temperature)

    def default_timeout(self, agent: Agent) -> float:
        return float(self._models[agent.model].timeout_sec)

    async def invoke(
        self,
        agent: Agent,
        context: list[dict[str, str]],
        params: GenerationParams | None = None,
        timeout: float | None = None,
    ) -> Completion:
        """Run one completion for ``agent``.

        Raises:
            ProviderError: With ``kind`` TIMEOUT when ``timeout`` elapses, or
                whatever kind the provider reported.
        """
        provider = self._providers.get(agent.model)
        if provider is None:
            raise ProviderError(agent.model, f"No provider configured for agent {agent.id}")
        if params is None:
            params = self.default_params(agent)
        if timeout is None:
            timeout = self.default_timeout(agent)

        try:
            return await asyncio.wait_for(provider.generate(context, params), timeout=timeout)
        except TimeoutError as exc:
            raise ProviderError(
                provider.name(), f"Request timed out after {timeout:g}s", FailureKind.TIMEOUT
            ) from exc
