"""Anthropic Claude provider using anthropic SDK with native async."""

import logging
import os
import time

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from gtllm.models import Completion, FailureKind
from gtllm.providers.base import (
    AIProvider,
    GenerationParams,
    ProviderError,
    kind_from_status,
    split_system,
)

logger = logging.getLogger(__name__)


def _classify(exc: Exception) -> FailureKind:
    if isinstance(exc, (anthropic_sdk.AuthenticationError, anthropic_sdk.PermissionDeniedError)):
        return FailureKind.AUTH
    if isinstance(exc, anthropic_sdk.RateLimitError):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, anthropic_sdk.APITimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(exc, anthropic_sdk.APIStatusError):
        return kind_from_status(exc.status_code)
    return FailureKind.UNAVAILABLE


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", FailureKind.AUTH)
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def generate(self, messages: list[dict[str, str]], params: GenerationParams) -> Completion:
        start = time.monotonic()
        system, chat = split_system(messages)
        kwargs: dict = {
            "model": self._config.model,
            "max_tokens": params.max_tokens,
            "messages": chat,
        }
        if system:
            kwargs["system"] = system
        if params.temperature is not None:
            kwargs["temperature"] = params.temperature
        try:
            response = await self._client.messages.create(**kwargs)
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}", _classify(exc)) from exc

        latency = time.monotonic() - start

        if not response.content:
            raise ProviderError(self._config.name, "Empty response content", FailureKind.MALFORMED)

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._config.name, "No text blocks in response", FailureKind.MALFORMED)

        content = "\n".join(text_blocks)

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens

        logger.info("Anthropic %s: %.2fs, %s tokens", self._config.name, latency, token_count)

        return Completion(
            provider=self._config.name,
            model=self._config.model,
            content=content,
            latency_sec=latency,
            token_count=token_count,
        )
