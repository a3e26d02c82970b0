"""OpenAI provider using openai SDK with native async.

Also serves any OpenAI-compatible endpoint (OpenRouter, xAI, DeepSeek) when the
model config carries a ``base_url``.
"""

import logging
import os
import time

import openai
from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from gtllm.models import Completion, FailureKind
from gtllm.providers.base import AIProvider, GenerationParams, ProviderError, kind_from_status

logger = logging.getLogger(__name__)


def _classify(exc: Exception) -> FailureKind:
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return FailureKind.AUTH
    if isinstance(exc, openai.RateLimitError):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, openai.APITimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(exc, openai.APIStatusError):
        return kind_from_status(exc.status_code)
    return FailureKind.UNAVAILABLE


class OpenAIProvider(AIProvider):
    """OpenAI (or OpenAI-compatible) provider via openai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", FailureKind.AUTH)
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def generate(self, messages: list[dict[str, str]], params: GenerationParams) -> Completion:
        start = time.monotonic()
        kwargs: dict = {
            "model": self._config.model,
            "messages": messages,
            "max_tokens": params.max_tokens,
        }
        if params.temperature is not None:
            kwargs["temperature"] = params.temperature
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}", _classify(exc)) from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._config.name, "Empty response content", FailureKind.MALFORMED)

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens

        logger.info("OpenAI %s: %.2fs, %s tokens", self._config.name, latency, token_count)

        return Completion(
            provider=self._config.name,
            model=self._config.model,
            content=choice.message.content,
            latency_sec=latency,
            token_count=token_count,
        )
