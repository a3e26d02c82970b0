"""Gemini provider using google-genai SDK with native async."""

import logging
import os
import time

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

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


def _to_contents(chat: list[dict[str, str]]) -> list[genai_types.Content]:
    """Gemini calls the assistant role 'model'."""
    return [
        genai_types.Content(
            role="model" if m["role"] == "assistant" else "user",
            parts=[genai_types.Part(text=m["content"])],
        )
        for m in chat
    ]


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", FailureKind.AUTH)
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def generate(self, messages: list[dict[str, str]], params: GenerationParams) -> Completion:
        start = time.monotonic()
        system, chat = split_system(messages)
        try:
            response = await self._client.aio.models.generate_content(
                model=self._config.model,
                contents=_to_contents(chat),
                config=genai_types.GenerateContentConfig(
                    max_output_tokens=params.max_tokens,
                    temperature=params.temperature,
                    system_instruction=system,
                ),
            )
        except genai_errors.APIError as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}", kind_from_status(exc.code)) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        if not response.text:
            raise ProviderError(self._config.name, "Empty response text", FailureKind.MALFORMED)

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        logger.info("Gemini %s: %.2fs, %s tokens", self._config.name, latency, token_count)

        return Completion(
            provider=self._config.name,
            model=self._config.model,
            content=response.text,
            latency_sec=latency,
            token_count=token_count,
        )
