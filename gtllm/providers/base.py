"""Abstract base for all AI model providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from gtllm.models import Completion, FailureKind

# Statuses that map onto a failure kind regardless of SDK
_STATUS_KINDS = {
    401: FailureKind.AUTH,
    403: FailureKind.AUTH,
    408: FailureKind.TIMEOUT,
    429: FailureKind.RATE_LIMITED,
}


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(
        self,
        provider_name: str,
        message: str,
        kind: FailureKind = FailureKind.UNAVAILABLE,
    ) -> None:
        self.provider_name = provider_name
        self.kind = kind
        super().__init__(f"[{provider_name}] {message}")


def kind_from_status(status: int | None) -> FailureKind:
    """Map an HTTP status code onto a failure kind."""
    if status is None:
        return FailureKind.UNAVAILABLE
    return _STATUS_KINDS.get(status, FailureKind.UNAVAILABLE)


@dataclass(frozen=True)
class GenerationParams:
    max_tokens: int
    temperature: float | None = None


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the configured model key (e.g. 'gemini', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def generate(
        self,
        messages: list[dict[str, str]],
        params: GenerationParams,
    ) -> Completion:
        """Generate a completion for a chat context.

        Args:
            messages: Ordered chat messages, each {"role": ..., "content": ...}.
                Roles are "system", "user" or "assistant".
            params: Generation parameters for this call.

        Returns:
            Completion dataclass with content and metadata.

        Raises:
            ProviderError: On API failure or invalid response, with ``kind`` set.
        """
        ...


def split_system(messages: list[dict[str, str]]) -> tuple[str | None, list[dict[str, str]]]:
    """Pull system messages out of a chat context for SDKs with a system slot."""
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    rest = [m for m in messages if m["role"] != "system"]
    return ("\n\n".join(system_parts) if system_parts else None), rest
