"""Orchestration error taxonomy surfaced to the session layer."""


class OrchestrationError(Exception):
    """Base for all errors the engine raises out of a conversation."""


class ConfigError(OrchestrationError):
    """Invalid roster/mode combination or settings; raised before any invocation."""


class RoundAbortError(OrchestrationError):
    """Too few successful responses for the mode to produce an outcome."""

    def __init__(self, round_index: int, message: str) -> None:
        self.round_index = round_index
        super().__init__(f"Round {round_index} aborted: {message}")


class AuthError(OrchestrationError):
    """A provider rejected its credentials. Never retried."""

    def __init__(self, agent_id: str, message: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"[{agent_id}] authentication failed: {message}")
