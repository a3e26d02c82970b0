"""Conversation sessions: the surface the presentation layer talks to."""

import asyncio
import dataclasses
import logging
import random
import uuid
from collections.abc import AsyncIterator

from config.config_loader import AppConfig
from gtllm.aggregator import ResponseAggregator
from gtllm.engine import ModeStateMachine
from gtllm.errors import ConfigError
from gtllm.gateway import InvocationGateway
from gtllm.models import Agent, ConversationSnapshot, ConversationState, Mode
from gtllm.scheduler import (
    ROLE_CHALLENGER,
    ROLE_COLLABORATOR,
    ROLE_JUDGE,
    ROLE_MODERATOR,
    ROLE_PARTICIPANT,
    ROLE_PROPOSER,
    TurnScheduler,
)

logger = logging.getLogger(__name__)


def make_roster(models: list[str]) -> list[Agent]:
    """Build agents for a list of model keys; repeated models get numbered ids."""
    seen: dict[str, int] = {}
    agents = []
    for model in models:
        seen[model] = seen.get(model, 0) + 1
        count = seen[model]
        agent_id = model if count == 1 else f"{model}-{count}"
        agents.append(Agent(id=agent_id, label=agent_id, model=model))
    return agents


def assign_roles(mode: Mode, agents: list[Agent]) -> list[Agent]:
    """Roles are mode-specific. PvP: first two challenge, the last moderates."""
    if mode is Mode.PVP:
        return [
            dataclasses.replace(a, role=ROLE_MODERATOR if i == len(agents) - 1 and i >= 2 else ROLE_CHALLENGER)
            for i, a in enumerate(agents)
        ]
    role = {
        Mode.STANDARD: ROLE_PARTICIPANT,
        Mode.COLLABORATIVE: ROLE_COLLABORATOR,
        Mode.COMPETITIVE: ROLE_PROPOSER,
        Mode.CHOICE: ROLE_PROPOSER,
    }[mode]
    return [dataclasses.replace(a, role=role) for a in agents]


class ConversationSession:
    """Owns the conversations of one chat context, one state machine each.

    Nothing is shared between conversations; each machine alone mutates its
    own state.
    """

    def __init__(
        self,
        config: AppConfig,
        gateway: InvocationGateway,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._rng = rng
        self._machines: dict[str, ModeStateMachine] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def _machine(self, conversation_id: str) -> ModeStateMachine:
        try:
            return self._machines[conversation_id]
        except KeyError:
            raise ConfigError(f"Unknown conversation: {conversation_id}") from None

    def start(
        self,
        mode: Mode,
        roster: list[Agent],
        judge: Agent | None = None,
        convergence: str | None = None,
    ) -> str:
        """Create a conversation and validate it before any invocation.

        Raises:
            ConfigError: Invalid roster for the mode or an unknown model.
        """
        for agent in [*roster, *([judge] if judge else [])]:
            if not self._gateway.has_model(agent.model):
                raise ConfigError(f"No provider available for model '{agent.model}' (agent {agent.id})")

        defaults = self._config.defaults
        policy = convergence or defaults.convergence
        conversation_id = uuid.uuid4().hex[:12]
        state = ConversationState(
            id=conversation_id,
            mode=mode,
            agents=assign_roles(mode, roster),
            judge=dataclasses.replace(judge, role=ROLE_JUDGE) if judge else None,
        )
        machine = ModeStateMachine(
            state=state,
            gateway=self._gateway,
            scheduler=TurnScheduler(self._config.prompts, rng=self._rng),
            aggregator=ResponseAggregator(policy),
            retry=self._config.retry,
            round_cap=defaults.round_cap_for(mode.value),
            pvp_rounds=defaults.pvp_rounds,
        )
        machine.initialize()
        self._machines[conversation_id] = machine
        logger.info(
            "Started %s conversation %s with %s",
            mode.value, conversation_id, ", ".join(a.id for a in roster),
        )
        return conversation_id

    async def submit_user_message(self, conversation_id: str, text: str) -> ConversationSnapshot:
        """Run the conversation forward on a user message and return the resulting snapshot.

        Raises:
            ConfigError: Conversation unknown, terminal, or busy.
            RoundAbortError: Too few agents responded; the conversation is Aborted.
            AuthError: A provider rejected its credentials; the conversation is Aborted.
        """
        machine = self._machine(conversation_id)
        task = asyncio.create_task(machine.advance(text))
        self._tasks[conversation_id] = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._tasks.pop(conversation_id, None)

        if task.cancelled():
            return machine.snapshot()
        exc = task.exception()
        if exc is not None:
            raise exc
        return task.result()

    async def cancel(self, conversation_id: str) -> ConversationSnapshot:
        """Cancel any in-flight round and abort the conversation.

        Waits for the round to acknowledge cancellation, but never longer than
        the configured cancellation timeout.
        """
        machine = self._machine(conversation_id)
        task = self._tasks.get(conversation_id)
        if task is not None and not task.done():
            task.cancel()
            timeout = self._config.defaults.cancel_timeout_sec
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                logger.warning(
                    "Conversation %s did not acknowledge cancellation within %.1fs",
                    conversation_id, timeout,
                )
        machine.abort("Cancelled by user", "cancelled")
        return machine.snapshot()

    def request_verdict(self, conversation_id: str) -> None:
        self._machine(conversation_id).request_verdict()

    def close(self, conversation_id: str) -> ConversationSnapshot:
        machine = self._machine(conversation_id)
        machine.close()
        return machine.snapshot()

    def snapshot(self, conversation_id: str) -> ConversationSnapshot:
        return self._machine(conversation_id).snapshot()

    def subscribe(self, conversation_id: str) -> AsyncIterator[ConversationSnapshot]:
        """Finite stream of snapshots, ending at Finished or Aborted. Not restartable."""
        return self._machine(conversation_id).subscribe()

    def end(self) -> None:
        """Discard every conversation of this session."""
        for conversation_id, machine in self._machines.items():
            task = self._tasks.pop(conversation_id, None)
            if task is not None and not task.done():
                task.cancel()
                machine.abort("Session ended", "cancelled")
            elif not machine.busy:
                machine.close()
        self._machines.clear()
