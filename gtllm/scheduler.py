"""Turn scheduling: which agents speak next, and with what context."""

import logging
import random
from dataclasses import dataclass, field

from config.config_loader import PromptsConfig
from gtllm.errors import ConfigError
from gtllm.models import USER, Agent, ConversationState, Message, Mode

logger = logging.getLogger(__name__)

MODE_NAMES = {
    Mode.STANDARD: "Standard",
    Mode.PVP: "PvP",
    Mode.COLLABORATIVE: "Collaborative",
    Mode.COMPETITIVE: "Competitive",
    Mode.CHOICE: "LLM's Choice",
}

# Steps an invocation can belong to
STEP_REPLY = "reply"
STEP_EXCHANGE = "exchange"
STEP_JUDGEMENT = "judgement"
STEP_PROPOSAL = "proposal"
STEP_VOTE = "vote"
STEP_INTENT = "intent"
STEP_CONVERGENCE = "convergence"

ROLE_PARTICIPANT = "participant"
ROLE_CHALLENGER = "challenger"
ROLE_MODERATOR = "moderator"
ROLE_COLLABORATOR = "collaborator"
ROLE_PROPOSER = "proposer"
ROLE_JUDGE = "judge"

PVP_LABELS = ("A", "B")

_MULTI_AGENT_MODES = frozenset({Mode.PVP, Mode.COMPETITIVE, Mode.CHOICE})


@dataclass(frozen=True)
class Invocation:
    agent: Agent
    step: str
    context: tuple[dict[str, str], ...]
    sources: tuple[Message, ...] = ()          # transcript messages the context was built from
    ballot: dict[str, str] = field(default_factory=dict)   # pseudonym -> agent id


@dataclass(frozen=True)
class InvocationPlan:
    round_index: int
    step: str
    invocations: tuple[Invocation, ...]
    concurrent: bool = True


def validate_roster(
    mode: Mode,
    agents: list[Agent],
    judge: Agent | None = None,
    convergence: str = "exact",
) -> None:
    """Reject roster/mode combinations before any invocation is issued.

    Raises:
        ConfigError: On an empty roster, a single agent in a multi-agent mode,
            a PvP roster that is not two challengers plus a moderator,
            duplicate agent ids, or judge convergence without a judge.
    """
    if not agents:
        raise ConfigError("Roster is empty")
    ids = [a.id for a in agents]
    if len(set(ids)) != len(ids):
        raise ConfigError(f"Duplicate agent ids in roster: {ids}")
    if mode in _MULTI_AGENT_MODES and len(agents) < 2:
        raise ConfigError(f"{MODE_NAMES[mode]} mode needs at least 2 agents, got {len(agents)}")
    if mode is Mode.PVP:
        challengers = [a for a in agents if a.role == ROLE_CHALLENGER]
        moderators = [a for a in agents if a.role == ROLE_MODERATOR]
        if len(challengers) != 2 or len(moderators) != 1 or len(agents) != 3:
            raise ConfigError("PvP mode needs exactly 2 challengers and 1 moderator")
    if mode in (Mode.COLLABORATIVE, Mode.CHOICE) and convergence == "judge" and judge is None:
        raise ConfigError("Judge convergence policy needs a judge agent")


def latest_user_message(messages: list[Message], before_round: int) -> Message:
    for message in reversed(messages):
        if message.author == USER and message.round < before_round:
            return message
    raise ConfigError("No user message to respond to")


def _merge_consecutive(context: list[dict[str, str]]) -> list[dict[str, str]]:
    """Collapse consecutive same-role messages; some SDKs require strict alternation."""
    merged: list[dict[str, str]] = []
    for msg in context:
        if merged and merged[-1]["role"] == msg["role"]:
            merged[-1] = {"role": msg["role"], "content": merged[-1]["content"] + "\n\n" + msg["content"]}
        else:
            merged.append(dict(msg))
    return merged


def format_ballot(proposals: list[tuple[str, str]], rng: random.Random) -> tuple[str, dict[str, str]]:
    """Shuffle (agent_id, text) proposals and label them anonymously.

    Returns:
        (ballot_block, label -> agent id mapping)
    """
    shuffled = list(proposals)
    rng.shuffle(shuffled)
    labels = [chr(ord("A") + i) for i in range(len(shuffled))]
    parts = [f"--- Proposal {label} ---\n{text}" for label, (_, text) in zip(labels, shuffled)]
    mapping = {label: agent_id for label, (agent_id, _) in zip(labels, shuffled)}
    return "\n\n".join(parts), mapping


class TurnScheduler:
    """Builds invocation plans for each mode and round step.

    Every plan for round N is built only from transcript messages with
    round < N; same-round material (proposals feeding a vote, proposals
    feeding a convergence check) is passed in explicitly.
    """

    def __init__(self, prompts: PromptsConfig, rng: random.Random | None = None) -> None:
        self._prompts = prompts
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Context helpers
    # ------------------------------------------------------------------

    def _system(self, state: ConversationState, agent: Agent) -> dict[str, str]:
        return {
            "role": "system",
            "content": self._prompts.system.format(
                label=agent.label, mode=MODE_NAMES[state.mode], role=agent.role,
            ),
        }

    def _context(
        self,
        state: ConversationState,
        agent: Agent,
        body: list[dict[str, str]],
    ) -> tuple[dict[str, str], ...]:
        return tuple(_merge_consecutive([self._system(state, agent), *body]))

    @staticmethod
    def _label(state: ConversationState, agent_id: str) -> str:
        for agent in state.agents:
            if agent.id == agent_id:
                return agent.label
        return agent_id

    # ------------------------------------------------------------------
    # Standard
    # ------------------------------------------------------------------

    def plan_standard(self, state: ConversationState, round_index: int) -> InvocationPlan:
        """One isolated thread per agent: user messages plus that agent's own replies."""
        invocations = []
        for agent in state.agents:
            thread = [
                m for m in state.messages
                if m.round < round_index and (m.author == USER or m.author == agent.id)
            ]
            body = [
                {"role": "assistant" if m.author == agent.id else "user", "content": m.content}
                for m in thread
            ]
            invocations.append(
                Invocation(agent, STEP_REPLY, self._context(state, agent, body), tuple(thread))
            )
        return InvocationPlan(round_index, STEP_REPLY, tuple(invocations))

    # ------------------------------------------------------------------
    # PvP
    # ------------------------------------------------------------------

    @staticmethod
    def challengers(state: ConversationState) -> list[Agent]:
        return [a for a in state.agents if a.role == ROLE_CHALLENGER]

    @staticmethod
    def moderator(state: ConversationState) -> Agent:
        return next(a for a in state.agents if a.role == ROLE_MODERATOR)

    def plan_pvp_exchange(self, state: ConversationState, round_index: int) -> InvocationPlan:
        """Both challengers answer concurrently; after round 1 each sees the opponent's last reply."""
        question = latest_user_message(state.messages, round_index)
        first, second = self.challengers(state)
        invocations = []
        for agent, opponent in ((first, second), (second, first)):
            previous = [
                m for m in state.messages
                if m.author == opponent.id and m.round < round_index and m.kind == "reply"
            ]
            if previous:
                last = previous[-1]
                instruction = self._prompts.pvp_rebuttal.format(
                    round=round_index, question=question.content, opponent_response=last.content,
                )
                sources = (question, last)
            else:
                instruction = self._prompts.pvp_opening.format(question=question.content)
                sources = (question,)
            body = [{"role": "user", "content": instruction}]
            invocations.append(
                Invocation(agent, STEP_EXCHANGE, self._context(state, agent, body), sources)
            )
        return InvocationPlan(round_index, STEP_EXCHANGE, tuple(invocations))

    def plan_pvp_judgement(self, state: ConversationState, round_index: int) -> InvocationPlan:
        """Single moderator invocation over the full exchange transcript."""
        question = latest_user_message(state.messages, round_index)
        first, second = self.challengers(state)
        labels = dict(zip(PVP_LABELS, (first.id, second.id)))
        names = {first.id: "Challenger A", second.id: "Challenger B"}

        exchange = [
            m for m in state.messages
            if m.round < round_index and m.author in names and m.kind == "reply"
        ]
        parts: list[str] = []
        for rnd in sorted({m.round for m in exchange}):
            parts.append(f"### Round {rnd}")
            for m in exchange:
                if m.round == rnd:
                    parts.append(f"**{names[m.author]}**\n{m.content}")
        transcript = "\n\n".join(parts)

        moderator = self.moderator(state)
        instruction = self._prompts.pvp_moderator.format(question=question.content, transcript=transcript)
        body = [{"role": "user", "content": instruction}]
        invocation = Invocation(
            moderator,
            STEP_JUDGEMENT,
            self._context(state, moderator, body),
            (question, *exchange),
            ballot=labels,
        )
        return InvocationPlan(round_index, STEP_JUDGEMENT, (invocation,), concurrent=False)

    # ------------------------------------------------------------------
    # Collaborative
    # ------------------------------------------------------------------

    def plan_collaborative(self, state: ConversationState, round_index: int) -> InvocationPlan:
        """Every agent sees the question and all earlier proposals, its own as assistant turns."""
        question = latest_user_message(state.messages, round_index)
        earlier = [
            m for m in state.messages
            if m.kind == "proposal" and question.round < m.round < round_index
        ]
        opening = self._prompts.collaborative_initial.format(question=question.content)

        invocations = []
        for agent in state.agents:
            body = [{"role": "user", "content": opening}]
            for rnd in sorted({m.round for m in earlier}):
                in_round = [m for m in earlier if m.round == rnd]
                body.extend(
                    {"role": "assistant", "content": m.content}
                    for m in in_round if m.author == agent.id
                )
                body.extend(
                    {"role": "user", "content": f"[{self._label(state, m.author)}]: {m.content}"}
                    for m in in_round if m.author != agent.id
                )
            if earlier:
                body.append({
                    "role": "user",
                    "content": self._prompts.collaborative_refine.format(
                        round=round_index, question=question.content,
                    ),
                })
            invocations.append(
                Invocation(agent, STEP_PROPOSAL, self._context(state, agent, body), (question, *earlier))
            )
        return InvocationPlan(round_index, STEP_PROPOSAL, tuple(invocations))

    def plan_convergence_check(
        self,
        state: ConversationState,
        round_index: int,
        proposals: dict[str, str],
    ) -> InvocationPlan:
        """Ask the judge agent whether this round's proposals are the same solution."""
        if state.judge is None:
            raise ConfigError("Judge convergence policy needs a judge agent")
        question = latest_user_message(state.messages, round_index)
        block = "\n\n".join(
            f"--- Proposal {i} ---\n{text}" for i, text in enumerate(proposals.values(), start=1)
        )
        instruction = self._prompts.convergence_judge.format(question=question.content, proposals=block)
        body = [{"role": "user", "content": instruction}]
        invocation = Invocation(
            state.judge, STEP_CONVERGENCE, self._context(state, state.judge, body), (question,),
        )
        return InvocationPlan(round_index, STEP_CONVERGENCE, (invocation,), concurrent=False)

    # ------------------------------------------------------------------
    # Competitive
    # ------------------------------------------------------------------

    def plan_proposals(self, state: ConversationState, round_index: int) -> InvocationPlan:
        """Isolated concurrent proposals: nobody sees a peer's answer."""
        question = latest_user_message(state.messages, round_index)
        instruction = self._prompts.competitive_proposal.format(question=question.content)
        invocations = tuple(
            Invocation(
                agent,
                STEP_PROPOSAL,
                self._context(state, agent, [{"role": "user", "content": instruction}]),
                (question,),
            )
            for agent in state.agents
        )
        return InvocationPlan(round_index, STEP_PROPOSAL, invocations)

    def plan_votes(
        self,
        state: ConversationState,
        round_index: int,
        proposals: dict[str, str],
    ) -> InvocationPlan:
        """Every agent gets its own shuffled, pseudonymized ballot of the *other* proposals."""
        question = latest_user_message(state.messages, round_index)
        invocations = []
        for agent in state.agents:
            candidates = [(aid, text) for aid, text in proposals.items() if aid != agent.id]
            if not candidates:
                logger.warning("Agent %s has no candidates to vote for in round %d", agent.id, round_index)
                continue
            block, mapping = format_ballot(candidates, self._rng)
            logger.debug("Round %d ballot for %s: %s", round_index, agent.id, mapping)
            instruction = self._prompts.competitive_vote.format(question=question.content, ballot=block)
            invocations.append(
                Invocation(
                    agent,
                    STEP_VOTE,
                    self._context(state, agent, [{"role": "user", "content": instruction}]),
                    (question,),
                    ballot=mapping,
                )
            )
        return InvocationPlan(round_index, STEP_VOTE, tuple(invocations))

    # ------------------------------------------------------------------
    # LLM's Choice
    # ------------------------------------------------------------------

    def plan_intents(self, state: ConversationState, round_index: int) -> InvocationPlan:
        """Forced-choice query: collaborate or compete."""
        question = latest_user_message(state.messages, round_index)
        instruction = self._prompts.choice_intent.format(
            question=question.content, peer_count=len(state.agents) - 1,
        )
        invocations = tuple(
            Invocation(
                agent,
                STEP_INTENT,
                self._context(state, agent, [{"role": "user", "content": instruction}]),
                (question,),
            )
            for agent in state.agents
        )
        return InvocationPlan(round_index, STEP_INTENT, invocations)
