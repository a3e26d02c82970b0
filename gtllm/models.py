"""Pure dataclasses for conversations, rounds, votes and verdicts. No logic, no deps."""

from dataclasses import dataclass, field
from enum import Enum


class Mode(str, Enum):
    STANDARD = "standard"
    PVP = "pvp"
    COLLABORATIVE = "collaborative"
    COMPETITIVE = "competitive"
    CHOICE = "llm_choice"


class Phase(str, Enum):
    INITIALIZING = "initializing"
    ROUND_PENDING = "round_pending"
    ROUND_RESOLVING = "round_resolving"
    FINISHED = "finished"
    ABORTED = "aborted"


class RoundOutcome(str, Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    AGREED = "agreed"
    DISAGREED = "disagreed"
    VOTED = "voted"
    JUDGED = "judged"
    FAILED = "failed"


class VerdictKind(str, Enum):
    WINNER = "winner"
    CONSENSUS = "consensus"
    NO_CONSENSUS = "no_consensus"
    TIE = "tie"
    DRAW = "draw"


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    MALFORMED = "malformed"
    UNAVAILABLE = "unavailable"


TERMINAL_PHASES = frozenset({Phase.FINISHED, Phase.ABORTED})

USER = "user"


@dataclass(frozen=True)
class Agent:
    id: str
    label: str
    model: str             # key into the configured models, e.g. "claude"
    role: str = "participant"


@dataclass(frozen=True)
class Message:
    author: str            # agent id, "user" or "system"
    content: str
    round: int
    timestamp: float
    kind: str = "reply"    # prompt, reply, proposal, vote, intent, judgement, review


@dataclass(frozen=True)
class Completion:
    provider: str
    model: str
    content: str
    latency_sec: float
    token_count: int | None


@dataclass(frozen=True)
class AgentFailure:
    agent_id: str
    kind: FailureKind
    message: str
    attempts: int = 1


@dataclass(frozen=True)
class Vote:
    voter: str
    candidate: str
    rationale: str | None = None


@dataclass(frozen=True)
class Verdict:
    kind: VerdictKind
    round_index: int
    winner: str | None = None
    text: str | None = None
    tally: dict[str, int] = field(default_factory=dict)
    rationale: str | None = None
    candidates: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Round:
    index: int
    outcome: RoundOutcome
    issued: tuple[tuple[str, str], ...] = ()      # (step, agent id)
    messages: tuple[Message, ...] = ()
    failures: tuple[AgentFailure, ...] = ()
    votes: tuple[Vote, ...] = ()
    intents: dict[str, str] = field(default_factory=dict)
    route: Mode | None = None


@dataclass
class ConversationState:
    id: str
    mode: Mode
    agents: list[Agent]
    judge: Agent | None = None
    messages: list[Message] = field(default_factory=list)
    rounds: list[Round] = field(default_factory=list)
    phase: Phase = Phase.INITIALIZING
    verdict: Verdict | None = None
    error: str | None = None
    error_kind: str | None = None


@dataclass(frozen=True)
class ConversationSnapshot:
    id: str
    mode: Mode
    agents: tuple[Agent, ...]
    judge: Agent | None
    messages: tuple[Message, ...]
    rounds: tuple[Round, ...]
    phase: Phase
    verdict: Verdict | None
    error: str | None
    error_kind: str | None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES
