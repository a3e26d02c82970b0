"""Mode state machine: drives one conversation round by round."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from config.config_loader import RetryConfig
from gtllm.aggregator import (
    ResponseAggregator,
    parse_intent,
    parse_moderator_verdict,
    parse_vote,
    parse_yes_no,
    proposals_identical,
    route_by_intents,
)
from gtllm.errors import AuthError, ConfigError, RoundAbortError
from gtllm.gateway import InvocationGateway
from gtllm.models import (
    TERMINAL_PHASES,
    USER,
    AgentFailure,
    Completion,
    ConversationSnapshot,
    ConversationState,
    FailureKind,
    Message,
    Mode,
    Phase,
    Round,
    RoundOutcome,
    Verdict,
    Vote,
)
from gtllm.providers.base import ProviderError
from gtllm.scheduler import Invocation, InvocationPlan, TurnScheduler, validate_roster

logger = logging.getLogger(__name__)

_RETRYABLE = frozenset({FailureKind.TIMEOUT, FailureKind.RATE_LIMITED})

# Fewest successful proposals for a competitive vote to mean anything
_MIN_COMPETITIVE_PROPOSALS = 2

SlotResult = Completion | AgentFailure


@dataclass
class _RoundDraft:
    """Mutable round record while pending; frozen into a Round on resolution."""

    index: int
    issued: list[tuple[str, str]] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    failures: list[AgentFailure] = field(default_factory=list)
    votes: list[Vote] = field(default_factory=list)
    intents: dict[str, str] = field(default_factory=dict)
    route: Mode | None = None

    def add(self, author: str, content: str, kind: str) -> Message:
        message = Message(author=author, content=content, round=self.index, timestamp=time.time(), kind=kind)
        self.messages.append(message)
        return message

    def freeze(self, outcome: RoundOutcome) -> Round:
        return Round(
            index=self.index,
            outcome=outcome,
            issued=tuple(self.issued),
            messages=tuple(self.messages),
            failures=tuple(self.failures),
            votes=tuple(self.votes),
            intents=dict(self.intents),
            route=self.route,
        )


def _successes(results: dict[str, SlotResult]) -> dict[str, str]:
    return {aid: r.content for aid, r in results.items() if isinstance(r, Completion)}


class ModeStateMachine:
    """Owns one ConversationState and is the only thing that mutates it.

    Rounds run strictly one after another; within a round every planned
    invocation runs concurrently and the round resolves only once each has a
    completion, a failure, or has exhausted its retries.
    """

    def __init__(
        self,
        state: ConversationState,
        gateway: InvocationGateway,
        scheduler: TurnScheduler,
        aggregator: ResponseAggregator,
        retry: RetryConfig,
        round_cap: int,
        pvp_rounds: int = 1,
    ) -> None:
        self._state = state
        self._gateway = gateway
        self._scheduler = scheduler
        self._aggregator = aggregator
        self._retry = retry
        self._round_cap = round_cap
        self._pvp_rounds = pvp_rounds
        self._verdict_requested = False
        self._busy = False
        self._subscribers: list[asyncio.Queue[ConversationSnapshot]] = []

    # ------------------------------------------------------------------
    # Snapshots and subscription
    # ------------------------------------------------------------------

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def busy(self) -> bool:
        return self._busy

    def snapshot(self) -> ConversationSnapshot:
        s = self._state
        return ConversationSnapshot(
            id=s.id,
            mode=s.mode,
            agents=tuple(s.agents),
            judge=s.judge,
            messages=tuple(s.messages),
            rounds=tuple(s.rounds),
            phase=s.phase,
            verdict=s.verdict,
            error=s.error,
            error_kind=s.error_kind,
        )

    def _publish(self) -> None:
        snap = self.snapshot()
        for queue in self._subscribers:
            queue.put_nowait(snap)

    def _set_phase(self, phase: Phase) -> None:
        self._state.phase = phase
        self._publish()

    async def subscribe(self) -> AsyncIterator[ConversationSnapshot]:
        """Yield snapshots from now until the conversation is terminal."""
        queue: asyncio.Queue[ConversationSnapshot] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            snap = self.snapshot()
            yield snap
            while not snap.is_terminal:
                snap = await queue.get()
                yield snap
        finally:
            self._subscribers.remove(queue)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Validate the roster; Initializing -> RoundPending, or Aborted on ConfigError."""
        try:
            validate_roster(
                self._state.mode,
                self._state.agents,
                self._state.judge,
                self._aggregator.convergence,
            )
        except ConfigError as exc:
            self.abort(str(exc), "config")
            raise
        self._set_phase(Phase.ROUND_PENDING)

    def abort(self, reason: str, kind: str) -> None:
        """Move to Aborted. No-op once terminal, so a Finished verdict is never retracted."""
        if self._state.phase in TERMINAL_PHASES:
            return
        logger.warning("Conversation %s aborted (%s): %s", self._state.id, kind, reason)
        self._state.error = reason
        self._state.error_kind = kind
        self._set_phase(Phase.ABORTED)

    def close(self) -> None:
        """End the conversation from the user's side.

        An open Standard conversation finishes normally; any other mode that
        never reached a verdict is aborted.
        """
        if self._state.phase in TERMINAL_PHASES:
            return
        if self._busy:
            raise ConfigError("Cannot close a conversation while a round is in flight; cancel it instead")
        if self._state.mode is Mode.STANDARD:
            self._set_phase(Phase.FINISHED)
        else:
            self.abort("Closed before a verdict was reached", "closed")

    def request_verdict(self) -> None:
        """Ask PvP to hand over to the moderator after the current exchange round."""
        if self._state.mode is not Mode.PVP:
            raise ConfigError("Only PvP conversations take a user-triggered verdict")
        self._verdict_requested = True

    async def advance(self, text: str) -> ConversationSnapshot:
        """Append a user message and run rounds until the mode needs the user again."""
        state = self._state
        if state.phase in TERMINAL_PHASES:
            raise ConfigError(f"Conversation {state.id} is {state.phase.value}; start a new one")
        if state.phase is Phase.INITIALIZING:
            raise ConfigError(f"Conversation {state.id} was never initialized")
        if self._busy:
            raise ConfigError(f"Conversation {state.id} already has a round in flight")
        if state.mode is not Mode.STANDARD and state.messages:
            raise ConfigError(f"{state.mode.value} conversations take a single user message")

        self._busy = True
        try:
            state.messages.append(
                Message(author=USER, content=text, round=len(state.rounds), timestamp=time.time(), kind="prompt")
            )
            self._publish()
            await self._run_mode()
        except asyncio.CancelledError:
            self.abort("Cancelled while a round was in flight", "cancelled")
            raise
        except AuthError as exc:
            self.abort(str(exc), "auth")
            raise
        except RoundAbortError as exc:
            self.abort(str(exc), "round_abort")
            raise
        finally:
            self._busy = False
        return self.snapshot()

    async def _run_mode(self) -> None:
        mode = self._state.mode
        if mode is Mode.STANDARD:
            await self._standard_round()
        elif mode is Mode.PVP:
            exchanges = 0
            while True:
                await self._pvp_exchange_round()
                exchanges += 1
                if self._state.phase in TERMINAL_PHASES:
                    return
                if exchanges >= self._pvp_rounds or self._verdict_requested:
                    break
            await self._pvp_judgement_round()
        elif mode is Mode.COMPETITIVE:
            await self._competitive_round()
        else:
            while self._state.phase not in TERMINAL_PHASES:
                if mode is Mode.COLLABORATIVE:
                    await self._collaborative_round()
                else:
                    await self._choice_round()

    # ------------------------------------------------------------------
    # Round plumbing
    # ------------------------------------------------------------------

    def _new_round(self) -> _RoundDraft:
        draft = _RoundDraft(index=len(self._state.rounds) + 1)
        logger.info(
            "Conversation %s: starting round %d (%s)",
            self._state.id, draft.index, self._state.mode.value,
        )
        return draft

    def _resolve(self, draft: _RoundDraft, outcome: RoundOutcome, verdict: Verdict | None = None) -> None:
        """Freeze the round into history; finish if a verdict was reached."""
        if self._state.phase in TERMINAL_PHASES:
            logger.warning("Round %d resolved after conversation %s ended; discarded", draft.index, self._state.id)
            return
        self._state.phase = Phase.ROUND_RESOLVING
        self._state.rounds.append(draft.freeze(outcome))
        self._state.messages.extend(draft.messages)
        logger.info("Round %d resolved: %s", draft.index, outcome.value)
        if verdict is not None:
            self._state.verdict = verdict
            self._set_phase(Phase.FINISHED)
        else:
            self._set_phase(Phase.ROUND_PENDING)

    def _fail(self, draft: _RoundDraft, message: str) -> RoundAbortError:
        """Keep the failed round for inspection and build the abort error."""
        if self._state.phase not in TERMINAL_PHASES:
            self._state.rounds.append(draft.freeze(RoundOutcome.FAILED))
        return RoundAbortError(draft.index, message)

    async def _call_agent(self, invocation: Invocation) -> SlotResult:
        """Call one agent, retrying timeouts and rate limits.

        Never raises — returns AgentFailure on permanent failure. Each timeout
        retry gets ``timeout_multiplier`` times the previous timeout.
        """
        agent = invocation.agent
        timeout = self._gateway.default_timeout(agent)
        attempts = 0
        while True:
            attempts += 1
            try:
                return await self._gateway.invoke(agent, list(invocation.context), timeout=timeout)
            except ProviderError as exc:
                if exc.kind in _RETRYABLE and attempts <= self._retry.max_retries:
                    delay = 0.0
                    if exc.kind is FailureKind.TIMEOUT:
                        timeout *= self._retry.timeout_multiplier
                    else:
                        delay = self._retry.backoff_sec * attempts
                    logger.warning(
                        "Agent %s %s on attempt %d, retrying (timeout %.0fs, backoff %.1fs)",
                        agent.id, exc.kind.value, attempts, timeout, delay,
                    )
                    if delay:
                        await asyncio.sleep(delay)
                    continue
                logger.warning("Agent %s failed after %d attempt(s): %s", agent.id, attempts, exc)
                return AgentFailure(agent.id, exc.kind, str(exc), attempts)
            except Exception as exc:
                logger.warning("Agent %s unexpected failure: %s", agent.id, exc)
                return AgentFailure(agent.id, FailureKind.UNAVAILABLE, f"Unexpected error: {exc}", attempts)

    async def _execute(self, plan: InvocationPlan, draft: _RoundDraft) -> dict[str, SlotResult]:
        """Issue a plan and wait at the barrier for every slot.

        Results are keyed by agent id. An auth failure anywhere escalates.
        """
        draft.issued.extend((plan.step, inv.agent.id) for inv in plan.invocations)
        if plan.concurrent:
            outcomes = await asyncio.gather(*(self._call_agent(inv) for inv in plan.invocations))
        else:
            outcomes = [await self._call_agent(inv) for inv in plan.invocations]

        results: dict[str, SlotResult] = {}
        for inv, outcome in zip(plan.invocations, outcomes):
            results[inv.agent.id] = outcome
            if isinstance(outcome, AgentFailure):
                draft.failures.append(outcome)

        auth = next(
            (r for r in results.values() if isinstance(r, AgentFailure) and r.kind is FailureKind.AUTH),
            None,
        )
        if auth is not None:
            self._state.rounds.append(draft.freeze(RoundOutcome.FAILED))
            raise AuthError(auth.agent_id, auth.message)

        ok = len(_successes(results))
        if ok < len(plan.invocations):
            logger.warning(
                "Round %d %s: %d/%d agents responded",
                plan.round_index, plan.step, ok, len(plan.invocations),
            )
        return results

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def _standard_round(self) -> None:
        draft = self._new_round()
        results = await self._execute(self._scheduler.plan_standard(self._state, draft.index), draft)
        replies = _successes(results)
        if not replies:
            raise self._fail(draft, "every agent failed")
        for agent_id, content in replies.items():
            draft.add(agent_id, content, "reply")
        self._resolve(draft, RoundOutcome.RESPONDED)

    async def _pvp_exchange_round(self) -> None:
        draft = self._new_round()
        plan = self._scheduler.plan_pvp_exchange(self._state, draft.index)
        replies = _successes(await self._execute(plan, draft))
        if len(replies) < len(plan.invocations):
            raise self._fail(draft, "PvP needs both challengers to respond")
        for inv in plan.invocations:
            draft.add(inv.agent.id, replies[inv.agent.id], "reply")
        self._resolve(draft, RoundOutcome.RESPONDED)

    async def _pvp_judgement_round(self) -> None:
        draft = self._new_round()
        plan = self._scheduler.plan_pvp_judgement(self._state, draft.index)
        moderator = plan.invocations[0]
        result = (await self._execute(plan, draft))[moderator.agent.id]
        if isinstance(result, AgentFailure):
            raise self._fail(draft, f"moderator {moderator.agent.id} failed: {result.message}")

        verdict = parse_moderator_verdict(result.content, moderator.ballot, draft.index)
        draft.add(moderator.agent.id, result.content, "judgement")
        if verdict is None:
            draft.failures.append(
                AgentFailure(moderator.agent.id, FailureKind.MALFORMED, "Judgement names no WINNER")
            )
            raise self._fail(draft, f"moderator {moderator.agent.id} did not declare a winner")
        self._resolve(draft, RoundOutcome.JUDGED, verdict)

    async def _collaborative_steps(self, draft: _RoundDraft) -> tuple[RoundOutcome, Verdict | None]:
        plan = self._scheduler.plan_collaborative(self._state, draft.index)
        proposals = _successes(await self._execute(plan, draft))
        if not proposals:
            raise self._fail(draft, "no agent produced a proposal")
        for agent_id, content in proposals.items():
            draft.add(agent_id, content, "proposal")

        judged_same: bool | None = None
        if (
            self._aggregator.convergence == "judge"
            and len(proposals) > 1
            and not proposals_identical(proposals)
        ):
            judged_same = await self._ask_judge(draft, proposals)

        return self._aggregator.resolve_collaborative(
            proposals,
            roster_size=len(self._state.agents),
            round_index=draft.index,
            at_cap=draft.index >= self._round_cap,
            judged_same=judged_same,
        )

    async def _ask_judge(self, draft: _RoundDraft, proposals: dict[str, str]) -> bool:
        plan = self._scheduler.plan_convergence_check(self._state, draft.index, proposals)
        judge = plan.invocations[0].agent
        result = (await self._execute(plan, draft))[judge.id]
        if isinstance(result, AgentFailure):
            logger.warning("Judge %s failed; treating round %d as not converged", judge.id, draft.index)
            return False
        draft.add(judge.id, result.content, "review")
        answer = parse_yes_no(result.content)
        if answer is None:
            logger.warning("Judge %s gave no YES/NO answer in round %d", judge.id, draft.index)
        return bool(answer)

    async def _competitive_steps(self, draft: _RoundDraft) -> tuple[RoundOutcome, Verdict]:
        plan = self._scheduler.plan_proposals(self._state, draft.index)
        proposals = _successes(await self._execute(plan, draft))
        if len(proposals) < _MIN_COMPETITIVE_PROPOSALS:
            raise self._fail(
                draft, f"only {len(proposals)} proposal(s), need {_MIN_COMPETITIVE_PROPOSALS} for a vote",
            )
        for agent_id, content in proposals.items():
            draft.add(agent_id, content, "proposal")

        vote_plan = self._scheduler.plan_votes(self._state, draft.index, proposals)
        ballots = {inv.agent.id: inv.ballot for inv in vote_plan.invocations}
        for voter, content in _successes(await self._execute(vote_plan, draft)).items():
            draft.add(voter, content, "vote")
            vote = parse_vote(voter, content, ballots[voter])
            if vote is not None:
                draft.votes.append(vote)

        return self._aggregator.resolve_competitive(draft.votes, proposals, draft.index)

    async def _collaborative_round(self) -> None:
        draft = self._new_round()
        outcome, verdict = await self._collaborative_steps(draft)
        self._resolve(draft, outcome, verdict)

    async def _competitive_round(self) -> None:
        draft = self._new_round()
        outcome, verdict = await self._competitive_steps(draft)
        self._resolve(draft, outcome, verdict)

    async def _choice_round(self) -> None:
        draft = self._new_round()
        plan = self._scheduler.plan_intents(self._state, draft.index)
        answers = _successes(await self._execute(plan, draft))
        if not answers:
            raise self._fail(draft, "every agent failed to declare an intent")
        for agent_id, content in answers.items():
            draft.add(agent_id, content, "intent")
            intent = parse_intent(content)
            if intent is None:
                logger.warning("Agent %s declared no intent in round %d", agent_id, draft.index)
                continue
            draft.intents[agent_id] = intent

        draft.route = route_by_intents(draft.intents)
        logger.info("Round %d intents %s -> %s", draft.index, draft.intents, draft.route.value)

        if draft.route is Mode.COLLABORATIVE:
            outcome, verdict = await self._collaborative_steps(draft)
        else:
            outcome, verdict = await self._competitive_steps(draft)
        self._resolve(draft, outcome, verdict)
