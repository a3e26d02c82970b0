"""Tests for gtllm/models.py dataclasses."""

import dataclasses

import pytest

from gtllm.models import (
    Agent,
    Completion,
    ConversationSnapshot,
    Mode,
    Phase,
    Round,
    RoundOutcome,
    Verdict,
    VerdictKind,
)


def _snapshot(phase: Phase) -> ConversationSnapshot:
    return ConversationSnapshot(
        id="c1",
        mode=Mode.STANDARD,
        agents=(Agent("a", "a", "a"),),
        judge=None,
        messages=(),
        rounds=(),
        phase=phase,
        verdict=None,
        error=None,
        error_kind=None,
    )


def test_agent_default_role():
    assert Agent(id="claude", label="claude", model="claude").role == "participant"


def test_completion_optional_token_count():
    c = Completion(provider="gemini", model="gemini-2.5-flash", content="Some answer.", latency_sec=0.9, token_count=None)
    assert c.token_count is None


def test_round_defaults():
    rnd = Round(index=1, outcome=RoundOutcome.PENDING)
    assert rnd.messages == ()
    assert rnd.failures == ()
    assert rnd.intents == {}
    assert rnd.route is None


def test_verdict_defaults():
    verdict = Verdict(kind=VerdictKind.TIE, round_index=2)
    assert verdict.winner is None
    assert verdict.tally == {}
    assert verdict.candidates == {}


def test_resolved_round_is_immutable():
    rnd = Round(index=1, outcome=RoundOutcome.RESPONDED)
    with pytest.raises(dataclasses.FrozenInstanceError):
        rnd.outcome = RoundOutcome.FAILED  # type: ignore[misc]


@pytest.mark.parametrize("phase, terminal", [
    (Phase.INITIALIZING, False),
    (Phase.ROUND_PENDING, False),
    (Phase.ROUND_RESOLVING, False),
    (Phase.FINISHED, True),
    (Phase.ABORTED, True),
])
def test_snapshot_is_terminal(phase, terminal):
    assert _snapshot(phase).is_terminal is terminal


def test_mode_values_match_cli_names():
    assert [m.value for m in Mode] == ["standard", "pvp", "collaborative", "competitive", "llm_choice"]
