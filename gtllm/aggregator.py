"""Interpret a round's completions: convergence, votes, intents and verdicts."""

import logging
import re
from collections import Counter

from gtllm.models import Mode, RoundOutcome, Verdict, VerdictKind, Vote

logger = logging.getLogger(__name__)

INTENT_COLLABORATE = "collaborate"

_VOTE_RE = re.compile(r"VOTE\s*:\s*[*_`\s]*(?:Proposal\s+)?([A-Z])\b", re.IGNORECASE)
_WINNER_RE = re.compile(r"WINNER\s*:\s*[*_`\s]*(?:Challenger\s+)?(A|B|DRAW)\b", re.IGNORECASE)
_INTENT_RE = re.compile(r"\b(COLLABORATE|COMPETE)\b", re.IGNORECASE)
_YES_NO_RE = re.compile(r"\b(YES|NO)\b", re.IGNORECASE)


def normalize(text: str) -> str:
    """Collapse whitespace so formatting noise does not break exact matching."""
    return " ".join(text.split())


def proposals_identical(proposals: dict[str, str]) -> bool:
    return len({normalize(text) for text in proposals.values()}) == 1


def parse_yes_no(text: str) -> bool | None:
    match = _YES_NO_RE.search(text)
    if match is None:
        return None
    return match.group(1).upper() == "YES"


def _rationale(text: str, match: re.Match) -> str | None:
    rationale = (text[: match.start()] + text[match.end():]).strip()
    return rationale or None


def parse_vote(voter: str, text: str, ballot: dict[str, str]) -> Vote | None:
    """Read the last ``VOTE: <label>`` line and resolve it through the voter's ballot.

    Returns None when no vote line is present or the label is not on the ballot.
    """
    matches = list(_VOTE_RE.finditer(text))
    if not matches:
        logger.warning("Voter %s gave no parseable vote", voter)
        return None
    match = matches[-1]
    label = match.group(1).upper()
    candidate = ballot.get(label)
    if candidate is None:
        logger.warning("Voter %s voted for unknown proposal %s", voter, label)
        return None
    return Vote(voter=voter, candidate=candidate, rationale=_rationale(text, match))


def discard_self_votes(votes: list[Vote]) -> list[Vote]:
    """Drop any vote a voter cast for itself. Never configurable."""
    valid = []
    for vote in votes:
        if vote.voter == vote.candidate:
            logger.warning("Discarding self-vote by %s", vote.voter)
            continue
        valid.append(vote)
    return valid


def tally_votes(votes: list[Vote], round_index: int, proposals: dict[str, str]) -> Verdict:
    """Strict majority of valid votes wins; anything else is an explicit non-win.

    Equal top counts (including no valid votes at all) give a TIE verdict;
    a unique leader without a majority gives NO_CONSENSUS.
    """
    valid = discard_self_votes(votes)
    counts = Counter(v.candidate for v in valid)
    tally = dict(counts.most_common())

    if not valid:
        return Verdict(kind=VerdictKind.TIE, round_index=round_index, tally=tally, candidates=dict(proposals))

    ranked = counts.most_common()
    leader, top = ranked[0]
    if top * 2 > len(valid):
        return Verdict(
            kind=VerdictKind.WINNER,
            round_index=round_index,
            winner=leader,
            text=proposals.get(leader),
            tally=tally,
        )

    kind = VerdictKind.TIE if len(ranked) > 1 and ranked[1][1] == top else VerdictKind.NO_CONSENSUS
    return Verdict(kind=kind, round_index=round_index, tally=tally, candidates=dict(proposals))


def parse_moderator_verdict(text: str, labels: dict[str, str], round_index: int) -> Verdict | None:
    """Adopt the moderator's stated winner verbatim. None if no WINNER line."""
    matches = list(_WINNER_RE.finditer(text))
    if not matches:
        return None
    choice = matches[-1].group(1).upper()
    if choice == "DRAW":
        return Verdict(kind=VerdictKind.DRAW, round_index=round_index, rationale=text)
    return Verdict(
        kind=VerdictKind.WINNER,
        round_index=round_index,
        winner=labels[choice],
        rationale=text,
    )


def parse_intent(text: str) -> str | None:
    """The last COLLABORATE/COMPETE keyword wins, like the final VOTE line does."""
    matches = _INTENT_RE.findall(text)
    if not matches:
        return None
    return matches[-1].lower()


def route_by_intents(intents: dict[str, str]) -> Mode:
    """Strict majority for collaborate routes Collaborative; ties and the rest go Competitive."""
    collaborate = sum(1 for v in intents.values() if v == INTENT_COLLABORATE)
    if collaborate * 2 > len(intents):
        return Mode.COLLABORATIVE
    return Mode.COMPETITIVE


class ResponseAggregator:
    """Turns one round's successful completions into a round outcome and optional verdict."""

    def __init__(self, convergence: str = "exact") -> None:
        self.convergence = convergence

    def resolve_collaborative(
        self,
        proposals: dict[str, str],
        roster_size: int,
        round_index: int,
        at_cap: bool,
        judged_same: bool | None = None,
    ) -> tuple[RoundOutcome, Verdict | None]:
        """Decide agreement for a collaborative round.

        ``proposals`` only holds successful responses. Agreement requires every
        one of them to be equivalent and, on rosters larger than one, at least
        two of them. ``judged_same`` carries the judge agent's answer when the
        judge policy is active.
        """
        enough = len(proposals) >= min(2, roster_size)
        if self.convergence == "judge":
            same = bool(judged_same) or proposals_identical(proposals)
        else:
            same = proposals_identical(proposals)

        if enough and same:
            agreed_text = next(iter(proposals.values()))
            logger.info("Round %d: proposals converged", round_index)
            return RoundOutcome.AGREED, Verdict(
                kind=VerdictKind.CONSENSUS, round_index=round_index, text=agreed_text,
            )

        if at_cap:
            logger.info("Round %d: round cap reached without consensus", round_index)
            return RoundOutcome.DISAGREED, Verdict(
                kind=VerdictKind.NO_CONSENSUS, round_index=round_index, candidates=dict(proposals),
            )
        return RoundOutcome.DISAGREED, None

    def resolve_competitive(
        self,
        votes: list[Vote],
        proposals: dict[str, str],
        round_index: int,
    ) -> tuple[RoundOutcome, Verdict]:
        return RoundOutcome.VOTED, tally_votes(votes, round_index, proposals)
