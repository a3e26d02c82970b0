"""Rich console rendering of conversation rounds and verdicts."""

import logging

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from gtllm.models import ConversationSnapshot, Message, Round, Verdict, VerdictKind
from gtllm.scheduler import MODE_NAMES

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_KIND_TITLES = {
    "reply": "",
    "proposal": "proposal",
    "vote": "vote",
    "intent": "intent",
    "judgement": "judgement",
    "review": "convergence check",
}


def _preview(text: str, words: int = 80) -> str:
    """Return first N words of a response."""
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def _labels(snapshot: ConversationSnapshot) -> dict[str, str]:
    labels = {a.id: a.label for a in snapshot.agents}
    if snapshot.judge is not None:
        labels[snapshot.judge.id] = snapshot.judge.label
    return labels


def _message_panel(message: Message, labels: dict[str, str], full: bool) -> Panel:
    title = f"[bold]{labels.get(message.author, message.author)}[/bold]"
    suffix = _KIND_TITLES.get(message.kind, message.kind)
    if suffix:
        title += f" [dim]{suffix}[/dim]"
    body = Markdown(message.content) if full else _preview(message.content)
    return Panel(body, title=title, border_style="dim")


def print_round(rnd: Round, snapshot: ConversationSnapshot, full: bool = False) -> None:
    """Print one resolved round: each message, then failures and routing."""
    labels = _labels(snapshot)
    header = f"[bold cyan]Round {rnd.index}[/bold cyan] [dim]{rnd.outcome.value}[/dim]"
    if rnd.route is not None:
        header += f" [dim]-> {MODE_NAMES[rnd.route]}[/dim]"
    console.print(Rule(header))
    if rnd.intents:
        declared = ", ".join(f"{labels.get(a, a)}: {i}" for a, i in rnd.intents.items())
        console.print(Text(f"Intents: {declared}", style="dim"))
    for message in rnd.messages:
        console.print(_message_panel(message, labels, full))
    for failure in rnd.failures:
        console.print(
            f"[red]no response[/red] {labels.get(failure.agent_id, failure.agent_id)}: "
            f"{failure.kind.value} after {failure.attempts} attempt(s)"
        )


def _tally_table(verdict: Verdict, snapshot: ConversationSnapshot) -> Table:
    labels = _labels(snapshot)
    rnd = next((r for r in snapshot.rounds if r.index == verdict.round_index), None)
    voters: dict[str, list[str]] = {}
    if rnd is not None:
        for vote in rnd.votes:
            voters.setdefault(vote.candidate, []).append(labels.get(vote.voter, vote.voter))

    table = Table(title="Vote Breakdown")
    table.add_column("Model")
    table.add_column("Votes", justify="right")
    table.add_column("Voted by")
    for candidate, count in verdict.tally.items():
        name = labels.get(candidate, candidate)
        if candidate == verdict.winner:
            name += " (winner)"
        table.add_row(name, str(count), ", ".join(voters.get(candidate, [])))
    return table


def print_verdict(snapshot: ConversationSnapshot) -> None:
    """Print the terminal verdict of a finished conversation."""
    verdict = snapshot.verdict
    if verdict is None:
        console.print(Rule("[bold]Conversation closed[/bold]"))
        return

    labels = _labels(snapshot)
    console.print(Rule(f"[bold green]Verdict[/bold green] [dim]round {verdict.round_index}[/dim]"))
    if verdict.kind is VerdictKind.WINNER:
        console.print(Text(f"Winner: {labels.get(verdict.winner, verdict.winner)}", style="bold green"))
    elif verdict.kind is VerdictKind.CONSENSUS:
        console.print(Text("Consensus reached", style="bold green"))
    elif verdict.kind is VerdictKind.DRAW:
        console.print(Text("The moderator declared a draw", style="bold yellow"))
    elif verdict.kind is VerdictKind.TIE:
        console.print(Text("Tie: no consensus", style="bold yellow"))
    else:
        console.print(Text("No consensus", style="bold yellow"))

    if verdict.tally:
        console.print(_tally_table(verdict, snapshot))
    if verdict.text:
        console.print(Panel(Markdown(verdict.text), title="Answer", border_style="green"))
    if verdict.rationale:
        console.print(Panel(Markdown(verdict.rationale), title="Moderator", border_style="cyan"))
    for agent_id, text in verdict.candidates.items():
        console.print(
            Panel(Markdown(text), title=f"Candidate: {labels.get(agent_id, agent_id)}", border_style="yellow")
        )


def print_aborted(snapshot: ConversationSnapshot) -> None:
    console.print(Rule("[bold red]Conversation aborted[/bold red]"))
    console.print(Text(f"{snapshot.error_kind}: {snapshot.error}", style="red"))
    console.print(Text(f"Resolved rounds kept: {len(snapshot.rounds)}", style="dim"))
