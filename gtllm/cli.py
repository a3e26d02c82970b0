"""Click CLI — loads config, builds the roster, runs one conversation and renders it."""

import asyncio
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from config.config_loader import AppConfig, load_config
from gtllm.errors import AuthError, ConfigError, RoundAbortError
from gtllm.gateway import InvocationGateway, build_providers
from gtllm.healthcheck import run_health_checks
from gtllm.models import Agent, Mode, Phase
from gtllm.output import print_aborted, print_round, print_verdict
from gtllm.prompt_file import models_from, parse_prompt_file
from gtllm.providers.base import AIProvider
from gtllm.scheduler import MODE_NAMES
from gtllm.session import ConversationSession, make_roster

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _determine_models(config: AppConfig, models_arg: str | None, meta: dict) -> list[str]:
    """CLI flag > front matter > config default roster."""
    return (
        models_from(models_arg)
        or models_from(meta.get("models"))
        or list(config.defaults.roster)
    )


def _build_roster(
    mode: Mode,
    models: list[str],
    moderator: str | None,
) -> list[Agent]:
    """PvP takes the first two models as challengers and appends the moderator."""
    if mode is Mode.PVP:
        if moderator is None:
            raise ConfigError("PvP mode needs a moderator (--moderator or defaults.moderator)")
        return make_roster([*models[:2], moderator])
    return make_roster(models)


def _build_judge(convergence: str, judge: str | None) -> Agent | None:
    if convergence != "judge":
        return None
    if judge is None:
        raise ConfigError("Judge convergence needs a judge model (--judge or defaults.judge)")
    return Agent(id=f"judge:{judge}", label=f"{judge} (judge)", model=judge)


def _apply_rounds(config: AppConfig, mode: Mode, rounds: int | None) -> None:
    if rounds is None:
        return
    if rounds < 1:
        raise ConfigError("--rounds must be at least 1")
    config.defaults.pvp_rounds = rounds
    config.defaults.mode_round_caps[mode.value] = rounds


def _check_providers(providers: dict[str, AIProvider], needed: set[str]) -> dict[str, AIProvider]:
    """Ping the providers the roster needs and ask whether to go on without failures."""
    console.print("\n[bold]Checking providers...[/bold]")
    to_check = {n: p for n, p in providers.items() if n in needed}
    results = asyncio.run(run_health_checks(to_check))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return providers

    working = {n: p for n, p in providers.items() if n not in failed_names}
    if not any(n in working for n in needed):
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}")
    console.print(f"Working providers: {', '.join(sorted(n for n in working if n in needed))}")
    if not click.confirm("Continue with working providers only?", default=True):
        sys.exit(0)
    console.print()
    return working


def _drop_unavailable(roster: list[Agent], providers: dict[str, AIProvider]) -> list[Agent]:
    """Remove agents whose model has no working provider. The mode may still reject what is left."""
    kept = [a for a in roster if a.model in providers]
    for agent in roster:
        if agent.model not in providers:
            logger.warning("Dropping %s from the roster: provider unavailable", agent.id)
    return kept


async def _run_conversation(
    session: ConversationSession,
    conversation_id: str,
    question: str,
    mode: Mode,
    full: bool,
) -> Phase:
    """Submit the question, print rounds as they resolve, return the final phase."""
    printed = 0

    async def watch() -> None:
        nonlocal printed
        async for snap in session.subscribe(conversation_id):
            while printed < len(snap.rounds):
                print_round(snap.rounds[printed], snap, full=full)
                printed += 1

    watcher = asyncio.create_task(watch())
    text: str = question
    try:
        while True:
            with console.status("Waiting for agents..."):
                await session.submit_user_message(conversation_id, text)
            if mode is not Mode.STANDARD:
                break
            text = await asyncio.to_thread(click.prompt, "\nYou (empty to finish)", default="", show_default=False)
            if not text.strip():
                session.close(conversation_id)
                break
    finally:
        snap = session.snapshot(conversation_id)
        if not snap.is_terminal:
            await session.cancel(conversation_id)
        await watcher

    snap = session.snapshot(conversation_id)
    if snap.phase is Phase.FINISHED:
        print_verdict(snap)
    return snap.phase


@click.command()
@click.argument("mode", type=click.Choice([m.value for m in Mode]))
@click.argument("question", required=False)
@click.option("--file", "question_file", type=click.Path(exists=True), help="Read question from .md file")
@click.option("--models", default=None, help="Comma-separated model list (default: from config)")
@click.option("--moderator", default=None, help="PvP moderator model (default: from config)")
@click.option("--judge", default=None, help="Convergence judge model (default: from config)")
@click.option("--rounds", default=None, type=int, help="Round cap (PvP: exchange rounds before judging)")
@click.option("--convergence", type=click.Choice(["exact", "judge"]), default=None,
              help="How collaborative agreement is detected (default: from config)")
@click.option("--full", "full_output", is_flag=True, help="Print full responses instead of previews")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
def main(
    mode: str,
    question: str | None,
    question_file: str | None,
    models: str | None,
    moderator: str | None,
    judge: str | None,
    rounds: int | None,
    convergence: str | None,
    full_output: bool,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """gtllm -- game-theoretic multi-LLM conversations.

    \b
    Modes: standard, pvp, collaborative, competitive, llm_choice
    Examples:
      gtllm standard "Explain CRDTs" --models claude,openai
      gtllm pvp "Tabs or spaces?" --models claude,openai --moderator gemini
      gtllm collaborative "Design a rate limiter" --rounds 4
      gtllm competitive "Name this product" --models claude,openai,gemini
      gtllm llm_choice --file question.md
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    meta: dict = {}
    if question_file:
        question_text, meta = parse_prompt_file(Path(question_file))
    elif question:
        question_text = question
    else:
        console.print("[bold red]Error:[/bold red] Provide a QUESTION argument or --file.")
        sys.exit(1)

    chosen_mode = Mode(mode)
    policy = convergence or meta.get("convergence") or config.defaults.convergence
    try:
        _apply_rounds(config, chosen_mode, rounds if rounds is not None else meta.get("rounds"))
        roster = _build_roster(
            chosen_mode,
            _determine_models(config, models, meta),
            moderator or meta.get("moderator") or config.defaults.moderator,
        )
        judge_agent = (
            _build_judge(policy, judge or meta.get("judge") or config.defaults.judge)
            if chosen_mode in (Mode.COLLABORATIVE, Mode.CHOICE) else None
        )
    except ConfigError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    providers = build_providers(config)
    if not providers:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    needed = {a.model for a in roster} | ({judge_agent.model} if judge_agent else set())
    if not skip_health_check:
        providers = _check_providers(providers, needed)
        roster = _drop_unavailable(roster, providers)

    session = ConversationSession(config, InvocationGateway(providers, config.models))
    try:
        conversation_id = session.start(chosen_mode, roster, judge=judge_agent, convergence=policy)
    except ConfigError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    console.print(
        f"\n[bold cyan]{MODE_NAMES[chosen_mode]}[/bold cyan] — "
        + ", ".join(f"{a.label} ({a.role})" for a in roster)
    )
    console.print(f"Question: [italic]{question_text[:80]}{'...' if len(question_text) > 80 else ''}[/italic]\n")

    try:
        phase = asyncio.run(_run_conversation(session, conversation_id, question_text, chosen_mode, full_output))
    except AuthError as exc:
        console.print(f"[bold red]Authentication failed:[/bold red] {exc}. Check the API key in .env.")
        sys.exit(2)
    except RoundAbortError:
        print_aborted(session.snapshot(conversation_id))
        sys.exit(1)

    if phase is Phase.ABORTED:
        print_aborted(session.snapshot(conversation_id))
        sys.exit(1)


if __name__ == "__main__":
    main()
