"""Tests for roster selection and the click entry point in gtllm/cli.py."""

import pytest
from click.testing import CliRunner

import gtllm.cli as cli
from gtllm.errors import ConfigError
from gtllm.models import FailureKind, Mode
from gtllm.providers.base import ProviderError
from tests.conftest import MockProvider, ScriptedProvider


# --- Helpers ---

def test_determine_models_defaults_to_config_roster(sample_app_config):
    assert cli._determine_models(sample_app_config, None, {}) == ["a", "b", "c"]


def test_determine_models_front_matter(sample_app_config):
    assert cli._determine_models(sample_app_config, None, {"models": ["b", "d"]}) == ["b", "d"]


def test_determine_models_flag_wins(sample_app_config):
    models = cli._determine_models(sample_app_config, "a,d", {"models": ["b"]})
    assert models == ["a", "d"]


def test_build_roster_pvp_appends_moderator():
    roster = cli._build_roster(Mode.PVP, ["a", "b", "c"], "mod")
    assert [a.id for a in roster] == ["a", "b", "mod"]


def test_build_roster_pvp_without_moderator():
    with pytest.raises(ConfigError, match="moderator"):
        cli._build_roster(Mode.PVP, ["a", "b"], None)


def test_build_roster_repeated_model():
    assert [a.id for a in cli._build_roster(Mode.COMPETITIVE, ["a", "a"], None)] == ["a", "a-2"]


def test_build_judge_only_for_judge_policy():
    assert cli._build_judge("exact", "judge") is None
    judge = cli._build_judge("judge", "judge")
    assert judge.model == "judge"
    with pytest.raises(ConfigError):
        cli._build_judge("judge", None)


def test_apply_rounds(sample_app_config):
    cli._apply_rounds(sample_app_config, Mode.COLLABORATIVE, 5)
    assert sample_app_config.defaults.round_cap_for("collaborative") == 5
    assert sample_app_config.defaults.pvp_rounds == 5
    with pytest.raises(ConfigError):
        cli._apply_rounds(sample_app_config, Mode.COLLABORATIVE, 0)


# --- Entry point ---

@pytest.fixture
def run_cli(monkeypatch, sample_app_config):
    def _run(providers, args, input=None, health_check=False):
        monkeypatch.setattr(cli, "load_dotenv", lambda: None)
        monkeypatch.setattr(cli, "load_config", lambda: sample_app_config)
        monkeypatch.setattr(cli, "build_providers", lambda config: providers)
        extra = [] if health_check else ["--skip-health-check"]
        return CliRunner().invoke(cli.main, [*args, *extra], input=input)
    return _run


def test_cli_collaborative_consensus(run_cli):
    providers = {name: MockProvider(name, "Use a token bucket.") for name in ("a", "b")}
    result = run_cli(providers, ["collaborative", "Design a rate limiter", "--models", "a,b"])
    assert result.exit_code == 0, result.output
    assert "Consensus reached" in result.output
    assert "Use a token bucket." in result.output


def test_cli_standard_ends_on_empty_input(run_cli):
    providers = {"a": MockProvider("a", "Hello there")}
    result = run_cli(providers, ["standard", "hi", "--models", "a"], input="\n")
    assert result.exit_code == 0, result.output
    assert "Hello there" in result.output
    assert "Conversation closed" in result.output


def test_cli_aborted_conversation_exits_1(run_cli):
    def down(messages):
        raise ProviderError("a", "503 Service Unavailable")

    providers = {"a": ScriptedProvider("a", down), "b": ScriptedProvider("b", down)}
    result = run_cli(providers, ["competitive", "Name it", "--models", "a,b"])
    assert result.exit_code == 1
    assert "Conversation aborted" in result.output


def test_cli_auth_failure_exits_2(run_cli):
    def denied(messages):
        raise ProviderError("a", "401 Unauthorized", FailureKind.AUTH)

    providers = {"a": ScriptedProvider("a", denied), "b": MockProvider("b")}
    result = run_cli(providers, ["standard", "hi", "--models", "a,b"])
    assert result.exit_code == 2
    assert "Authentication failed" in result.output


def test_cli_single_agent_competitive_rejected(run_cli):
    result = run_cli({"a": MockProvider("a")}, ["competitive", "Name it", "--models", "a"])
    assert result.exit_code == 1
    assert "Config error" in result.output


def test_cli_requires_question(run_cli):
    result = run_cli({"a": MockProvider("a")}, ["standard"])
    assert result.exit_code == 1
    assert "Provide a QUESTION" in result.output


def test_cli_reads_question_file(run_cli, tmp_path):
    path = tmp_path / "q.md"
    path.write_text("---\nmodels: a,b\n---\nPick a name.\n", encoding="utf-8")
    providers = {name: MockProvider(name, "Zephyr") for name in ("a", "b")}
    result = run_cli(providers, ["collaborative", "--file", str(path)])
    assert result.exit_code == 0, result.output
    assert "Pick a name." in result.output
    assert "Consensus reached" in result.output


def test_cli_health_check_drops_failing_model(run_cli):
    providers = {name: MockProvider(name, "Use a token bucket.") for name in ("a", "b", "c")}
    providers["b"].generate.side_effect = ProviderError("b", "503 Service Unavailable")

    result = run_cli(
        providers, ["collaborative", "Design a rate limiter", "--models", "a,b,c"], input="y\n", health_check=True,
    )

    assert result.exit_code == 0, result.output
    assert "FAIL" in result.output
    assert "Working providers: a, c" in result.output
    assert "Consensus reached" in result.output
    # Only the health ping reached the failing model
    assert providers["b"].generate.call_count == 1
    assert providers["a"].generate.call_count == 2


def test_cli_health_check_all_failing_exits_1(run_cli):
    providers = {name: MockProvider(name) for name in ("a", "b")}
    for provider in providers.values():
        provider.generate.side_effect = ProviderError(provider.name(), "503 Service Unavailable")

    result = run_cli(providers, ["competitive", "Name it", "--models", "a,b"], health_check=True)

    assert result.exit_code == 1
    assert "No providers passed the health check" in result.output


def test_cli_health_check_failure_can_leave_too_few_agents(run_cli):
    providers = {name: MockProvider(name, "Zephyr") for name in ("a", "b")}
    providers["b"].generate.side_effect = ProviderError("b", "503 Service Unavailable")

    result = run_cli(providers, ["competitive", "Name it", "--models", "a,b"], input="y\n", health_check=True)

    assert result.exit_code == 1
    assert "Config error" in result.output


def test_drop_unavailable_keeps_order():
    roster = cli._build_roster(Mode.COMPETITIVE, ["a", "b", "c"], None)
    kept = cli._drop_unavailable(roster, {"a": MockProvider("a"), "c": MockProvider("c")})
    assert [a.id for a in kept] == ["a", "c"]
