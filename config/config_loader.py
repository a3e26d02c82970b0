"""Load settings.yaml into typed dataclasses. Validates API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_CONVERGENCE_POLICIES = ("exact", "judge")


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    temperature: float | None = None
    base_url: str | None = None


@dataclass
class PromptsConfig:
    system: str
    pvp_opening: str
    pvp_rebuttal: str
    pvp_moderator: str
    collaborative_initial: str
    collaborative_refine: str
    convergence_judge: str
    competitive_proposal: str
    competitive_vote: str
    choice_intent: str


@dataclass
class RetryConfig:
    max_retries: int = 2
    backoff_sec: float = 1.0
    timeout_multiplier: float = 1.5


@dataclass
class DefaultsConfig:
    round_cap: int
    pvp_rounds: int
    convergence: str
    cancel_timeout_sec: float
    roster: list[str] = field(default_factory=list)
    moderator: str | None = None
    judge: str | None = None
    mode_round_caps: dict[str, int] = field(default_factory=dict)

    def round_cap_for(self, mode: str) -> int:
        return self.mode_round_caps.get(mode, self.round_cap)


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    retry: RetryConfig
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    available_providers: set[str] = field(default_factory=set)


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError on an unknown
    convergence policy.
    Logs warnings for missing API keys but does not raise — callers check
    available_providers count.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    convergence = str(defaults_raw.get("convergence", "exact"))
    if convergence not in _CONVERGENCE_POLICIES:
        raise ValueError(
            f"Unknown convergence policy '{convergence}', expected one of {_CONVERGENCE_POLICIES}"
        )
    defaults = DefaultsConfig(
        round_cap=int(defaults_raw["round_cap"]),
        pvp_rounds=int(defaults_raw.get("pvp_rounds", 1)),
        convergence=convergence,
        cancel_timeout_sec=float(defaults_raw.get("cancel_timeout_sec", 10)),
        roster=list(defaults_raw.get("roster", [])),
        moderator=defaults_raw.get("moderator"),
        judge=defaults_raw.get("judge"),
        mode_round_caps={k: int(v) for k, v in (defaults_raw.get("mode_round_caps") or {}).items()},
    )

    retry_raw = raw.get("retry") or {}
    retry = RetryConfig(
        max_retries=int(retry_raw.get("max_retries", 2)),
        backoff_sec=float(retry_raw.get("backoff_sec", 1.0)),
        timeout_multiplier=float(retry_raw.get("timeout_multiplier", 1.5)),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        system=prompts_raw["system"],
        pvp_opening=prompts_raw["pvp_opening"],
        pvp_rebuttal=prompts_raw["pvp_rebuttal"],
        pvp_moderator=prompts_raw["pvp_moderator"],
        collaborative_initial=prompts_raw["collaborative_initial"],
        collaborative_refine=prompts_raw["collaborative_refine"],
        convergence_judge=prompts_raw["convergence_judge"],
        competitive_proposal=prompts_raw["competitive_proposal"],
        competitive_vote=prompts_raw["competitive_vote"],
        choice_intent=prompts_raw["choice_intent"],
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        temperature = model_raw.get("temperature")
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            temperature=float(temperature) if temperature is not None else None,
            base_url=model_raw.get("base_url"),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s — set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        retry=retry,
        models=models,
        prompts=prompts,
        available_providers=available_providers,
    )
