"""Tests for gtllm/prompt_file.py."""

from pathlib import Path

from gtllm.prompt_file import models_from, parse_prompt_file


def test_plain_markdown(tmp_path: Path):
    path = tmp_path / "q.md"
    path.write_text("Should we use YAML?\n", encoding="utf-8")
    content, meta = parse_prompt_file(path)
    assert content == "Should we use YAML?"
    assert meta == {}


def test_front_matter_keys(tmp_path: Path):
    path = tmp_path / "q.md"
    path.write_text(
        "---\nmodels: [claude, openai]\nrounds: 4\nconvergence: judge\nauthor: someone\n---\n\nDesign a cache.\n",
        encoding="utf-8",
    )
    content, meta = parse_prompt_file(path)
    assert content == "Design a cache."
    assert meta == {"models": ["claude", "openai"], "rounds": 4, "convergence": "judge"}


def test_models_from():
    assert models_from(None) is None
    assert models_from("claude, openai,,") == ["claude", "openai"]
    assert models_from(["claude", "gemini"]) == ["claude", "gemini"]
