"""Question files: markdown body with optional YAML front matter."""

from pathlib import Path

import frontmatter

# Front matter keys that may override config defaults
KNOWN_KEYS = frozenset({"models", "moderator", "judge", "rounds", "convergence"})


def parse_prompt_file(file_path: Path) -> tuple[str, dict]:
    """Parse a markdown file with optional YAML frontmatter.

    Returns:
        (content, metadata) where content is the body text and metadata holds
        the recognised keys: models (str or list), moderator (str), judge (str),
        rounds (int), convergence (str). If no frontmatter, metadata is {}.
    """
    post = frontmatter.load(str(file_path))
    content = post.content.strip()
    metadata = {k: v for k, v in post.metadata.items() if k in KNOWN_KEYS}
    return content, metadata


def models_from(value: str | list | None) -> list[str] | None:
    """Accept either 'a,b,c' or a YAML list."""
    if value is None:
        return None
    if isinstance(value, str):
        return [m.strip() for m in value.split(",") if m.strip()]
    return [str(m).strip() for m in value]
