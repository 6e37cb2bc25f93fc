"""Credentials for the LLM providers, read from ``.env`` files or the process env."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

API_KEY_VARS: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def _env_candidates(workspace_dir: str | Path | None) -> list[Path]:
    roots = [Path(workspace_dir)] if workspace_dir else []
    roots += [Path.cwd(), Path(__file__).resolve().parent.parent]
    return [root / ".env" for root in roots]


def load_environment(workspace_dir: str | Path | None = None) -> Path | None:
    """Load the first ``.env`` among the workspace, the cwd and the install dir.

    Variables already present in the environment win. Returns the file that
    was loaded, or None if there was none.
    """
    found = next((p for p in _env_candidates(workspace_dir) if p.is_file()), None)
    if found is not None:
        load_dotenv(found, override=False)
    return found


def api_key_var(provider: str) -> str | None:
    return API_KEY_VARS.get(provider.lower())


def get_api_key(provider: str) -> str | None:
    var = api_key_var(provider)
    return os.getenv(var) if var else None


def missing_keys(providers: list[str]) -> list[str]:
    """Providers from the list whose API key is not set."""
    return [p for p in providers if not get_api_key(p)]
