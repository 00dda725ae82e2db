"""
Dotenv loading for local runs.

Exchange credentials (BINANCE_API_KEY / BINANCE_API_SECRET) and DATABASE_URL
usually live in a .env file while developing. Loading is explicit: run.py
calls ``load_dotenv_files`` once, importing ``src.config.config`` never
touches dotenv.

- ENVIRONMENT=prod: nothing is loaded
- FOLLOW_DOTENV=<path>: only that file is loaded
- otherwise: .env, then .env.local overriding it
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

DOTENV_OVERRIDE_VAR = "FOLLOW_DOTENV"


def _is_prod(environ: Mapping[str, str]) -> bool:
    return (environ.get("ENVIRONMENT") or "dev").strip().lower() == "prod"


def dotenv_candidates(repo_root: Path, environ: Mapping[str, str] | None = None) -> list[tuple[Path, bool]]:
    """(path, override) pairs to load, in order."""
    env = os.environ if environ is None else environ
    if _is_prod(env):
        return []
    explicit = env.get(DOTENV_OVERRIDE_VAR)
    if explicit:
        return [(Path(explicit), False)]
    return [(repo_root / ".env", False), (repo_root / ".env.local", True)]


def load_dotenv_files(*, repo_root: Path | None = None) -> list[Path]:
    """Load the dotenv files that exist. Returns the loaded paths."""
    root = repo_root or Path(__file__).resolve().parent.parent.parent
    loaded: list[Path] = []
    for path, override in dotenv_candidates(root):
        if path.exists():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
