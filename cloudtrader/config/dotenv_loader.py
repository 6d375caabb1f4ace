"""
Dotenv loading for exchange credentials.

`config.yaml` references `${BINANCE_API_KEY}` / `${BINANCE_API_SECRET}`; for
local and paper runs those usually live in `.env` (shared) and `.env.local`
(per machine, wins over `.env`). With `ENVIRONMENT=prod` nothing is loaded and
the process environment is the only source.

Must not import `cloudtrader.config.config`: it runs before config is loaded.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

DOTENV_FILES = (".env", ".env.local")


def _is_prod_env() -> bool:
    return str(os.getenv("ENVIRONMENT", "paper") or "paper").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> List[Path]:
    """
    Load the dotenv files that exist under `repo_root` (default: the checkout).

    Returns:
        The files that were loaded, in load order
    """
    if _is_prod_env():
        return []

    root = repo_root or Path(__file__).resolve().parent.parent.parent
    loaded = []
    for name in DOTENV_FILES:
        path = root / name
        if not path.exists():
            continue
        # Values already in the environment beat .env; .env.local beats both
        load_dotenv(dotenv_path=path, override=name == ".env.local")
        loaded.append(path)
    return loaded
