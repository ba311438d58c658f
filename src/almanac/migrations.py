"""Programmatic Alembic migration runner for Almanac.

Lets the CLI run migrations without shelling out to the Alembic CLI.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

_CHAINS = ["core"]


def _resolve_chain_dir(chain: str) -> Path | None:
    """Return ``alembic/versions/<chain>/`` if it exists."""
    if chain not in _CHAINS:
        return None
    chain_dir = ALEMBIC_DIR / "versions" / chain
    return chain_dir if chain_dir.is_dir() else None


def get_all_chains() -> list[str]:
    """Return every version chain present on disk."""
    return [chain for chain in _CHAINS if _resolve_chain_dir(chain) is not None]


def _build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the version directories."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; percent-encoded DB URLs
    # must escape '%' as '%%'.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    locations = [str(_resolve_chain_dir(chain)) for chain in get_all_chains()]
    config.set_main_option("version_path_separator", "os")
    config.set_main_option("version_locations", os.pathsep.join(locations))
    return config


def run_migrations(db_url: str, chain: str = "core") -> None:
    """Upgrade *chain* (or ``"all"``) to head on the database at *db_url*.

    Raises
    ------
    ValueError
        If *chain* is not a known version chain.
    """
    chains = get_all_chains() if chain == "all" else [chain]
    unknown = [name for name in chains if _resolve_chain_dir(name) is None]
    if unknown:
        raise ValueError(f"Unknown migration chain(s): {', '.join(unknown)}")

    config = _build_alembic_config(db_url)
    for resolved_chain in chains:
        logger.info("Running migration chain to head (chain=%s)", resolved_chain)
        command.upgrade(config, f"{resolved_chain}@head")
