"""Programmatic Alembic entry points for the evals schema."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def build_alembic_config(db_path: Path, *, project_root: Path = PROJECT_ROOT) -> Config:
    """Alembic config pointing the repository migrations at one SQLite file."""

    config = Config(str(project_root / "alembic.ini"))
    config.set_main_option("script_location", str(project_root / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Create or migrate the runs/tasks/metrics tables in ``db_path``."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.debug("Migrating %s to head", db_path)
    command.upgrade(build_alembic_config(db_path), "head")
