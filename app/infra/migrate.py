from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from app.infra.db import DATABASE_URL

logger = logging.getLogger(__name__)

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def build_alembic_config(database_url: str = DATABASE_URL) -> Config:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("sqlalchemy.url", database_url)
    return config


def run_upgrade_head(database_url: str = DATABASE_URL) -> None:
    logger.info("running migrations to head")
    command.upgrade(build_alembic_config(database_url), "head")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_upgrade_head()
