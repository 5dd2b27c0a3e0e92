from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from app.infra.log import setup_logging

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"

logger = logging.getLogger(__name__)


def run_upgrade_head(revision: str = "head") -> None:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("script_location", str(ALEMBIC_INI.parent / "infra" / "migrations"))
    logger.info("upgrading schema to %s", revision)
    command.upgrade(config, revision)


if __name__ == "__main__":
    setup_logging()
    run_upgrade_head()
