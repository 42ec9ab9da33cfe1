# app/db/init_db.py
from __future__ import annotations

import argparse
import logging

from sqlalchemy import inspect

from app.core.logging import configure_logging
from app.db.base import Base
from app.db.session import engine

import app.models  # noqa: F401  (registers every table on Base.metadata)

logger = logging.getLogger(__name__)


def run(fresh: bool = False) -> None:
    if fresh:
        logger.warning("Dropping ALL tables (dev only)")
        Base.metadata.drop_all(bind=engine)

    logger.info("Creating all missing tables")
    Base.metadata.create_all(bind=engine)
    logger.info("Tables: %s", sorted(inspect(engine).get_table_names()))


if __name__ == "__main__":
    configure_logging()
    parser = argparse.ArgumentParser(
        description="Initialize the pharmacy DB (create tables).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    args = parser.parse_args()
    run(fresh=args.fresh)
