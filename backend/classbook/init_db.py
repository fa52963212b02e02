"""Create all tables for local development and tests."""

import logging

from sqlalchemy.engine import Engine

from classbook.database import Base, engine

logger = logging.getLogger(__name__)


def init_db(bind: Engine = engine) -> None:
    import classbook.models  # noqa: F401

    Base.metadata.create_all(bind=bind)
    logger.info("Database tables created")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
