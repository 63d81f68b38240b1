from __future__ import annotations

import logging

from sqlalchemy import inspect

from app.config import settings
from app.db import build_engine, create_schema, metadata

logger = logging.getLogger("init_db")


def main() -> None:
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(message)s")
    engine = build_engine(settings.database_url)
    existing = set(inspect(engine).get_table_names())
    create_schema(engine)
    created = [name for name in metadata.tables if name not in existing]
    for name in created:
        logger.info("Created table: %s", name)
    if not created:
        logger.info("Schema already up to date.")


if __name__ == "__main__":
    main()
