#!/usr/bin/env python3
"""
Create the Tripline schema.

Run:
    python3 scripts/init_db.py
    python3 scripts/init_db.py --database-url sqlite:///./tripline.db

Idempotent: existing tables are left untouched.
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from tripline.api.config import settings
from tripline.api.db.engine import create_engine, create_schema

logger = logging.getLogger("tripline.init_db")


async def _run(database_url: str) -> None:
    engine = create_engine(database_url)
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create Tripline database tables.")
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="Database URL (defaults to DATABASE_URL)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    asyncio.run(_run(args.database_url))
    # Never log the URL itself: it carries the password.
    logger.info("schema_ready dialect=%s", args.database_url.split(":", 1)[0])


if __name__ == "__main__":
    main()
