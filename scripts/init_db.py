"""
Create every table in the configured database.

Usage:
    DATABASE_URL=postgresql+asyncpg://... python scripts/init_db.py
"""

import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from libs.db import DATABASE_URL, engine
from models.registry import Base

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def main():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    logger.info("Created %d tables on %s", len(Base.metadata.tables), DATABASE_URL.split("@")[-1])


if __name__ == "__main__":
    asyncio.run(main())
