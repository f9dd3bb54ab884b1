"""Database initialization script.

Run this to create the ChainSettle intent store and audit ledger schema.
"""

import asyncio
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from chainsettle.config import config
from chainsettle.database import db
from chainsettle.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the database."""
    logger.info("Initializing ChainSettle database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    head = await db.most_recent_audit_hash()
    entries = await db.list_audit_entries()
    logger.info(f"Audit ledger has {len(entries)} entries, head {head}")
    logger.info("Database initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
