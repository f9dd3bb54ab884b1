"""Recompute the audit chain from genesis.

Exits with status 1 and reports the first diverging index when any stored
entry no longer matches its recomputed hash.
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from chainsettle.config import config
from chainsettle.database import db
from chainsettle.logging_utils import get_logger, setup_logging
from chainsettle.orchestrator.audit import AuditChain

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main() -> int:
    await db.initialize()
    result = await AuditChain(db).verify_ledger()

    if not result.valid:
        print(f"Ledger integrity violation at index {result.first_divergence} ({result.checked} entries checked)")
        return 1

    print(f"Ledger OK: {result.checked} entries")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
