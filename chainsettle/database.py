"""SQLite persistence for payment intents and the audit ledger.

Owns intent records, their status transitions and the append-only
``audit_entries`` table. Final statuses are only ever written together with
their ledger entry, in one transaction.
"""

import asyncio
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Optional

import aiosqlite

from .config import config
from .errors import ConcurrentFinalizationConflict, IntentNotFound, IntentStateError
from .logging_utils import get_logger
from .models import (
    OPEN_STATUSES,
    Asset,
    AuditLedgerEntry,
    IntentStatus,
    PaymentIntent,
    utc_now,
)

logger = get_logger(__name__)

GENESIS_HASH = "0" * 64

# SQL Schema
SCHEMA_SQL = """
-- Payment intents (never deleted)
CREATE TABLE IF NOT EXISTS intents (
    id TEXT PRIMARY KEY,
    fiat_amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    crypto_amount TEXT NOT NULL,
    asset TEXT NOT NULL,
    network TEXT NOT NULL,
    merchant_address TEXT NOT NULL,
    provider TEXT,
    status TEXT NOT NULL CHECK(status IN
        ('AWAITING_PAYMENT', 'PENDING', 'VALIDATED', 'PARTIAL_PAYMENT', 'REFUSED')),
    tx_reference TEXT UNIQUE,
    received_amount TEXT,
    audit_hash TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Hash-linked audit ledger (append-only)
CREATE TABLE IF NOT EXISTS audit_entries (
    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
    intent_id TEXT NOT NULL UNIQUE,
    fiat_amount TEXT NOT NULL,
    crypto_amount TEXT NOT NULL,
    status TEXT NOT NULL,
    tx_reference TEXT,
    created_at TEXT NOT NULL,
    previous_hash TEXT NOT NULL UNIQUE,
    audit_hash TEXT NOT NULL UNIQUE,
    committed_at TEXT NOT NULL,
    FOREIGN KEY (intent_id) REFERENCES intents(id)
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_intents_asset_status ON intents(asset, status);
CREATE INDEX IF NOT EXISTS idx_intents_created_at ON intents(created_at);
"""


def _optional_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _row_to_intent(row: aiosqlite.Row) -> PaymentIntent:
    return PaymentIntent(
        id=row["id"],
        fiat_amount=Decimal(row["fiat_amount"]),
        currency=row["currency"],
        crypto_amount=Decimal(row["crypto_amount"]),
        asset=row["asset"],
        network=row["network"],
        merchant_address=row["merchant_address"],
        provider=row["provider"],
        status=row["status"],
        tx_reference=row["tx_reference"],
        received_amount=_optional_decimal(row["received_amount"]),
        audit_hash=row["audit_hash"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_entry(row: aiosqlite.Row) -> AuditLedgerEntry:
    return AuditLedgerEntry(
        sequence=row["sequence"],
        intent_id=row["intent_id"],
        fiat_amount=Decimal(row["fiat_amount"]),
        crypto_amount=Decimal(row["crypto_amount"]),
        status=row["status"],
        tx_reference=row["tx_reference"],
        created_at=datetime.fromisoformat(row["created_at"]),
        previous_hash=row["previous_hash"],
        audit_hash=row["audit_hash"],
        committed_at=datetime.fromisoformat(row["committed_at"]),
    )


class Database:
    """Async intent store and ledger backed by SQLite."""

    def __init__(self, db_path: str = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Intent operations
    async def create_intent(self, intent: PaymentIntent) -> None:
        """Persist a new payment intent.

        Args:
            intent: Intent to create, normally in AWAITING_PAYMENT.
        """
        if intent.status.is_final:
            raise IntentStateError(f"Intent {intent.id} cannot be created in final status {intent.status.value}")

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO intents
                (id, fiat_amount, currency, crypto_amount, asset, network, merchant_address,
                 provider, status, tx_reference, received_amount, audit_hash, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    intent.id,
                    str(intent.fiat_amount),
                    intent.currency,
                    str(intent.crypto_amount),
                    intent.asset.value,
                    intent.network.value,
                    intent.merchant_address,
                    intent.provider,
                    intent.status.value,
                    intent.tx_reference,
                    str(intent.received_amount) if intent.received_amount is not None else None,
                    intent.audit_hash,
                    intent.created_at.isoformat(),
                    intent.updated_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Created intent: {intent.id} ({intent.crypto_amount} {intent.asset.value})")

    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        """Get an intent by ID.

        Args:
            intent_id: Intent identifier.

        Returns:
            PaymentIntent if found, None otherwise.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM intents WHERE id = ?", (intent_id,))
            row = await cursor.fetchone()
            return _row_to_intent(row) if row else None

    async def find_by_reference(self, reference: str) -> Optional[PaymentIntent]:
        """Get the intent a transaction reference is bound to, if any."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM intents WHERE tx_reference = ?",
                (reference,),
            )
            row = await cursor.fetchone()
            return _row_to_intent(row) if row else None

    async def find_pending(self, asset: Asset) -> list[PaymentIntent]:
        """List open intents for an asset, oldest first.

        Args:
            asset: Settlement asset to filter on.

        Returns:
            Intents in AWAITING_PAYMENT or PENDING ordered by (created_at, id).
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM intents
                WHERE asset = ? AND status IN (?, ?)
                ORDER BY created_at ASC, id ASC
                """,
                (asset.value, IntentStatus.AWAITING_PAYMENT.value, IntentStatus.PENDING.value),
            )
            rows = await cursor.fetchall()
            return [_row_to_intent(row) for row in rows]

    async def update_status(
        self,
        intent_id: str,
        status: IntentStatus,
        reference: Optional[str] = None,
    ) -> PaymentIntent:
        """Move an open intent to another open status.

        Final statuses are written only by append_audit_hash, together with
        the ledger entry.

        Args:
            intent_id: Intent to update.
            status: New open status.
            reference: Transaction reference to record, if any.

        Returns:
            The updated intent.

        Raises:
            IntentNotFound: Unknown intent.
            IntentStateError: Intent already final, or a final status was requested.
        """
        if status not in OPEN_STATUSES:
            raise IntentStateError(
                f"Final status {status.value} for {intent_id} must be committed through the audit chain"
            )

        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT status, tx_reference FROM intents WHERE id = ?",
                    (intent_id,),
                )
                row = await cursor.fetchone()

                if not row:
                    raise IntentNotFound(f"Intent not found: {intent_id}")

                current = IntentStatus(row["status"])
                if current.is_final:
                    raise IntentStateError(
                        f"Intent {intent_id} is {current.value}; cannot move to {status.value}"
                    )

                await db.execute(
                    """
                    UPDATE intents
                    SET status = ?, tx_reference = COALESCE(?, tx_reference), updated_at = ?
                    WHERE id = ?
                    """,
                    (status.value, reference, utc_now().isoformat(), intent_id),
                )
                await db.commit()

        logger.info(f"Updated intent {intent_id} status to {status.value}")
        return await self.get_intent(intent_id)

    # Ledger operations
    async def most_recent_audit_hash(self) -> str:
        """Return the current chain head, or the genesis hash for an empty ledger."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT audit_hash FROM audit_entries ORDER BY sequence DESC LIMIT 1"
            )
            row = await cursor.fetchone()
            return row[0] if row else GENESIS_HASH

    async def append_audit_hash(
        self,
        intent: PaymentIntent,
        audit_hash: str,
        previous_hash: str,
    ) -> AuditLedgerEntry:
        """Finalize an intent and append its ledger entry atomically.

        Args:
            intent: Intent carrying its final status, reference and received amount.
            audit_hash: Hash computed over previous_hash and the intent.
            previous_hash: Chain head the hash was computed against.

        Returns:
            The stored ledger entry.

        Raises:
            IntentNotFound: Unknown intent.
            IntentStateError: Intent already final or the new status is not final.
            ConcurrentFinalizationConflict: The head moved since previous_hash was read.
        """
        if not intent.status.is_final:
            raise IntentStateError(f"Only final intents enter the ledger, got {intent.status.value}")

        committed_at = utc_now()

        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute("SELECT status FROM intents WHERE id = ?", (intent.id,))
                    row = await cursor.fetchone()
                    if not row:
                        raise IntentNotFound(f"Intent not found: {intent.id}")
                    if IntentStatus(row["status"]).is_final:
                        raise IntentStateError(f"Intent {intent.id} already finalized as {row['status']}")

                    cursor = await db.execute(
                        "SELECT audit_hash FROM audit_entries ORDER BY sequence DESC LIMIT 1"
                    )
                    head = await cursor.fetchone()
                    head_hash = head[0] if head else GENESIS_HASH
                    if head_hash != previous_hash:
                        raise ConcurrentFinalizationConflict(
                            f"Chain head moved: expected {previous_hash}, found {head_hash}"
                        )

                    await db.execute(
                        """
                        UPDATE intents
                        SET status = ?, tx_reference = ?, received_amount = ?, audit_hash = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            intent.status.value,
                            intent.tx_reference,
                            str(intent.received_amount) if intent.received_amount is not None else None,
                            audit_hash,
                            committed_at.isoformat(),
                            intent.id,
                        ),
                    )
                    cursor = await db.execute(
                        """
                        INSERT INTO audit_entries
                        (intent_id, fiat_amount, crypto_amount, status, tx_reference,
                         created_at, previous_hash, audit_hash, committed_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            intent.id,
                            str(intent.fiat_amount),
                            str(intent.crypto_amount),
                            intent.status.value,
                            intent.tx_reference,
                            intent.created_at.isoformat(),
                            previous_hash,
                            audit_hash,
                            committed_at.isoformat(),
                        ),
                    )
                    sequence = cursor.lastrowid
                    await db.commit()
                except sqlite3.IntegrityError as e:
                    await db.rollback()
                    raise ConcurrentFinalizationConflict(f"Ledger append rejected for {intent.id}: {e}") from e
                except Exception:
                    await db.rollback()
                    raise

        logger.info(f"Appended ledger entry #{sequence} for intent {intent.id}: {audit_hash}")
        return AuditLedgerEntry(
            sequence=sequence,
            intent_id=intent.id,
            fiat_amount=intent.fiat_amount,
            crypto_amount=intent.crypto_amount,
            status=intent.status,
            tx_reference=intent.tx_reference,
            created_at=intent.created_at,
            previous_hash=previous_hash,
            audit_hash=audit_hash,
            committed_at=committed_at,
        )

    async def list_audit_entries(self) -> list[AuditLedgerEntry]:
        """Return the whole ledger in commit order."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM audit_entries ORDER BY sequence ASC")
            rows = await cursor.fetchall()
            return [_row_to_entry(row) for row in rows]


# Global database instance
db = Database()
