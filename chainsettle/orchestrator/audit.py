"""Hash-linked audit ledger for finalized intents.

    audit_hash(n) = SHA256(audit_hash(n-1) + canonical_serialization(intent_n))

with a 64-zero genesis hash. The serialization must stay byte-for-byte
identical to existing ledger entries: compact JSON, fixed key order, decimals
as plain strings, millisecond ISO timestamps with a ``Z`` suffix.
"""

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Sequence, Union

from ..database import GENESIS_HASH, Database
from ..errors import IntentStateError, LedgerIntegrityViolation
from ..logging_utils import get_logger
from ..models import AuditLedgerEntry, ChainVerification, PaymentIntent

logger = get_logger(__name__)


def format_decimal(value: Decimal) -> str:
    """Shortest decimal string, exponent form outside [1e-7, 1e21)."""
    value = Decimal(value).normalize()
    if value.is_zero():
        return "0"

    exponent = value.adjusted()
    if exponent <= -7 or exponent >= 21:
        sign, digits, _ = value.as_tuple()
        coefficient = "".join(str(d) for d in digits).rstrip("0") or "0"
        mantissa = coefficient[0] + ("." + coefficient[1:] if len(coefficient) > 1 else "")
        return f"{'-' if sign else ''}{mantissa}e{'+' if exponent >= 0 else '-'}{abs(exponent)}"
    return format(value, "f")


def format_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision, e.g. 2024-05-01T12:00:00.123Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{value.microsecond // 1000:03d}Z"


def canonical_serialization(record: Union[PaymentIntent, AuditLedgerEntry]) -> str:
    """Serialize the hashed field set of an intent or ledger entry."""
    intent_id = record.id if isinstance(record, PaymentIntent) else record.intent_id
    fields = {
        "id": intent_id,
        "fiat_amount": format_decimal(record.fiat_amount),
        "crypto_amount": format_decimal(record.crypto_amount),
        "status": record.status.value,
        "tx_hash": record.tx_reference,
        "created_at": format_timestamp(record.created_at),
    }
    return json.dumps(fields, separators=(",", ":"), ensure_ascii=False)


def compute_audit_hash(previous_hash: str, record: Union[PaymentIntent, AuditLedgerEntry]) -> str:
    payload = previous_hash + canonical_serialization(record)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class AuditChain:
    """Single writer for the global audit chain.

    Every append goes through commit(), which holds one lock across reading
    the head, hashing and storing, so concurrent finalizations are serialized
    into one total order.
    """

    GENESIS_HASH = GENESIS_HASH

    def __init__(self, store: Database):
        self.store = store
        self._lock = asyncio.Lock()

    async def commit(self, intent: PaymentIntent) -> str:
        """Finalize an intent and link it onto the chain.

        Args:
            intent: Intent carrying its final status and reference.

        Returns:
            The new audit hash.

        Raises:
            IntentStateError: The intent is not in a final status, or already finalized.
            ConcurrentFinalizationConflict: The store saw the head move underneath us.
        """
        if not intent.status.is_final:
            raise IntentStateError(f"Cannot commit intent {intent.id} in open status {intent.status.value}")

        async with self._lock:
            previous_hash = await self.store.most_recent_audit_hash()
            audit_hash = compute_audit_hash(previous_hash, intent)
            await self.store.append_audit_hash(intent, audit_hash, previous_hash)

        logger.info(f"Committed intent {intent.id} ({intent.status.value}) to audit chain: {audit_hash}")
        return audit_hash

    @staticmethod
    def verify(entries: Sequence[AuditLedgerEntry]) -> ChainVerification:
        """Recompute the chain from genesis.

        Returns:
            ChainVerification whose first_divergence is the first index where
            the stored previous hash or audit hash disagrees with the
            recomputation. Everything after that index diverges as well.
        """
        expected_previous = GENESIS_HASH
        for index, entry in enumerate(entries):
            recomputed = compute_audit_hash(expected_previous, entry)
            if entry.previous_hash != expected_previous or entry.audit_hash != recomputed:
                return ChainVerification(valid=False, checked=index + 1, first_divergence=index)
            expected_previous = recomputed
        return ChainVerification(valid=True, checked=len(entries))

    @classmethod
    def verify_or_raise(cls, entries: Sequence[AuditLedgerEntry]) -> None:
        """Verify the chain or raise LedgerIntegrityViolation. Never repairs."""
        result = cls.verify(entries)
        if not result.valid:
            entry = entries[result.first_divergence]
            raise LedgerIntegrityViolation(
                f"Audit chain diverges at index {result.first_divergence} "
                f"(sequence {entry.sequence}, intent {entry.intent_id})",
                index=result.first_divergence,
            )

    async def verify_ledger(self) -> ChainVerification:
        """Load the stored ledger and verify it."""
        entries = await self.store.list_audit_entries()
        result = self.verify(entries)
        if result.valid:
            logger.info(f"Audit chain verified: {result.checked} entries")
        else:
            logger.error(f"Audit chain integrity violation at index {result.first_divergence}")
        return result
