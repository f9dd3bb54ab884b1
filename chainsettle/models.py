"""Shared data models for the ChainSettle orchestrator.

All Pydantic models used across quotes, validation, the watcher and the ledger.
Money fields are Decimal and refuse binary floats.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def _reject_float(value):
    if isinstance(value, float):
        raise ValueError("money amounts must be Decimal, int or str, never float")
    return value


Money = Annotated[Decimal, BeforeValidator(_reject_float)]


def utc_now() -> datetime:
    """Current UTC time truncated to milliseconds (ledger timestamp precision)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


class Network(str, Enum):
    """Settlement networks, one per chain family variant."""

    BSC = "BSC"
    SOLANA = "SOLANA"


class Asset(str, Enum):
    """Crypto assets an intent can settle in."""

    BNB = "BNB"
    SOL = "SOL"


NETWORK_ASSETS: dict[Network, Asset] = {
    Network.BSC: Asset.BNB,
    Network.SOLANA: Asset.SOL,
}

ASSET_DECIMALS: dict[Asset, int] = {
    Asset.BNB: 18,
    Asset.SOL: 9,
}


class IntentStatus(str, Enum):
    """Lifecycle of a payment intent."""

    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PENDING = "PENDING"
    VALIDATED = "VALIDATED"
    PARTIAL_PAYMENT = "PARTIAL_PAYMENT"
    REFUSED = "REFUSED"

    @property
    def is_final(self) -> bool:
        return self in FINAL_STATUSES


OPEN_STATUSES = frozenset({IntentStatus.AWAITING_PAYMENT, IntentStatus.PENDING})
FINAL_STATUSES = frozenset(
    {IntentStatus.VALIDATED, IntentStatus.PARTIAL_PAYMENT, IntentStatus.REFUSED}
)


class NotificationKind(str, Enum):
    """Events pushed to the payment terminal."""

    PAYMENT_REQUESTED = "PAYMENT_REQUESTED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"


class PriceQuote(BaseModel):
    """A provider's offer to settle a fiat amount in crypto. Never persisted."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(description="Quote provider name")
    crypto_amount: Money = Field(description="Crypto amount the payer must send")
    network_fee: Money = Field(description="Network fee on top of the amount")
    total_with_fee: Money = Field(description="crypto_amount + network_fee")
    rate: Money = Field(description="Crypto units per fiat unit")
    latency_ms: Optional[int] = Field(default=None, description="Provider response time")

    @model_validator(mode="after")
    def _check_total(self) -> "PriceQuote":
        if self.total_with_fee != self.crypto_amount + self.network_fee:
            raise ValueError("total_with_fee must equal crypto_amount + network_fee")
        return self

    @classmethod
    def build(
        cls,
        provider: str,
        crypto_amount: Decimal,
        network_fee: Decimal,
        rate: Decimal,
        latency_ms: Optional[int] = None,
    ) -> "PriceQuote":
        return cls(
            provider=provider,
            crypto_amount=crypto_amount,
            network_fee=network_fee,
            total_with_fee=crypto_amount + network_fee,
            rate=rate,
            latency_ms=latency_ms,
        )


class PaymentIntent(BaseModel):
    """A merchant's request for a fiat amount, settled in one crypto asset."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    fiat_amount: Money
    currency: str = Field(description="ISO-4217 fiat currency code")
    crypto_amount: Money = Field(description="Expected on-chain amount (from winning quote)")
    asset: Asset
    network: Network
    merchant_address: str
    provider: Optional[str] = Field(default=None, description="Winning quote provider")

    status: IntentStatus = Field(default=IntentStatus.AWAITING_PAYMENT)
    tx_reference: Optional[str] = Field(default=None, description="On-chain transaction reference")
    received_amount: Optional[Money] = Field(default=None, description="Amount observed on-chain")
    audit_hash: Optional[str] = Field(default=None, description="Ledger hash, set on finalization")

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class AuditLedgerEntry(BaseModel):
    """One link of the global hash chain."""

    sequence: int
    intent_id: str
    fiat_amount: Money
    crypto_amount: Money
    status: IntentStatus
    tx_reference: Optional[str] = None
    created_at: datetime
    previous_hash: str
    audit_hash: str
    committed_at: datetime = Field(default_factory=utc_now)


class ValidationResult(BaseModel):
    """Verdict of a chain validator for one reference."""

    status: IntentStatus
    received_amount: Optional[Decimal] = None
    missing_amount: Optional[Decimal] = None
    reason: Optional[str] = Field(default=None, description="Error code when not VALIDATED")


class TransferLeg(BaseModel):
    """Value moved to one destination inside a transaction."""

    destination: str
    amount_minor: int = Field(description="Amount in the asset's smallest unit")
    decimals: int
    asset: str = Field(description="Asset symbol or token contract")

    @property
    def amount(self) -> Decimal:
        return Decimal(self.amount_minor).scaleb(-self.decimals)


class ChainTransaction(BaseModel):
    """Normalized view of an on-chain transaction."""

    reference: str
    succeeded: bool
    transfers: list[TransferLeg] = Field(default_factory=list)
    raw_value: Optional[int] = None


class AddressActivity(BaseModel):
    """A change notification for a watched address."""

    address: str
    balance: Optional[int] = None
    observed_at: datetime = Field(default_factory=utc_now)


class ReferenceObserved(BaseModel):
    """A new reference delivered by a watcher to the orchestrator queue."""

    network: Network
    address: str
    reference: str


class ChainVerification(BaseModel):
    """Outcome of recomputing the audit chain from genesis."""

    valid: bool
    checked: int
    first_divergence: Optional[int] = None

    def __bool__(self) -> bool:
        return self.valid


class PaymentRequest(BaseModel):
    """Client request to start a payment."""

    fiat_amount: Decimal = Field(gt=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    network: Network = Field(default=Network.BSC)


class ReferenceSubmission(BaseModel):
    """Payer-supplied transaction reference."""

    reference: str = Field(min_length=1)


class PaymentInstructions(BaseModel):
    """What the payer must send, returned by request_payment."""

    intent_id: str
    status: IntentStatus
    crypto_amount: Decimal
    asset: Asset
    network: Network
    merchant_address: str
    instruction: str
    quote: PriceQuote


class IntentStatusView(BaseModel):
    """User-visible status of an intent; REFUSED is shown as FAILED."""

    intent_id: str
    status: Literal["AWAITING_PAYMENT", "PENDING", "VALIDATED", "PARTIAL_PAYMENT", "FAILED"]
    fiat_amount: Decimal
    currency: str
    crypto_amount: Decimal
    asset: Asset
    tx_reference: Optional[str] = None
    audit_hash: Optional[str] = None
    received_amount: Optional[Decimal] = None
    missing_amount: Optional[Decimal] = None
