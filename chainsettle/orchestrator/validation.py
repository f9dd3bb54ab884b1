"""On-chain settlement validation.

One validator per chain family behind a common base class. The base class
owns the whole algorithm and the 0.5% tolerance policy; subclasses only decide
how addresses compare and which addresses are well-formed.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from eth_utils import is_address
from solders.pubkey import Pubkey

from ..chains.base import ChainDataSource
from ..errors import (
    InsufficientAmount,
    OnChainExecutionFailed,
    RecipientMismatch,
    ReferenceNotFound,
    TransientSourceError,
)
from ..logging_utils import get_logger
from ..models import NETWORK_ASSETS, ChainTransaction, IntentStatus, ValidationResult

logger = get_logger(__name__)

TOLERANCE_RATE = Decimal("0.005")


def settlement_verdict(expected_amount: Decimal, received_amount: Decimal) -> ValidationResult:
    """Apply the tolerance band shared by every chain family.

    A payment within 0.5% below the expected amount (boundary inclusive) is
    VALIDATED; anything lower is PARTIAL_PAYMENT with the shortfall reported.
    """
    tolerance = expected_amount * TOLERANCE_RATE
    min_accepted = expected_amount - tolerance

    if received_amount < min_accepted:
        return ValidationResult(
            status=IntentStatus.PARTIAL_PAYMENT,
            received_amount=received_amount,
            missing_amount=expected_amount - received_amount,
            reason=InsufficientAmount.code,
        )
    return ValidationResult(status=IntentStatus.VALIDATED, received_amount=received_amount)


class ChainValidator(ABC):
    """Determine settlement status of a reference against an expected payment."""

    def __init__(self, source: ChainDataSource):
        self.source = source
        self.network = source.network
        self.asset = NETWORK_ASSETS[source.network]

    @abstractmethod
    def check_merchant_address(self, merchant_address: str) -> None:
        """Raise ValueError when the address is malformed for this chain."""

    @abstractmethod
    def same_address(self, destination: str, merchant_address: str) -> bool:
        """Whether a transfer destination is the merchant."""

    def received_amount(self, tx: ChainTransaction, merchant_address: str) -> Decimal:
        legs = [
            leg
            for leg in tx.transfers
            if leg.asset == self.asset.value and self.same_address(leg.destination, merchant_address)
        ]
        if not legs:
            raise RecipientMismatch(f"No {self.asset.value} transfer to {merchant_address} in {tx.reference}")
        return sum((leg.amount for leg in legs), Decimal(0))

    async def credits_merchant(self, reference: str, merchant_address: str) -> bool:
        """Whether a reference is a successful transfer into the merchant address.

        Used to screen references seen on the merchant address (outgoing
        transfers show up there too) before they are matched to an intent.

        Raises:
            TransientSourceError: The chain could not be queried.
        """
        tx = await self.source.get_transaction_by_reference(reference)
        if tx is None or not tx.succeeded:
            return False
        try:
            self.received_amount(tx, merchant_address)
        except RecipientMismatch:
            return False
        return True

    async def validate(
        self,
        reference: str,
        expected_amount: Decimal,
        merchant_address: str,
    ) -> ValidationResult:
        """Validate a transaction reference.

        Validation failures never raise: they are folded into the result.
        Not found, failed execution and wrong recipient are REFUSED; a chain
        that cannot be reached yields PENDING so the caller can retry.

        Args:
            reference: Transaction hash or signature.
            expected_amount: Positive crypto amount the intent expects.
            merchant_address: Address that must receive the funds.

        Returns:
            ValidationResult for the reference.

        Raises:
            ValueError: Non-positive expected amount or malformed merchant address.
        """
        if expected_amount <= 0:
            raise ValueError(f"Expected amount must be positive, got {expected_amount}")
        self.check_merchant_address(merchant_address)

        logger.info(f"Validating {self.network.value} transaction {reference} for expected amount {expected_amount}")

        try:
            tx = await self.source.get_transaction_by_reference(reference)
            if tx is None:
                raise ReferenceNotFound(f"Transaction {reference} not found")
            if not tx.succeeded:
                raise OnChainExecutionFailed(f"Transaction {reference} failed on-chain")
            received = self.received_amount(tx, merchant_address)
        except TransientSourceError as e:
            logger.warning(f"Transient error validating {reference}, keeping PENDING: {e}")
            return ValidationResult(status=IntentStatus.PENDING, reason=e.code)
        except (ReferenceNotFound, OnChainExecutionFailed, RecipientMismatch) as e:
            logger.warning(f"Transaction {reference} refused: {e}")
            return ValidationResult(status=IntentStatus.REFUSED, reason=e.code)

        result = settlement_verdict(expected_amount, received)
        if result.status == IntentStatus.PARTIAL_PAYMENT:
            logger.warning(
                f"Transaction {reference} amount too low: {received} received, "
                f"{result.missing_amount} missing"
            )
        else:
            logger.info(f"Transaction {reference} validated successfully ({received} received)")
        return result


class EvmValidator(ChainValidator):
    """Receipt-based validation for hex-address chains."""

    def check_merchant_address(self, merchant_address: str) -> None:
        if not is_address(merchant_address):
            raise ValueError(f"Invalid EVM merchant address: {merchant_address}")

    def same_address(self, destination: str, merchant_address: str) -> bool:
        return destination.lower() == merchant_address.lower()


class SolanaValidator(ChainValidator):
    """Balance-delta validation for base58-address chains."""

    def check_merchant_address(self, merchant_address: str) -> None:
        try:
            Pubkey.from_string(merchant_address)
        except Exception as e:
            raise ValueError(f"Invalid Solana merchant address: {merchant_address}") from e

    def same_address(self, destination: str, merchant_address: str) -> bool:
        # base58 is case-sensitive
        return destination == merchant_address
