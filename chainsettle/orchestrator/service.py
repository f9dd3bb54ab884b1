"""Payment orchestration.

Drives an intent from quote to settlement:

1. request_payment: best quote -> intent (AWAITING_PAYMENT) -> watcher -> instructions
2. a reference arrives, either from the payer (submit_client_reference) or
   from a chain watcher (on_inbound_reference)
3. the network's validator returns a verdict
4. final verdicts are committed to the audit chain together with the status;
   VALIDATED notifies the terminal

Unsolicited references carry no payment memo. Only references that credit the
merchant address are matched, to the oldest open intent for the asset that
has no reference yet (ties broken by intent id). Matching and claiming happen
under one lock. References whose screening hits a chain outage are deferred to
the next revalidate_pending() sweep.
"""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from ..chains.evm import EvmChainSource
from ..chains.solana import SolanaChainSource
from ..config import config
from ..database import Database
from ..errors import IntentNotFound, ReferenceAlreadyBound, TransientSourceError
from ..logging_utils import CorrelationIdContext, get_logger
from ..models import (
    NETWORK_ASSETS,
    IntentStatus,
    IntentStatusView,
    Network,
    NotificationKind,
    PaymentInstructions,
    PaymentIntent,
    ReferenceObserved,
    ValidationResult,
    utc_now,
)
from .audit import AuditChain
from .notifications import NotificationSink, build_notifier, to_minor_units
from .quotes import QuoteAggregator, default_providers
from .validation import ChainValidator, EvmValidator, SolanaValidator
from .watcher import ChainWatcher, WatcherState

logger = get_logger(__name__)


def status_view(intent: PaymentIntent) -> IntentStatusView:
    """Project an intent onto what the requester is allowed to see."""
    missing = None
    if intent.status == IntentStatus.PARTIAL_PAYMENT and intent.received_amount is not None:
        missing = intent.crypto_amount - intent.received_amount

    return IntentStatusView(
        intent_id=intent.id,
        status="FAILED" if intent.status == IntentStatus.REFUSED else intent.status.value,
        fiat_amount=intent.fiat_amount,
        currency=intent.currency,
        crypto_amount=intent.crypto_amount,
        asset=intent.asset,
        tx_reference=intent.tx_reference,
        audit_hash=intent.audit_hash,
        received_amount=intent.received_amount,
        missing_amount=missing,
    )


class Orchestrator:
    """Composes quotes, validators, watchers, the store and the audit chain."""

    def __init__(
        self,
        store: Database,
        quotes: QuoteAggregator,
        validators: dict[Network, ChainValidator],
        merchant_addresses: dict[Network, str],
        notifier: NotificationSink,
        watchers: Optional[dict[Network, ChainWatcher]] = None,
        audit: Optional[AuditChain] = None,
    ):
        self.store = store
        self.quotes = quotes
        self.validators = validators
        self.merchant_addresses = merchant_addresses
        self.notifier = notifier
        self.watchers = watchers or {}
        self.audit = audit or AuditChain(store)

        self._queue: asyncio.Queue[ReferenceObserved] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._match_lock = asyncio.Lock()
        # intent id -> [lock, holders + waiters]; dropped when unused
        self._intent_locks: dict[str, list] = {}
        self._deferred: dict[str, Network] = {}

    # Lifecycle
    async def start(self) -> None:
        """Start the watcher-event consumer and every configured watcher."""
        self._ensure_consumer()
        for network in self.watchers:
            self._ensure_watcher(network)
        logger.info(f"Orchestrator started ({len(self.watchers)} watchers)")

    async def stop(self) -> None:
        """Stop watchers and the consumer, then close chain sources and the notifier."""
        for watcher in self.watchers.values():
            await watcher.stop()
        if self._consumer:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        for validator in self.validators.values():
            await validator.source.close()
        await self.notifier.close()
        logger.info("Orchestrator stopped")

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="orchestrator-consumer")

    def _ensure_watcher(self, network: Network) -> None:
        watcher = self.watchers.get(network)
        if watcher is None or watcher.state != WatcherState.IDLE:
            return
        self._ensure_consumer()

        async def enqueue(reference: str) -> None:
            await self._queue.put(
                ReferenceObserved(network=network, address=watcher.address, reference=reference)
            )

        watcher.start(enqueue)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                with CorrelationIdContext(f"ref-{event.reference[:16]}"):
                    await self.on_inbound_reference(event.network, event.reference)
            except Exception as e:
                logger.error(f"Failed to process inbound reference {event.reference}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    # Core operations
    async def request_payment(self, fiat_amount: Decimal, currency: str, network: Network) -> PaymentInstructions:
        """Quote a fiat amount and open an intent for it.

        Raises:
            NoQuoteAvailable: No provider answered; no intent is created.
            ValueError: No merchant address configured for the network.
        """
        asset = NETWORK_ASSETS[network]
        merchant_address = self.merchant_addresses.get(network)
        if not merchant_address:
            raise ValueError(f"No merchant address configured for {network.value}")

        quote = await self.quotes.best_quote(Decimal(fiat_amount), asset)

        intent = PaymentIntent(
            fiat_amount=Decimal(fiat_amount),
            currency=currency.upper(),
            crypto_amount=quote.crypto_amount,
            asset=asset,
            network=network,
            merchant_address=merchant_address,
            provider=quote.provider,
        )
        with CorrelationIdContext(intent.id):
            await self.store.create_intent(intent)
            self._ensure_watcher(network)
            await self._notify(NotificationKind.PAYMENT_REQUESTED, intent)

        logger.info(f"Intent {intent.id}: awaiting {quote.crypto_amount} {asset.value} via {quote.provider}")
        return PaymentInstructions(
            intent_id=intent.id,
            status=intent.status,
            crypto_amount=intent.crypto_amount,
            asset=asset,
            network=network,
            merchant_address=merchant_address,
            instruction=f"Send {intent.crypto_amount} {asset.value} to {merchant_address}",
            quote=quote,
        )

    async def on_inbound_reference(self, network: Network, reference: str) -> Optional[ValidationResult]:
        """Match an unsolicited reference to the oldest open intent and validate it.

        Returns:
            The validation result, or None when the reference was already
            bound, does not credit the merchant, was deferred, or no open
            intent was waiting.
        """
        asset = NETWORK_ASSETS[network]

        if await self.store.find_by_reference(reference):
            logger.debug(f"Reference {reference} already bound to an intent")
            return None

        try:
            incoming = await self.validators[network].credits_merchant(reference, self.merchant_addresses[network])
        except TransientSourceError as e:
            logger.warning(f"Deferring inbound reference {reference}: {e}")
            self._deferred[reference] = network
            return None
        self._deferred.pop(reference, None)
        if not incoming:
            logger.info(f"Ignoring inbound reference {reference}: no successful transfer to the merchant")
            return None

        async with self._match_lock:
            if await self.store.find_by_reference(reference):
                logger.debug(f"Reference {reference} already bound to an intent")
                return None

            candidates = [i for i in await self.store.find_pending(asset) if i.tx_reference is None]
            if not candidates:
                logger.warning(f"No open {asset.value} intent for inbound reference {reference}")
                return None

            intent = await self.store.update_status(candidates[0].id, IntentStatus.PENDING, reference)

        logger.info(f"Matched inbound reference {reference} to intent {intent.id}")
        with CorrelationIdContext(intent.id):
            return await self._settle(intent.id, reference)

    async def submit_client_reference(self, intent_id: str, reference: str) -> IntentStatusView:
        """Validate a reference supplied by the payer for a known intent.

        Raises:
            IntentNotFound: Unknown intent.
            ReferenceAlreadyBound: The reference belongs to another intent.
        """
        with CorrelationIdContext(intent_id):
            async with self._match_lock:
                intent = await self.store.get_intent(intent_id)
                if intent is None:
                    raise IntentNotFound(f"Intent not found: {intent_id}")
                if intent.status.is_final:
                    logger.info(f"Intent {intent_id} already {intent.status.value}; ignoring reference {reference}")
                    return status_view(intent)

                bound = await self.store.find_by_reference(reference)
                if bound and bound.id != intent_id:
                    raise ReferenceAlreadyBound(f"Reference {reference} already used by intent {bound.id}")

                await self.store.update_status(intent_id, IntentStatus.PENDING, reference)

            await self._settle(intent_id, reference)
        return await self.get_intent_status(intent_id)

    async def get_intent_status(self, intent_id: str) -> IntentStatusView:
        intent = await self.store.get_intent(intent_id)
        if intent is None:
            raise IntentNotFound(f"Intent not found: {intent_id}")
        return status_view(intent)

    async def revalidate_pending(self, network: Optional[Network] = None) -> int:
        """Retry deferred inbound references, then every open intent that already has a reference.

        Returns:
            Number of intents that reached a final status.
        """
        for reference, net in list(self._deferred.items()):
            if network is None or net == network:
                await self.on_inbound_reference(net, reference)

        finalized = 0
        networks = [network] if network else list(self.validators)
        for net in networks:
            for intent in await self.store.find_pending(NETWORK_ASSETS[net]):
                if intent.tx_reference is None:
                    continue
                with CorrelationIdContext(intent.id):
                    result = await self._settle(intent.id, intent.tx_reference)
                if result.status.is_final:
                    finalized += 1
        logger.info(f"Revalidation sweep finalized {finalized} intents")
        return finalized

    # Settlement
    @asynccontextmanager
    async def _intent_lock(self, intent_id: str):
        entry = self._intent_locks.setdefault(intent_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._intent_locks[intent_id]

    async def _settle(self, intent_id: str, reference: str) -> ValidationResult:
        async with self._intent_lock(intent_id):
            intent = await self.store.get_intent(intent_id)
            if intent.status.is_final:
                return ValidationResult(status=intent.status, received_amount=intent.received_amount)

            validator = self.validators[intent.network]
            result = await validator.validate(reference, intent.crypto_amount, intent.merchant_address)

            if not result.status.is_final:
                logger.info(f"Intent {intent_id} stays {intent.status.value}: {result.reason}")
                return result

            finalized = intent.model_copy(
                update={
                    "status": result.status,
                    "tx_reference": reference,
                    "received_amount": result.received_amount,
                    "updated_at": utc_now(),
                }
            )
            await self.audit.commit(finalized)

        logger.info(f"Intent {intent_id} finalized as {result.status.value}")
        if result.status == IntentStatus.VALIDATED:
            await self._notify(NotificationKind.PAYMENT_CONFIRMED, intent)
        return result

    async def _notify(self, kind: NotificationKind, intent: PaymentIntent) -> None:
        amount = to_minor_units(intent.fiat_amount, intent.currency)
        try:
            await self.notifier.notify(kind, amount)
        except Exception as e:
            logger.error(f"Notification {kind.value} for intent {intent.id} failed: {e}", exc_info=True)


def build_orchestrator(store: Database) -> Orchestrator:
    """Wire the orchestrator from configuration."""
    merchant_addresses: dict[Network, str] = {}
    validators: dict[Network, ChainValidator] = {}
    watchers: dict[Network, ChainWatcher] = {}

    if config.bsc_merchant_address:
        merchant_addresses[Network.BSC] = config.bsc_merchant_address
        validators[Network.BSC] = EvmValidator(EvmChainSource())

    if config.solana_merchant_address:
        solana = SolanaChainSource()
        merchant_addresses[Network.SOLANA] = config.solana_merchant_address
        validators[Network.SOLANA] = SolanaValidator(solana)
        watchers[Network.SOLANA] = ChainWatcher(solana, config.solana_merchant_address)

    return Orchestrator(
        store=store,
        quotes=QuoteAggregator(default_providers()),
        validators=validators,
        merchant_addresses=merchant_addresses,
        notifier=build_notifier(),
        watchers=watchers,
    )
