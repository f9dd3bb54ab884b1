"""In-memory stand-ins for providers, chain sources and the terminal."""

import asyncio
from decimal import Decimal
from typing import Optional

from solders.keypair import Keypair

from chainsettle.chains.base import WatchableChainSource
from chainsettle.errors import TransientSourceError
from chainsettle.models import (
    ASSET_DECIMALS,
    AddressActivity,
    Asset,
    ChainTransaction,
    Network,
    NotificationKind,
    PriceQuote,
    TransferLeg,
)
from chainsettle.orchestrator.notifications import NotificationSink
from chainsettle.orchestrator.quotes import PriceProvider

EVM_MERCHANT = "0x" + "5a" * 20
EVM_OTHER = "0x" + "77" * 20
SOL_MERCHANT = str(Keypair().pubkey())
SOL_OTHER = str(Keypair().pubkey())


class FixedQuoteProvider(PriceProvider):
    """Returns the same quote whatever the fiat amount."""

    def __init__(self, name: str, crypto_amount: str, fee: str, delay: float = 0, fail: bool = False):
        self.name = name
        self.crypto_amount = Decimal(crypto_amount)
        self.fee = Decimal(fee)
        self.delay = delay
        self.fail = fail
        self.calls = 0

    async def get_quote(self, fiat_amount: Decimal, asset: Asset) -> PriceQuote:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError(f"{self.name} unavailable")
        return PriceQuote.build(
            provider=self.name,
            crypto_amount=self.crypto_amount,
            network_fee=self.fee,
            rate=self.crypto_amount / fiat_amount,
        )


def make_tx(
    reference: str,
    destination: str,
    amount: str,
    asset: Asset,
    succeeded: bool = True,
) -> ChainTransaction:
    decimals = ASSET_DECIMALS[asset]
    minor = int(Decimal(amount).scaleb(decimals))
    return ChainTransaction(
        reference=reference,
        succeeded=succeeded,
        transfers=[TransferLeg(destination=destination, amount_minor=minor, decimals=decimals, asset=asset.value)],
    )


class FakeChainSource(WatchableChainSource):
    """Chain source backed by dicts, with a queue-driven activity stream."""

    def __init__(self, network: Network):
        self.network = network
        self.transactions: dict[str, object] = {}
        self.references: list[str] = []  # newest first
        self.activity: asyncio.Queue = asyncio.Queue()
        self.history_failures = 0
        self.history_error: type = TransientSourceError
        self.lookups: list[str] = []
        self.closed = False

    def add_transaction(self, tx: ChainTransaction) -> None:
        self.transactions[tx.reference] = tx
        self.references.insert(0, tx.reference)

    async def get_transaction_by_reference(self, reference: str) -> Optional[ChainTransaction]:
        self.lookups.append(reference)
        tx = self.transactions.get(reference)
        if isinstance(tx, Exception):
            raise tx
        return tx

    async def list_recent_references(self, address: str, limit: int) -> list[str]:
        if self.history_failures:
            self.history_failures -= 1
            raise self.history_error("history unavailable")
        return self.references[:limit]

    async def subscribe_to_address_activity(self, address: str):
        while True:
            item = await self.activity.get()
            if isinstance(item, Exception):
                raise item
            yield AddressActivity(address=address)

    async def close(self) -> None:
        self.closed = True


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.events: list[tuple[NotificationKind, int]] = []

    async def notify(self, kind: NotificationKind, amount_minor_units: int) -> bool:
        self.events.append((kind, amount_minor_units))
        return True


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll an async or sync predicate until it holds."""

    async def _poll():
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)
