"""Solana chain data source.

Transactions are resolved with ``getTransaction`` (jsonParsed) and reported
as per-account lamport balance deltas. Address activity is followed by
polling ``getBalance``; history comes from ``getSignaturesForAddress``.
"""

import asyncio
from typing import AsyncIterator, Optional

import httpx
from solders.pubkey import Pubkey

from ..config import config
from ..errors import TransientSourceError
from ..logging_utils import get_logger
from ..models import ASSET_DECIMALS, AddressActivity, Asset, ChainTransaction, Network, TransferLeg
from .base import JsonRpcClient, WatchableChainSource

logger = get_logger(__name__)


def _account_key(key) -> str:
    # jsonParsed returns objects, legacy encodings return bare strings
    return key["pubkey"] if isinstance(key, dict) else key


class SolanaChainSource(WatchableChainSource):
    """Account-balance-delta lookups and activity polling on Solana."""

    network = Network.SOLANA

    def __init__(
        self,
        rpc_url: str = None,
        commitment: str = "confirmed",
        poll_interval: float = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.commitment = commitment
        self.poll_interval = poll_interval if poll_interval is not None else config.watcher_poll_interval
        self.rpc = JsonRpcClient(
            rpc_url or config.solana_rpc_url,
            timeout=config.rpc_timeout_seconds,
            client=client,
        )

    async def get_transaction_by_reference(self, reference: str) -> Optional[ChainTransaction]:
        """Fetch a transaction by signature.

        Args:
            reference: Base58 transaction signature.

        Returns:
            Normalized transaction with one leg per account whose lamport
            balance increased, or None if the signature is unknown.
        """
        result = await self.rpc.call(
            "getTransaction",
            [
                reference,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            logger.info(f"Solana transaction {reference} not found")
            return None

        try:
            meta = result["meta"]
            keys = [_account_key(k) for k in result["transaction"]["message"]["accountKeys"]]
            pre_balances = meta["preBalances"]
            post_balances = meta["postBalances"]
        except (KeyError, TypeError) as e:
            raise TransientSourceError(f"Malformed Solana payload for {reference}: {e}") from e

        transfers = []
        for key, pre, post in zip(keys, pre_balances, post_balances):
            delta = post - pre
            if delta > 0:
                transfers.append(
                    TransferLeg(
                        destination=key,
                        amount_minor=delta,
                        decimals=ASSET_DECIMALS[Asset.SOL],
                        asset=Asset.SOL.value,
                    )
                )

        return ChainTransaction(
            reference=reference,
            succeeded=meta.get("err") is None,
            transfers=transfers,
        )

    async def get_balance(self, address: str) -> int:
        """Get SOL balance in lamports."""
        result = await self.rpc.call("getBalance", [address, {"commitment": self.commitment}])
        try:
            return int(result["value"])
        except (KeyError, TypeError, ValueError) as e:
            raise TransientSourceError(f"Malformed getBalance payload for {address}: {result!r}") from e

    async def list_recent_references(self, address: str, limit: int) -> list[str]:
        """Return the latest signatures touching an address, newest first."""
        Pubkey.from_string(address)
        result = await self.rpc.call(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": self.commitment}],
        )
        try:
            return [item["signature"] for item in result or []]
        except (KeyError, TypeError) as e:
            raise TransientSourceError(f"Malformed getSignaturesForAddress payload for {address}: {e}") from e

    async def subscribe_to_address_activity(self, address: str) -> AsyncIterator[AddressActivity]:
        """Poll the address balance and yield an event whenever it changes.

        The first poll only establishes the baseline. RPC failures end the
        stream with TransientSourceError; the watcher resubscribes.
        """
        Pubkey.from_string(address)
        last_balance = await self.get_balance(address)
        logger.info(f"Watching Solana address {address} (baseline {last_balance} lamports)")

        while True:
            await asyncio.sleep(self.poll_interval)
            balance = await self.get_balance(address)
            if balance != last_balance:
                last_balance = balance
                yield AddressActivity(address=address, balance=balance)

    async def close(self) -> None:
        await self.rpc.close()
