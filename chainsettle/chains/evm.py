"""EVM (BSC) chain data source.

Reads transactions and receipts over standard Ethereum JSON-RPC. Only native
value transfers are reported as legs; the settlement asset on BSC is BNB.
"""

from typing import Optional

import httpx

from ..config import config
from ..errors import TransientSourceError
from ..logging_utils import get_logger
from ..models import ASSET_DECIMALS, Asset, ChainTransaction, Network, TransferLeg
from .base import ChainDataSource, JsonRpcClient

logger = get_logger(__name__)


def _hex_to_int(value: Optional[str]) -> int:
    if value in (None, "", "0x"):
        return 0
    return int(value, 16)


class EvmChainSource(ChainDataSource):
    """Receipt-based lookups against an EVM JSON-RPC endpoint."""

    network = Network.BSC

    def __init__(
        self,
        rpc_url: str = None,
        asset: Asset = Asset.BNB,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.asset = asset
        self.rpc = JsonRpcClient(
            rpc_url or config.bsc_rpc_url,
            timeout=config.rpc_timeout_seconds,
            client=client,
        )

    async def get_transaction_by_reference(self, reference: str) -> Optional[ChainTransaction]:
        """Fetch a transaction and its receipt by hash.

        Args:
            reference: 0x-prefixed transaction hash.

        Returns:
            Normalized transaction, or None if the hash is unknown.

        Raises:
            TransientSourceError: RPC failure, or the transaction is not mined yet.
        """
        tx = await self.rpc.call("eth_getTransactionByHash", [reference])
        if tx is None:
            logger.info(f"EVM transaction {reference} not found")
            return None

        receipt = await self.rpc.call("eth_getTransactionReceipt", [reference])
        if receipt is None:
            # Known to the mempool but not mined: try again later
            raise TransientSourceError(f"Transaction {reference} has no receipt yet")

        try:
            succeeded = _hex_to_int(receipt.get("status")) == 1
            value = _hex_to_int(tx.get("value"))
            recipient = tx.get("to")
        except (TypeError, ValueError) as e:
            raise TransientSourceError(f"Malformed EVM payload for {reference}: {e}") from e

        transfers = []
        if recipient and value > 0:
            transfers.append(
                TransferLeg(
                    destination=recipient,
                    amount_minor=value,
                    decimals=ASSET_DECIMALS[self.asset],
                    asset=self.asset.value,
                )
            )

        logger.debug(f"EVM transaction {reference}: status={receipt.get('status')} value={value} to={recipient}")
        return ChainTransaction(
            reference=reference,
            succeeded=succeeded,
            transfers=transfers,
            raw_value=value,
        )

    async def close(self) -> None:
        await self.rpc.close()
