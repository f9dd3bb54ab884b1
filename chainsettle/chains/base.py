"""Chain data source interfaces and the shared JSON-RPC transport."""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import httpx

from ..errors import TransientSourceError
from ..logging_utils import get_logger
from ..models import AddressActivity, ChainTransaction, Network

logger = get_logger(__name__)


class JsonRpcClient:
    """Minimal async JSON-RPC 2.0 client over httpx.

    Transport failures and JSON-RPC error objects both surface as
    TransientSourceError: from the validator's point of view the chain was
    unreachable and the lookup may be retried.
    """

    def __init__(self, url: str, timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    async def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        try:
            resp = await self._client.post(self.url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientSourceError(f"{method} failed against {self.url}: {e}") from e

        if not isinstance(data, dict):
            raise TransientSourceError(f"{method} returned a non-object response from {self.url}")
        if data.get("error"):
            error = data["error"]
            if not isinstance(error, dict):
                raise TransientSourceError(f"{method} returned RPC error: {error}")
            raise TransientSourceError(f"{method} returned RPC error {error.get('code')}: {error.get('message')}")
        return data.get("result")

    async def close(self) -> None:
        await self._client.aclose()


class ChainDataSource(ABC):
    """Read access to one chain, as needed by a validator."""

    network: Network

    @abstractmethod
    async def get_transaction_by_reference(self, reference: str) -> Optional[ChainTransaction]:
        """Fetch a transaction; None when the chain does not know the reference.

        Raises:
            TransientSourceError: The chain could not be queried.
        """

    async def close(self) -> None:
        """Release network resources."""


class WatchableChainSource(ChainDataSource):
    """A data source that can also follow activity on an address."""

    @abstractmethod
    def subscribe_to_address_activity(self, address: str) -> AsyncIterator[AddressActivity]:
        """Yield a change event each time the address shows new activity."""

    @abstractmethod
    async def list_recent_references(self, address: str, limit: int) -> list[str]:
        """Return the address's most recent transaction references, newest first."""
