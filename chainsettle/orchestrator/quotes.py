"""Price quote aggregation.

Queries every registered provider concurrently and keeps the cheapest total
cost. Providers here are policy stubs with fixed rates, not market data.
"""

import asyncio
import random
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional, Sequence

from ..config import config
from ..errors import NoQuoteAvailable
from ..logging_utils import get_logger
from ..models import Asset, PriceQuote

logger = get_logger(__name__)


class PriceProvider(ABC):
    """A source of settlement quotes."""

    name: str

    @abstractmethod
    async def get_quote(self, fiat_amount: Decimal, asset: Asset) -> PriceQuote:
        """Quote a fiat amount in the target asset. Raises on failure."""


class StaticRateProvider(PriceProvider):
    """Stub provider with a fixed rate and network fee and simulated latency."""

    def __init__(
        self,
        name: str,
        rate: Decimal,
        network_fee: Decimal,
        latency_ms_range: tuple[int, int] = (0, 0),
        simulate_latency: bool = None,
    ):
        self.name = name
        self.rate = Decimal(rate)
        self.network_fee = Decimal(network_fee)
        self.latency_ms_range = latency_ms_range
        self.simulate_latency = config.simulate_quote_latency if simulate_latency is None else simulate_latency

    async def get_quote(self, fiat_amount: Decimal, asset: Asset) -> PriceQuote:
        latency = random.randint(*self.latency_ms_range)
        if self.simulate_latency and latency:
            await asyncio.sleep(latency / 1000)

        crypto_amount = fiat_amount * self.rate
        return PriceQuote.build(
            provider=self.name,
            crypto_amount=crypto_amount,
            network_fee=self.network_fee,
            rate=self.rate,
            latency_ms=latency,
        )


def default_providers() -> list[PriceProvider]:
    """The stub providers registered by default, in registration order."""
    return [
        StaticRateProvider("Moralis", Decimal("0.000045"), Decimal("0.0005"), (50, 250)),
        StaticRateProvider("Binance", Decimal("0.000046"), Decimal("0.0002"), (20, 170)),
        StaticRateProvider("Kraken", Decimal("0.0000455"), Decimal("0.0003"), (100, 400)),
    ]


class QuoteAggregator:
    """Fan out to all providers and pick the lowest total_with_fee."""

    def __init__(self, providers: Sequence[PriceProvider], timeout: Optional[float] = None):
        if not providers:
            raise ValueError("QuoteAggregator needs at least one provider")
        self.providers = list(providers)
        self.timeout = timeout if timeout is not None else config.quote_timeout_seconds

    async def _ask(self, provider: PriceProvider, fiat_amount: Decimal, asset: Asset) -> PriceQuote:
        return await asyncio.wait_for(provider.get_quote(fiat_amount, asset), timeout=self.timeout)

    async def best_quote(self, fiat_amount: Decimal, asset: Asset) -> PriceQuote:
        """Return the cheapest quote across providers.

        Ties on total cost keep the earliest-registered provider, so the
        result does not depend on which provider answered first.

        Args:
            fiat_amount: Positive fiat amount to settle.
            asset: Target crypto asset.

        Returns:
            The winning PriceQuote.

        Raises:
            ValueError: fiat_amount is not positive.
            NoQuoteAvailable: Every provider failed or timed out.
        """
        fiat_amount = Decimal(fiat_amount)
        if fiat_amount <= 0:
            raise ValueError(f"Fiat amount must be positive, got {fiat_amount}")

        logger.info(f"Fetching best quote for {fiat_amount} to {asset.value}")
        start = time.monotonic()

        results = await asyncio.gather(
            *(self._ask(p, fiat_amount, asset) for p in self.providers),
            return_exceptions=True,
        )

        best: Optional[PriceQuote] = None
        for provider, result in zip(self.providers, results):
            if isinstance(result, BaseException):
                logger.warning(f"Quote provider {provider.name} failed: {result!r}")
                continue
            if best is None or result.total_with_fee < best.total_with_fee:
                best = result

        duration_ms = (time.monotonic() - start) * 1000
        if best is None:
            logger.error(f"All {len(self.providers)} quote providers failed for {asset.value}")
            raise NoQuoteAvailable(f"No provider returned a quote for {fiat_amount} -> {asset.value}")

        logger.info(
            f"Best quote: {best.provider} - Cost: {best.total_with_fee} "
            f"({best.crypto_amount} + {best.network_fee} fee) in {duration_ms:.0f}ms"
        )
        return best
