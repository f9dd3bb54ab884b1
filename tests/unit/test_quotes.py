"""Unit tests for best-quote selection."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from chainsettle.errors import NoQuoteAvailable
from chainsettle.models import Asset, PriceQuote
from chainsettle.orchestrator.quotes import QuoteAggregator, StaticRateProvider, default_providers
from tests.fakes import FixedQuoteProvider


@pytest.mark.unit
class TestQuoteAggregator:
    """Test provider fan-out and selection."""

    @pytest.mark.asyncio
    async def test_lowest_total_wins(self):
        providers = [
            FixedQuoteProvider("A", "0.0044", "0.0002"),
            FixedQuoteProvider("B", "0.0045", "0"),
        ]
        quote = await QuoteAggregator(providers).best_quote(Decimal("100"), Asset.BNB)

        assert quote.provider == "B"
        assert quote.total_with_fee == Decimal("0.0045")
        assert quote.crypto_amount == Decimal("0.0045")

    @pytest.mark.asyncio
    async def test_tie_keeps_first_registered_provider(self):
        """A slower provider registered first still wins a tie."""
        providers = [
            FixedQuoteProvider("slow", "0.0040", "0.0005", delay=0.05),
            FixedQuoteProvider("fast", "0.0044", "0.0001"),
        ]
        quote = await QuoteAggregator(providers).best_quote(Decimal("100"), Asset.BNB)
        assert quote.provider == "slow"

    @pytest.mark.asyncio
    async def test_failed_provider_is_skipped(self):
        providers = [
            FixedQuoteProvider("cheap-but-down", "0.0001", "0", fail=True),
            FixedQuoteProvider("up", "0.0045", "0.0001"),
        ]
        quote = await QuoteAggregator(providers).best_quote(Decimal("100"), Asset.BNB)
        assert quote.provider == "up"

    @pytest.mark.asyncio
    async def test_timed_out_provider_is_skipped(self):
        providers = [
            FixedQuoteProvider("hanging", "0.0001", "0", delay=5),
            FixedQuoteProvider("prompt", "0.0045", "0.0001"),
        ]
        quote = await QuoteAggregator(providers, timeout=0.05).best_quote(Decimal("100"), Asset.BNB)
        assert quote.provider == "prompt"

    @pytest.mark.asyncio
    async def test_all_providers_failing_raises(self):
        providers = [
            FixedQuoteProvider("A", "0.0045", "0", fail=True),
            FixedQuoteProvider("B", "0.0046", "0", fail=True),
        ]
        with pytest.raises(NoQuoteAvailable):
            await QuoteAggregator(providers).best_quote(Decimal("100"), Asset.BNB)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
    async def test_non_positive_amount_rejected(self, amount):
        provider = FixedQuoteProvider("A", "0.0045", "0")
        with pytest.raises(ValueError):
            await QuoteAggregator([provider]).best_quote(amount, Asset.BNB)
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_default_providers(self):
        """100 EUR: Binance 0.0046 + 0.0002 beats Kraken and Moralis."""
        quote = await QuoteAggregator(default_providers()).best_quote(Decimal("100"), Asset.BNB)

        assert quote.provider == "Binance"
        assert quote.crypto_amount == Decimal("0.0046")
        assert quote.total_with_fee == Decimal("0.0048")


@pytest.mark.unit
class TestPriceQuote:
    def test_total_must_match_components(self):
        with pytest.raises(ValidationError):
            PriceQuote(
                provider="x",
                crypto_amount=Decimal("1"),
                network_fee=Decimal("0.1"),
                total_with_fee=Decimal("1.2"),
                rate=Decimal("0.01"),
            )

    def test_float_amounts_rejected(self):
        with pytest.raises(ValidationError):
            PriceQuote(
                provider="x",
                crypto_amount=0.1,
                network_fee=Decimal("0"),
                total_with_fee=Decimal("0.1"),
                rate=Decimal("0.001"),
            )

    @pytest.mark.asyncio
    async def test_static_rate_provider_math(self):
        provider = StaticRateProvider("Kraken", Decimal("0.0000455"), Decimal("0.0003"), simulate_latency=False)
        quote = await provider.get_quote(Decimal("100"), Asset.BNB)

        assert quote.crypto_amount == Decimal("0.00455")
        assert quote.total_with_fee == Decimal("0.00485")
