"""Unit tests for terminal notifications and HMAC signing."""

import json
from decimal import Decimal

import httpx
import pytest

from chainsettle.logging_utils import CorrelationIdContext
from chainsettle.models import NotificationKind
from chainsettle.orchestrator.notifications import (
    LoggingNotifier,
    WebhookNotifier,
    create_webhook_signature,
    to_minor_units,
    verify_webhook_signature,
)

SECRET = "test-secret"


@pytest.mark.unit
class TestWebhookSignatures:
    """Test HMAC signature creation and verification."""

    def test_valid_signature_verifies(self):
        payload = '{"event":"PAYMENT_CONFIRMED","amount":10000}'
        signature = create_webhook_signature(payload, SECRET)

        assert verify_webhook_signature(payload.encode(), signature, SECRET)

    def test_tampered_payload_fails(self):
        signature = create_webhook_signature('{"amount":10000}', SECRET)

        assert not verify_webhook_signature(b'{"amount":99999}', signature, SECRET)

    def test_wrong_secret_fails(self):
        payload = '{"amount":10000}'
        signature = create_webhook_signature(payload, SECRET)

        assert not verify_webhook_signature(payload.encode(), signature, "other-secret")

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            create_webhook_signature("{}", "")


@pytest.mark.unit
class TestMinorUnits:
    @pytest.mark.parametrize(
        "amount, currency, expected",
        [
            (Decimal("100"), "EUR", 10000),
            (Decimal("12.345"), "EUR", 1235),
            (Decimal("0.01"), "usd", 1),
            (Decimal("500"), "JPY", 500),
        ],
    )
    def test_conversion(self, amount, currency, expected):
        assert to_minor_units(amount, currency) == expected


@pytest.mark.unit
class TestWebhookNotifier:
    """Test outbound delivery against a mocked terminal gateway."""

    @pytest.mark.asyncio
    async def test_signed_payload_delivered(self):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = WebhookNotifier("https://tpe.test/notify", secret=SECRET, client=client)

        with CorrelationIdContext("intent-42"):
            delivered = await notifier.notify(NotificationKind.PAYMENT_CONFIRMED, 10000)
        await notifier.close()

        assert delivered
        request = captured[0]
        body = json.loads(request.content)
        assert body["event"] == "PAYMENT_CONFIRMED"
        assert body["amount"] == 10000
        assert verify_webhook_signature(request.content, request.headers["X-Webhook-Signature"], SECRET)
        assert request.headers["X-Correlation-Id"] == "intent-42"

    @pytest.mark.asyncio
    async def test_rejection_reported_not_raised(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
        notifier = WebhookNotifier("https://tpe.test/notify", secret=SECRET, client=client)

        assert await notifier.notify(NotificationKind.PAYMENT_REQUESTED, 10000) is False

    @pytest.mark.asyncio
    async def test_connection_error_reported_not_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = WebhookNotifier("https://tpe.test/notify", secret=SECRET, client=client)

        assert await notifier.notify(NotificationKind.PAYMENT_CONFIRMED, 10000) is False

    @pytest.mark.asyncio
    async def test_logging_notifier_always_delivers(self):
        assert await LoggingNotifier().notify(NotificationKind.PAYMENT_REQUESTED, 500)
