"""Settlement notifications to the payment terminal (TPE).

Payloads are signed with HMAC-SHA256 so the terminal gateway can reject
forged confirmations. A failed delivery is logged and never rolls back a
settlement: the ledger is authoritative.
"""

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx

from ..config import config
from ..logging_utils import get_correlation_id, get_logger
from ..models import NotificationKind, utc_now

logger = get_logger(__name__)

# ISO-4217 currencies without minor units
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "XOF", "XAF"})


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a fiat amount to integer minor units (100 EUR -> 10000)."""
    exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
    return int((Decimal(amount) * (Decimal(10) ** exponent)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def create_webhook_signature(payload: str, secret: str) -> str:
    """Create HMAC-SHA256 signature for a notification payload.

    Args:
        payload: The JSON payload string.
        secret: Shared secret.

    Returns:
        Hex-encoded HMAC signature.
    """
    if not secret:
        raise ValueError("Webhook secret is required for signing")

    return hmac.new(
        secret.encode(),
        payload.encode(),
        hashlib.sha256,
    ).hexdigest()


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify an HMAC-SHA256 signature on the receiving side.

    Helper for terminal gateways consuming these notifications; used by
    scripts/terminal_emulator.py.

    Args:
        payload: Raw payload bytes.
        signature: Hex-encoded HMAC signature from header.
        secret: Shared secret for HMAC.

    Returns:
        True if signature is valid, False otherwise.
    """
    expected_signature = hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256,
    ).hexdigest()

    # Constant-time comparison
    return hmac.compare_digest(expected_signature, signature)


class NotificationSink(ABC):
    """Outbound channel to the terminal UI."""

    @abstractmethod
    async def notify(self, kind: NotificationKind, amount_minor_units: int) -> bool:
        """Emit an event. Returns True when delivered."""

    async def close(self) -> None:
        """Release resources."""


class LoggingNotifier(NotificationSink):
    """Sink used when no terminal gateway is configured."""

    async def notify(self, kind: NotificationKind, amount_minor_units: int) -> bool:
        logger.info(f"Terminal notification {kind.value}: {amount_minor_units}")
        return True


class WebhookNotifier(NotificationSink):
    """POST signed notifications to the terminal gateway."""

    def __init__(
        self,
        url: str,
        secret: str = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.secret = secret or config.webhook_secret
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def notify(self, kind: NotificationKind, amount_minor_units: int) -> bool:
        payload = {
            "event": kind.value,
            "amount": amount_minor_units,
            "timestamp": utc_now().isoformat(),
        }
        payload_str = json.dumps(payload)
        headers = {
            "X-Webhook-Signature": create_webhook_signature(payload_str, self.secret),
            "Content-Type": "application/json",
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id

        logger.info(f"Notifying terminal of {kind.value}: {amount_minor_units}")
        try:
            response = await self._client.post(self.url, content=payload_str, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Error sending {kind.value} to terminal: {e}")
            return False

        if response.status_code not in (200, 201, 202, 204):
            logger.error(f"Terminal rejected {kind.value}: {response.status_code} - {response.text}")
            return False
        return True

    async def close(self) -> None:
        await self._client.aclose()


def build_notifier() -> NotificationSink:
    """Webhook notifier when a terminal URL is configured, logging otherwise."""
    if config.tpe_notify_url:
        return WebhookNotifier(config.tpe_notify_url)
    logger.warning("TPE_NOTIFY_URL not set - terminal notifications are logged only")
    return LoggingNotifier()
