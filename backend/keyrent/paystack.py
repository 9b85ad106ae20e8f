from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import requests

from keyrent.config import (
    is_local_dev,
    paystack_base_url,
    paystack_secret_key,
    paystack_webhook_secret,
)
from keyrent.payments import Confirmed, Declined, Errored, GatewayOutcome

logger = logging.getLogger(__name__)


class PaystackError(RuntimeError):
    """Paystack answered with an error or could not be reached."""


class PaystackNotConfigured(PaystackError):
    pass


class PaystackClient:
    def __init__(self, *, secret_key: str | None = None, base_url: str | None = None, timeout: int = 30) -> None:
        self.secret_key = paystack_secret_key() if secret_key is None else secret_key
        self.base_url = (base_url or paystack_base_url()).rstrip("/")
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        if not self.configured:
            raise PaystackNotConfigured("PAYSTACK_SECRET_KEY not configured")
        url = f"{self.base_url}{path}"
        try:
            r = requests.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
            data = r.json()
        except requests.exceptions.RequestException as e:
            logger.exception("Paystack request error %s %s", method, path)
            raise PaystackError(f"Network error: {e}") from e
        except ValueError as e:
            raise PaystackError(f"Invalid response from Paystack (HTTP {r.status_code})") from e

        if r.status_code >= 400 or not data.get("status"):
            msg = data.get("message") or f"Paystack call failed (HTTP {r.status_code})"
            logger.error("Paystack error %s %s: %s", method, path, msg)
            raise PaystackError(msg)
        return data.get("data") or {}

    def initialize_transaction(
        self,
        *,
        email: str,
        amount_kobo: int,
        reference: str,
        currency: str,
        metadata: dict,
    ) -> dict[str, Any]:
        logger.info("Initializing Paystack transaction: %s", reference)
        return self._call(
            "POST",
            "/transaction/initialize",
            json={
                "email": email,
                "amount": int(amount_kobo),
                "reference": reference,
                "currency": currency,
                "metadata": metadata,
            },
        )

    def verify_transaction(self, reference: str) -> dict[str, Any]:
        logger.info("Verifying Paystack transaction: %s", reference)
        return self._call("GET", f"/transaction/verify/{reference}")


def outcome_from_transaction(data: dict[str, Any], *, expected_amount: int) -> GatewayOutcome:
    """
    Maps a Paystack transaction payload onto a gateway outcome.

    Anything other than a successful charge for exactly the expected amount is
    a decline; statuses that are still in flight are reported as errors so the
    payment stays pending.
    """
    status = str(data.get("status") or "").lower()
    if status == "success":
        try:
            paid = int(data.get("amount") or 0)
        except (TypeError, ValueError):
            paid = 0
        if paid != int(expected_amount):
            return Declined(reason=f"Amount mismatch: paid {paid}, expected {expected_amount}")
        return Confirmed()
    if status in {"failed", "abandoned", "reversed"}:
        return Declined(reason=str(data.get("gateway_response") or status))
    return Errored(reason=f"Transaction not settled ({status or 'unknown'})")


def confirm_with_gateway(client: PaystackClient, *, reference: str, expected_amount: int) -> GatewayOutcome:
    """
    Asks Paystack about `reference`.

    Without credentials, local development treats the payment as confirmed so
    the flow can be exercised end to end; any other environment reports an
    error and leaves the payment pending.
    """
    try:
        data = client.verify_transaction(reference)
    except PaystackNotConfigured:
        if is_local_dev():
            logger.warning("Paystack not configured; auto-confirming %s in local dev", reference)
            return Confirmed()
        return Errored(reason="Payment gateway not configured")
    except PaystackError as e:
        return Errored(reason=str(e))
    return outcome_from_transaction(data, expected_amount=expected_amount)


def valid_webhook_signature(body: bytes, signature: str, *, secret: str | None = None) -> bool:
    key = paystack_webhook_secret() if secret is None else secret
    if not key or not signature:
        return False
    computed = hmac.new(key=key.encode("utf-8"), msg=body, digestmod=hashlib.sha512).hexdigest()
    return hmac.compare_digest(signature, computed)
