import hashlib
import hmac
import logging
from typing import Dict, Optional

import requests

from .errors import UpstreamError


def compute_payment_signature(secret: str, order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    secret: str, order_id: str, payment_id: str, signature: str
) -> bool:
    """Check a Razorpay callback signature in constant time."""
    if not secret or not order_id or not payment_id or not signature:
        return False
    expected = compute_payment_signature(secret, str(order_id), str(payment_id))
    return hmac.compare_digest(
        expected.encode("utf-8"), str(signature).encode("utf-8")
    )


class RazorpayGateway:
    """Thin client for the Razorpay Orders API."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: int = 10,
        logger: Optional[logging.Logger] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def create_session(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, object]:
        if not self.is_configured:
            raise UpstreamError("Payment provider is not configured.")

        payload = {
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        self.logger.info(
            "Creating Razorpay order for receipt %s (%s %s)", receipt, amount, currency
        )
        try:
            response = requests.post(
                f"{self.base_url}/orders",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.logger.error("Razorpay order request failed: %s", exc)
            raise UpstreamError("Failed to create payment session.") from exc

        if response.status_code not in (200, 201):
            self.logger.error(
                "Razorpay order creation failed (%s): %s",
                response.status_code,
                response.text,
            )
            raise UpstreamError("Failed to create payment session.")

        try:
            session = response.json()
        except ValueError as exc:
            raise UpstreamError("Payment provider returned an invalid response.") from exc

        if not isinstance(session, dict) or not session.get("id"):
            self.logger.error("Razorpay order response missing id: %s", session)
            raise UpstreamError("Payment provider returned an invalid response.")

        return session

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return verify_payment_signature(self.key_secret, order_id, payment_id, signature)
