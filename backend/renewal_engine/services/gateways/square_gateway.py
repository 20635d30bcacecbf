"""Square gateway adapter (Payments API over httpx, card-on-file renewals)"""
import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional

import httpx

from renewal_engine.core.exceptions import WebhookPayloadError
from renewal_engine.services.gateways.base import (
    ChargeResult, EventType, GatewayAdapter, NormalizedEvent, header_value, parse_int,
)
from renewal_engine.services.gateways.stripe_gateway import to_minor_units
from renewal_engine.services.payment_errors import NETWORK_ERROR, TIMEOUT

logger = logging.getLogger(__name__)

SQUARE_API_VERSION = "2024-01-18"
SIGNATURE_HEADER = "x-square-hmacsha256-signature"

BASE_URLS = {
    "sandbox": "https://connect.squareupsandbox.com",
    "production": "https://connect.squareup.com",
}


class SquareGateway(GatewayAdapter):
    gateway_id = "square"

    def __init__(
        self,
        access_token: str,
        signature_key: str = "",
        notification_url: str = "",
        location_id: str = "",
        environment: str = "sandbox",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        if not access_token:
            raise ValueError("Square access token not configured")
        self.signature_key = signature_key
        self.notification_url = notification_url
        self.location_id = location_id
        self.client = httpx.Client(
            base_url=BASE_URLS.get(environment, BASE_URLS["sandbox"]),
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Square-Version": SQUARE_API_VERSION,
                "Content-Type": "application/json",
            },
        )

    def charge(
        self,
        token: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> ChargeResult:
        metadata = metadata or {}
        body = {
            "source_id": token,
            "idempotency_key": idempotency_key,
            "amount_money": {"amount": to_minor_units(amount, currency), "currency": currency.upper()},
            "autocomplete": True,
            "reference_id": str(metadata.get("order_id", "")),
            "note": f"Subscription {metadata.get('subscription_id', '')} renewal",
        }
        if customer_id:
            body["customer_id"] = customer_id
        if self.location_id:
            body["location_id"] = self.location_id

        try:
            response = self.client.post("/v2/payments", json=body)
        except httpx.TimeoutException as e:
            logger.warning(f"Square charge {idempotency_key} timed out: {e}")
            return ChargeResult.failure(TIMEOUT, str(e))
        except httpx.TransportError as e:
            logger.warning(f"Square charge {idempotency_key} network error: {e}")
            return ChargeResult.failure(NETWORK_ERROR, str(e))

        try:
            data = response.json()
        except ValueError:
            data = {}

        payment = data.get("payment") or {}
        errors = data.get("errors") or []
        if errors:
            first = errors[0]
            code = (first.get("code") or "processing_error").lower()
            logger.warning(f"Square declined charge {idempotency_key}: {code}")
            return ChargeResult.failure(code, first.get("detail"), payment.get("id"))
        if response.status_code >= 500:
            return ChargeResult.failure("temporarily_unavailable", f"Square returned {response.status_code}")
        if response.status_code >= 400:
            return ChargeResult.failure("invalid_request", f"Square returned {response.status_code}")

        status = payment.get("status")
        if status == "COMPLETED":
            return ChargeResult.success(payment["id"])
        if status in ("APPROVED", "PENDING"):
            return ChargeResult.pending(payment["id"])
        return ChargeResult.failure("card_declined", f"Payment status {status}", payment.get("id"))

    def compute_signature(self, payload: bytes) -> str:
        message = self.notification_url.encode() + payload
        digest = hmac.new(self.signature_key.encode(), message, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        signature = header_value(headers, SIGNATURE_HEADER)
        if not signature or not self.signature_key:
            return False
        return hmac.compare_digest(self.compute_signature(payload), signature)

    def parse_webhook(self, payload: bytes) -> NormalizedEvent:
        try:
            event = json.loads(payload)
            event_id = event["event_id"]
            raw_type = event["type"]
            obj = (event.get("data") or {}).get("object") or {}
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise WebhookPayloadError(f"Malformed Square event: {e}")

        occurred_at = None
        if event.get("created_at"):
            try:
                occurred_at = datetime.fromisoformat(event["created_at"].replace("Z", "+00:00"))
            except ValueError:
                logger.debug(f"Unparseable created_at on Square event {event_id}")

        normalized = NormalizedEvent(
            event_type=EventType.IGNORED,
            event_id=event_id,
            raw_type=raw_type,
            occurred_at=occurred_at,
        )

        payment = obj.get("payment")
        if raw_type in ("payment.created", "payment.updated") and payment:
            normalized.transaction_id = payment.get("id")
            normalized.order_id = parse_int(payment.get("reference_id"))
            status = payment.get("status")
            if status == "COMPLETED":
                normalized.event_type = EventType.PAYMENT_SUCCEEDED
            elif status in ("FAILED", "CANCELED"):
                normalized.event_type = EventType.PAYMENT_FAILED
                card_errors = (payment.get("card_details") or {}).get("errors") or []
                if card_errors:
                    normalized.error_code = (card_errors[0].get("code") or "").lower() or None
                    normalized.error_message = card_errors[0].get("detail")
                else:
                    normalized.error_code = "card_declined" if status == "FAILED" else "payment_canceled"
        return normalized
