"""Stripe gateway adapter (PaymentIntents, off-session renewals)"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Mapping, Optional

import stripe

from renewal_engine.core.exceptions import WebhookPayloadError
from renewal_engine.services.gateways.base import (
    ChargeResult, EventType, GatewayAdapter, NormalizedEvent, header_value, parse_int,
)
from renewal_engine.services.payment_errors import NETWORK_ERROR

logger = logging.getLogger(__name__)

# Currencies Stripe expects in major units
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})

EVENT_MAP = {
    "payment_intent.succeeded": EventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventType.PAYMENT_FAILED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_CANCELLED,
    "customer.subscription.paused": EventType.SUBSCRIPTION_SUSPENDED,
}


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to the integer Stripe expects"""
    amount = Decimal(str(amount))
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway(GatewayAdapter):
    gateway_id = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str = "", timeout: float = 30.0):
        if not secret_key:
            raise ValueError("Stripe secret key not configured")
        self.webhook_secret = webhook_secret
        # Configure Stripe
        stripe.api_key = secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def charge(
        self,
        token: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> ChargeResult:
        params = {
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "payment_method": token,
            "off_session": True,
            "confirm": True,
            "metadata": {**(metadata or {}), "payment_type": "subscription_renewal"},
        }
        if customer_id:
            params["customer"] = customer_id

        try:
            intent = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
        except stripe.CardError as e:
            error = getattr(e, "error", None)
            decline_code = getattr(error, "decline_code", None) if error else None
            code = decline_code or e.code or "card_declined"
            payment_intent = getattr(error, "payment_intent", None) if error else None
            transaction_id = payment_intent.get("id") if payment_intent else None
            logger.warning(f"Stripe declined charge {idempotency_key}: {code}")
            return ChargeResult.failure(code, e.user_message or str(e), transaction_id)
        except stripe.APIConnectionError as e:
            logger.warning(f"Stripe connection error for {idempotency_key}: {e}")
            return ChargeResult.failure(NETWORK_ERROR, str(e))
        except stripe.RateLimitError as e:
            return ChargeResult.failure("rate_limit", str(e))
        except stripe.AuthenticationError as e:
            logger.error(f"Stripe authentication failed: {e}")
            return ChargeResult.failure("authentication_error", str(e))
        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe rejected charge {idempotency_key}: {e}")
            return ChargeResult.failure(e.code or "invalid_request", str(e))
        except stripe.APIError as e:
            logger.warning(f"Stripe API error for {idempotency_key}: {e}")
            return ChargeResult.failure("processing_error", str(e))
        except stripe.StripeError as e:
            logger.error(f"Unexpected Stripe error for {idempotency_key}: {e}")
            return ChargeResult.failure(e.code or "stripe_error", str(e))

        status = intent.get("status")
        if status == "succeeded":
            return ChargeResult.success(intent["id"])
        if status == "processing":
            return ChargeResult.pending(intent["id"])
        if status == "requires_action":
            # Off-session charge needs the customer; treat as a hard decline
            return ChargeResult.failure("authentication_required", "Payment requires customer action", intent["id"])
        return ChargeResult.failure("card_declined", f"PaymentIntent status {status}", intent["id"])

    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        sig_header = header_value(headers, "stripe-signature")
        if not sig_header or not self.webhook_secret:
            return False
        try:
            stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Stripe webhook signature rejected: {e}")
            return False
        return True

    def parse_webhook(self, payload: bytes) -> NormalizedEvent:
        try:
            event = json.loads(payload)
            event_id = event["id"]
            raw_type = event["type"]
            obj = event["data"]["object"]
        except (ValueError, KeyError, TypeError) as e:
            raise WebhookPayloadError(f"Malformed Stripe event: {e}")

        metadata = obj.get("metadata") or {}
        created = event.get("created")
        normalized = NormalizedEvent(
            event_type=EVENT_MAP.get(raw_type, EventType.IGNORED),
            event_id=event_id,
            raw_type=raw_type,
            subscription_id=parse_int(metadata.get("subscription_id")),
            order_id=parse_int(metadata.get("order_id")),
            occurred_at=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
        )

        if raw_type.startswith("payment_intent."):
            normalized.transaction_id = obj.get("id")
            last_error = obj.get("last_payment_error") or {}
            if last_error:
                normalized.error_code = last_error.get("decline_code") or last_error.get("code") or "card_declined"
                normalized.error_message = last_error.get("message")
            elif normalized.event_type == EventType.PAYMENT_FAILED:
                normalized.error_code = "card_declined"
        return normalized
