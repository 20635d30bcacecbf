"""Gateway adapters and registry construction"""
import logging

from renewal_engine.services.gateways.base import (
    ChargeResult, ChargeStatus, EventType, GatewayAdapter, GatewayRegistry, NormalizedEvent,
)
from renewal_engine.services.gateways.square_gateway import SquareGateway
from renewal_engine.services.gateways.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


def build_registry(settings) -> GatewayRegistry:
    """Register an adapter for every provider whose credentials are set"""
    registry = GatewayRegistry()
    if settings.STRIPE_SECRET_KEY:
        registry.register(StripeGateway(
            settings.STRIPE_SECRET_KEY,
            settings.STRIPE_WEBHOOK_SECRET,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        ))
    if settings.SQUARE_ACCESS_TOKEN:
        registry.register(SquareGateway(
            settings.SQUARE_ACCESS_TOKEN,
            signature_key=settings.SQUARE_WEBHOOK_SIGNATURE_KEY,
            notification_url=settings.SQUARE_WEBHOOK_URL,
            location_id=settings.SQUARE_LOCATION_ID,
            environment=settings.SQUARE_ENVIRONMENT,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        ))
    if not registry.ids():
        logger.warning("No payment gateway credentials configured - renewals will be suspended as configuration errors")
    return registry


__all__ = [
    "ChargeResult", "ChargeStatus", "EventType", "GatewayAdapter", "GatewayRegistry",
    "NormalizedEvent", "SquareGateway", "StripeGateway", "build_registry",
]
