"""Exception hierarchy for the renewal engine

Payment declines are not exceptions: gateways report them as failed
ChargeResults and the classifier in services/payment_errors decides what
happens next. Everything here is either a caller error or a condition the
engine refuses to paper over.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for all renewal engine errors"""


class SubscriptionNotFoundError(BillingError):
    def __init__(self, subscription_id: int):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription {subscription_id} not found")


class OrderNotFoundError(BillingError):
    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Renewal order {order_id} not found")


class InvalidTransitionError(BillingError):
    """Requested status change is not in the allowed transition table"""

    def __init__(self, subscription_id: int, old_status: str, new_status: str):
        self.subscription_id = subscription_id
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(
            f"Subscription {subscription_id}: transition {old_status} -> {new_status} is not allowed"
        )


class PaymentMethodNotFoundError(BillingError):
    def __init__(self, subscription_id: int, gateway_id: Optional[str] = None):
        self.subscription_id = subscription_id
        self.gateway_id = gateway_id
        target = f" for gateway {gateway_id}" if gateway_id else ""
        super().__init__(f"No payment method{target} on subscription {subscription_id}")


class GatewayNotConfiguredError(BillingError):
    def __init__(self, gateway_id: str):
        self.gateway_id = gateway_id
        super().__init__(f"Gateway adapter '{gateway_id}' is not configured")


class WebhookAuthenticationError(BillingError):
    """Webhook signature did not verify"""


class WebhookPayloadError(BillingError):
    """Webhook body could not be parsed into a normalized event"""


class SubscriptionLockedError(BillingError):
    def __init__(self, subscription_id: int):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription {subscription_id} is locked by another worker")


class DeletionNotAllowedError(BillingError):
    """Hard delete requested for a subscription that still has live state"""
