"""Gateway adapter interface and registry

A gateway adapter is the only polymorphism surface towards payment
providers. Adapters never raise for payment outcomes: declines, timeouts and
network failures come back as a failed ChargeResult carrying an error code
that services/payment_errors classifies.
"""
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from renewal_engine.core.exceptions import GatewayNotConfiguredError

logger = logging.getLogger(__name__)


class ChargeStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"  # accepted, settles later via webhook


class EventType(str, enum.Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    IGNORED = "ignored"


@dataclass
class ChargeResult:
    status: ChargeStatus
    transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ChargeStatus.SUCCEEDED

    @classmethod
    def success(cls, transaction_id: str) -> "ChargeResult":
        return cls(status=ChargeStatus.SUCCEEDED, transaction_id=transaction_id)

    @classmethod
    def pending(cls, transaction_id: str) -> "ChargeResult":
        return cls(status=ChargeStatus.PENDING, transaction_id=transaction_id)

    @classmethod
    def failure(
        cls,
        error_code: str,
        error_message: Optional[str] = None,
        transaction_id: Optional[str] = None
    ) -> "ChargeResult":
        return cls(
            status=ChargeStatus.FAILED,
            transaction_id=transaction_id,
            error_code=error_code,
            error_message=error_message,
        )


@dataclass
class NormalizedEvent:
    """Gateway webhook reduced to what the correlator needs"""
    event_type: EventType
    event_id: str
    raw_type: str
    subscription_id: Optional[int] = None
    order_id: Optional[int] = None
    transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    occurred_at: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup for plain dicts and Starlette Headers"""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def parse_int(value: Any) -> Optional[int]:
    """Metadata ids arrive as strings; anything non-numeric is dropped"""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class GatewayAdapter(ABC):
    gateway_id: str = ""

    @abstractmethod
    def charge(
        self,
        token: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> ChargeResult:
        """Charge a vaulted token. Must return, not raise, on payment failure."""

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        """Check transport-level authenticity of a webhook body"""

    @abstractmethod
    def parse_webhook(self, payload: bytes) -> NormalizedEvent:
        """Parse a verified webhook body

        Raises:
            WebhookPayloadError: If the body is not a recognisable event
        """


class GatewayRegistry:
    """Explicit adapter registry, built once at startup"""

    def __init__(self):
        self._adapters: Dict[str, GatewayAdapter] = {}

    def register(self, adapter: GatewayAdapter) -> None:
        if not adapter.gateway_id:
            raise ValueError(f"{type(adapter).__name__} has no gateway_id")
        self._adapters[adapter.gateway_id] = adapter
        logger.info(f"Registered gateway adapter '{adapter.gateway_id}'")

    def get(self, gateway_id: str) -> GatewayAdapter:
        """Raises GatewayNotConfiguredError for unknown gateways"""
        adapter = self._adapters.get(gateway_id)
        if adapter is None:
            raise GatewayNotConfiguredError(gateway_id)
        return adapter

    def has(self, gateway_id: str) -> bool:
        return gateway_id in self._adapters

    def ids(self) -> List[str]:
        return sorted(self._adapters)
