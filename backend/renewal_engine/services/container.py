"""Explicit construction of the billing services

Everything is built once at startup and passed down; there is no module
level service state. The FastAPI app keeps the container on app.state, the
CLI builds its own.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from renewal_engine.core.config import Settings
from renewal_engine.db.redis import get_redis_client
from renewal_engine.db.task_queue import DelayedTaskQueue
from renewal_engine.services.gateways import GatewayRegistry, build_registry
from renewal_engine.services.grace_period import GracePeriodManager
from renewal_engine.services.notifications import NotificationBus, RedisNotificationPublisher
from renewal_engine.services.renewal_scheduler import RenewalScheduler
from renewal_engine.services.retry_engine import PaymentRetryEngine
from renewal_engine.services.state_machine import SubscriptionStateMachine
from renewal_engine.services.vault import PaymentMethodVault
from renewal_engine.services.webhook_service import WebhookIngestor
from renewal_engine.utils.encryption import TokenCipher

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    bus: NotificationBus
    redis: object
    gateways: GatewayRegistry
    vault: PaymentMethodVault
    state_machine: SubscriptionStateMachine
    task_queue: DelayedTaskQueue
    grace: GracePeriodManager
    retry_engine: PaymentRetryEngine
    scheduler: RenewalScheduler
    webhooks: WebhookIngestor


def build_services(
    settings: Settings,
    redis_client=None,
    gateways: Optional[GatewayRegistry] = None,
    bus: Optional[NotificationBus] = None,
    publish_to_redis: bool = True
) -> BillingServices:
    """Wire the services together

    Args:
        settings: Application settings
        redis_client: Redis client; defaults to the shared client from REDIS_URL
        gateways: Adapter registry; defaults to one built from the settings
        bus: Notification bus; defaults to a fresh bus
        publish_to_redis: Forward notifications to the Redis channel
    """
    redis_client = redis_client if redis_client is not None else get_redis_client()
    bus = bus or NotificationBus()
    if publish_to_redis:
        bus.subscribe_all(RedisNotificationPublisher(redis_client))
    gateways = gateways or build_registry(settings)

    vault = PaymentMethodVault(TokenCipher(settings.ENCRYPTION_KEY or None), bus)
    state_machine = SubscriptionStateMachine(bus)
    task_queue = DelayedTaskQueue(redis_client)
    grace = GracePeriodManager(state_machine, task_queue, bus, redis_client, grace_days=settings.GRACE_DAYS)
    retry_engine = PaymentRetryEngine(
        state_machine, vault, gateways, grace, bus, redis_client,
        max_attempts=settings.MAX_RETRY_ATTEMPTS,
        retry_intervals_days=settings.RETRY_INTERVALS_DAYS,
        backoff_multiplier=settings.BACKOFF_MULTIPLIER,
        min_delay_hours=settings.MIN_RETRY_DELAY_HOURS,
    )
    scheduler = RenewalScheduler(state_machine, grace, retry_engine, redis_client)
    webhooks = WebhookIngestor(
        gateways, state_machine, retry_engine, redis_client, lock_timeout=settings.LOCK_TIMEOUT_SECONDS
    )

    logger.info(
        f"Billing services ready: gateways={gateways.ids()}, grace_days={settings.GRACE_DAYS}, "
        f"max_attempts={settings.MAX_RETRY_ATTEMPTS}"
    )
    return BillingServices(
        bus=bus,
        redis=redis_client,
        gateways=gateways,
        vault=vault,
        state_machine=state_machine,
        task_queue=task_queue,
        grace=grace,
        retry_engine=retry_engine,
        scheduler=scheduler,
        webhooks=webhooks,
    )
