"""Renewal health metrics for operators"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from renewal_engine.core.metrics import pending_retries_gauge
from renewal_engine.db.helpers import count_pending_retries
from renewal_engine.models import OrderStatus, RenewalOrder, Subscription, SubscriptionStatus, WebhookEvent
from renewal_engine.models.types import utcnow


def _rate(part: int, total: int) -> float:
    return round(part / total, 4) if total else 0.0


def health_metrics(db: Session, now: Optional[datetime] = None, days: int = 30) -> Dict[str, Any]:
    """Snapshot of renewal health over the last `days` days

    Returns:
        Dict with subscription counts, payment success/failure rates for the
        window, pending retries and webhook backlog
    """
    now = now or utcnow()
    since = now - timedelta(days=days)

    status_counts = dict(
        db.query(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status).all()
    )
    suspended = db.query(func.count(Subscription.id)).filter(
        Subscription.status == SubscriptionStatus.PE_CANCELLED.value,
        Subscription.suspended_reason.isnot(None),
    ).scalar()
    in_grace = db.query(func.count(Subscription.id)).filter(
        Subscription.grace_period_end.isnot(None),
        Subscription.grace_period_end > now,
    ).scalar()

    order_counts = dict(
        db.query(RenewalOrder.status, func.count(RenewalOrder.id))
        .filter(RenewalOrder.created_at >= since)
        .group_by(RenewalOrder.status).all()
    )
    paid = order_counts.get(OrderStatus.PAID.value, 0)
    failed = order_counts.get(OrderStatus.FAILED.value, 0)
    settled = paid + failed

    unprocessed_webhooks = db.query(func.count(WebhookEvent.id)).filter(
        WebhookEvent.processed.is_(False)
    ).scalar()
    failed_webhooks = db.query(func.count(WebhookEvent.id)).filter(
        WebhookEvent.processed.is_(False),
        WebhookEvent.error_message.isnot(None),
    ).scalar()

    pending_retries = count_pending_retries(db)
    pending_retries_gauge.set(pending_retries)

    return {
        "generated_at": now.isoformat(),
        "window_days": days,
        "subscriptions": {
            "active": status_counts.get(SubscriptionStatus.ACTIVE.value, 0),
            "on_hold": status_counts.get(SubscriptionStatus.ON_HOLD.value, 0),
            "suspended": suspended,
            "in_grace": in_grace,
            "by_status": status_counts,
        },
        "payments": {
            "attempts": sum(order_counts.values()),
            "paid": paid,
            "failed": failed,
            "pending": order_counts.get(OrderStatus.PENDING.value, 0),
            "success_rate": _rate(paid, settled),
            "failure_rate": _rate(failed, settled),
        },
        "pending_retries": pending_retries,
        "webhooks": {
            "unprocessed": unprocessed_webhooks,
            "failed": failed_webhooks,
        },
    }
