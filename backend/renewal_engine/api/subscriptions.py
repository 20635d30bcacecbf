"""Operator routes for subscriptions"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from renewal_engine.api.deps import get_services
from renewal_engine.core.security import require_admin
from renewal_engine.db.helpers import get_subscription
from renewal_engine.db.redis import subscription_lock
from renewal_engine.db.session import get_db
from renewal_engine.schemas.subscriptions import (
    SubscriptionCreate, SubscriptionDetail, SubscriptionEdit, SubscriptionOut, TransitionRequest,
)
from renewal_engine.services.container import BillingServices
from renewal_engine.services.subscription_service import (
    admin_edit, create_subscription, get_related_orders, hard_delete,
)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.post("", status_code=201, response_model=SubscriptionOut)
def create(
    request_data: SubscriptionCreate,
    db: Session = Depends(get_db),
    services: BillingServices = Depends(get_services)
):
    """Create a subscription for a paid (or pending) parent order"""
    params = request_data.model_dump()
    params["interval_unit"] = request_data.interval_unit.value
    if request_data.trial_interval_unit is not None:
        params["trial_interval_unit"] = request_data.trial_interval_unit.value
    return create_subscription(db, services.state_machine, **params)


@router.get("/{subscription_id}", response_model=SubscriptionDetail)
def get_one(subscription_id: int, db: Session = Depends(get_db)):
    """Subscription with its history notes"""
    return get_subscription(db, subscription_id)


@router.patch("/{subscription_id}", response_model=SubscriptionOut)
def edit(
    subscription_id: int,
    request_data: SubscriptionEdit,
    db: Session = Depends(get_db),
    services: BillingServices = Depends(get_services)
):
    """Edit billing terms (price, schedule, max_payments, auto_renew, next_date)"""
    changes = request_data.model_dump(exclude_unset=True)
    if "interval_unit" in changes and changes["interval_unit"] is not None:
        changes["interval_unit"] = changes["interval_unit"].value
    changes = {field: value for field, value in changes.items() if value is not None}

    with subscription_lock(services.redis, subscription_id):
        try:
            return admin_edit(db, subscription_id, changes, grace=services.grace)
        except ValueError as e:
            raise HTTPException(400, str(e))


@router.post("/{subscription_id}/transition", response_model=SubscriptionOut)
def transition(
    subscription_id: int,
    request_data: TransitionRequest,
    db: Session = Depends(get_db),
    services: BillingServices = Depends(get_services)
):
    """Apply a status transition on behalf of an operator"""
    with subscription_lock(services.redis, subscription_id):
        services.state_machine.apply_transition(
            db, subscription_id, request_data.status, request_data.reason or "operator request"
        )
    return get_subscription(db, subscription_id)


@router.post("/{subscription_id}/restore", response_model=SubscriptionOut)
def restore(
    subscription_id: int,
    db: Session = Depends(get_db),
    services: BillingServices = Depends(get_services)
):
    """Restore a trashed subscription"""
    with subscription_lock(services.redis, subscription_id):
        services.state_machine.restore(db, subscription_id)
    return get_subscription(db, subscription_id)


@router.delete("/{subscription_id}")
def delete(
    subscription_id: int,
    db: Session = Depends(get_db),
    services: BillingServices = Depends(get_services)
):
    """Permanently delete a cancelled, expired or trashed subscription"""
    with subscription_lock(services.redis, subscription_id):
        removed = hard_delete(db, subscription_id, services.vault, grace=services.grace)
    return {"deleted": subscription_id, "removed": removed}


@router.get("/{subscription_id}/orders")
def related_orders(subscription_id: int, db: Session = Depends(get_db)):
    """Order relation history with renewal outcomes"""
    return get_related_orders(db, subscription_id)
