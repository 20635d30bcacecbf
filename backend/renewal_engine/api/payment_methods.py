"""Operator routes for the payment method vault"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from renewal_engine.api.deps import get_services
from renewal_engine.core.security import require_admin
from renewal_engine.db.helpers import get_subscription
from renewal_engine.db.session import get_db
from renewal_engine.schemas.subscriptions import PaymentMethodOut, PaymentMethodSave, PaymentMethodUpdate
from renewal_engine.services.container import BillingServices
from renewal_engine.services.vault import VaultedPaymentMethod

router = APIRouter(
    prefix="/api/subscriptions/{subscription_id}/payment-methods",
    tags=["payment-methods"],
    dependencies=[Depends(require_admin)],
)
logger = logging.getLogger(__name__)


def _out(method: VaultedPaymentMethod) -> PaymentMethodOut:
    return PaymentMethodOut(
        subscription_id=method.subscription_id,
        gateway_id=method.gateway_id,
        token=method.masked_token(),
        customer_id=method.customer_id,
        gateway_customer_id=method.gateway_customer_id,
        is_default=method.is_default,
        created_at=method.created_at,
        updated_at=method.updated_at,
    )


@router.get("", response_model=List[PaymentMethodOut])
def list_methods(
    subscription_id: int,
    db: Session = Depends(get_db),
    services: BillingServices = Depends(get_services)
):
    get_subscription(db, subscription_id)
    return [_out(method) for method in services.vault.list_for_subscription(db, subscription_id)]


@router.post("", status_code=201, response_model=PaymentMethodOut)
def save_method(
    subscription_id: int,
    request_data: PaymentMethodSave,
    db: Session = Depends(get_db),
    services: BillingServices = Depends(get_services)
):
    """Vault a gateway token (replaces an existing one for the same gateway)"""
    method = services.vault.save(
        db, subscription_id, request_data.gateway_id, request_data.token,
        customer_id=request_data.customer_id,
        gateway_customer_id=request_data.gateway_customer_id,
        is_default=request_data.is_default,
    )
    return _out(method)


@router.put("/{gateway_id}", response_model=PaymentMethodOut)
def update_method(
    subscription_id: int,
    gateway_id: str,
    request_data: PaymentMethodUpdate,
    db: Session = Depends(get_db),
    services: BillingServices = Depends(get_services)
):
    """Replace the token and/or make the method the default"""
    method = services.vault.get(db, subscription_id, gateway_id)
    if method is None:
        raise HTTPException(404, f"No {gateway_id} payment method on subscription {subscription_id}")

    if request_data.token is not None or request_data.gateway_customer_id is not None:
        method = services.vault.update(
            db, subscription_id, gateway_id,
            request_data.token or method.token,
            gateway_customer_id=request_data.gateway_customer_id,
        )
    if request_data.is_default:
        method = services.vault.set_default(db, subscription_id, gateway_id)
    return _out(method)


@router.delete("/{gateway_id}")
def delete_method(
    subscription_id: int,
    gateway_id: str,
    db: Session = Depends(get_db),
    services: BillingServices = Depends(get_services)
):
    if not services.vault.delete(db, subscription_id, gateway_id):
        raise HTTPException(404, f"No {gateway_id} payment method on subscription {subscription_id}")
    return {"deleted": gateway_id}
