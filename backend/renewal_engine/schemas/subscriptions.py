"""Pydantic schemas for subscriptions and payment methods"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from renewal_engine.models import IntervalUnit, SubscriptionStatus


class SubscriptionCreate(BaseModel):
    owner_id: str = Field(min_length=1, max_length=255)
    parent_order_id: int
    order_item_id: Optional[int] = None
    price: Decimal = Field(ge=0, decimal_places=2)
    signup_fee: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    interval_count: int = Field(default=1, ge=1)
    interval_unit: IntervalUnit = IntervalUnit.MONTH
    trial_interval_count: Optional[int] = Field(default=None, ge=1)
    trial_interval_unit: Optional[IntervalUnit] = None
    max_payments: int = Field(default=0, ge=0)  # 0 = unlimited
    max_retry_attempts: Optional[int] = Field(default=None, ge=1)
    auto_renew: bool = True
    user_cancel_allowed: bool = True
    start_date: Optional[datetime] = None
    activate: bool = True


class SubscriptionEdit(BaseModel):
    price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    interval_count: Optional[int] = Field(default=None, ge=1)
    interval_unit: Optional[IntervalUnit] = None
    max_payments: Optional[int] = Field(default=None, ge=0)
    auto_renew: Optional[bool] = None
    next_date: Optional[datetime] = None


class TransitionRequest(BaseModel):
    status: SubscriptionStatus
    reason: str = ""


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    status: str
    interval_count: int
    interval_unit: str
    trial_interval_count: Optional[int] = None
    trial_interval_unit: Optional[str] = None
    price: Decimal
    signup_fee: Decimal
    currency: str
    start_date: datetime
    next_date: Optional[datetime] = None
    max_payments: int
    payments_made: int
    max_retry_attempts: Optional[int] = None
    auto_renew: bool
    user_cancel_allowed: bool
    grace_period_end: Optional[datetime] = None
    suspended_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class NoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    content: str
    activity: str
    activity_type: str
    created_at: datetime


class SubscriptionDetail(SubscriptionOut):
    notes: List[NoteOut] = []


class PaymentMethodSave(BaseModel):
    gateway_id: str = Field(min_length=1, max_length=50)
    token: str = Field(min_length=1)
    customer_id: str = ""
    gateway_customer_id: str = ""
    is_default: bool = True


class PaymentMethodUpdate(BaseModel):
    token: Optional[str] = Field(default=None, min_length=1)
    gateway_customer_id: Optional[str] = None
    is_default: Optional[bool] = None


class PaymentMethodOut(BaseModel):
    """Vault entry as shown to operators; the token is masked"""
    subscription_id: int
    gateway_id: str
    token: str
    customer_id: str
    gateway_customer_id: str
    is_default: bool
    created_at: datetime
    updated_at: datetime
