"""Payment method vault

Stores gateway tokens per (subscription, gateway), encrypted at rest. A
subscription has at most one default method; the partial unique index on
payment_methods backs that up at the storage layer, and every write here
clears the old default before setting the new one.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from renewal_engine.core.exceptions import PaymentMethodNotFoundError
from renewal_engine.core.logging import vault_logger
from renewal_engine.db.helpers import get_subscription
from renewal_engine.models import PaymentMethod
from renewal_engine.services.notifications import NotificationBus, VaultEventKind
from renewal_engine.utils.encryption import TokenCipher

logger = logging.getLogger(__name__)


@dataclass
class VaultedPaymentMethod:
    """Decrypted view of a vault row"""
    id: int
    subscription_id: int
    gateway_id: str
    token: str
    customer_id: str
    gateway_customer_id: str
    is_default: bool
    created_at: datetime
    updated_at: datetime

    def masked_token(self) -> str:
        if len(self.token) <= 4:
            return "****"
        return f"****{self.token[-4:]}"


class PaymentMethodVault:
    def __init__(self, cipher: TokenCipher, bus: NotificationBus):
        self.cipher = cipher
        self.bus = bus

    def _view(self, row: PaymentMethod) -> VaultedPaymentMethod:
        return VaultedPaymentMethod(
            id=row.id,
            subscription_id=row.subscription_id,
            gateway_id=row.gateway_id,
            token=self.cipher.decrypt(row.encrypted_token),
            customer_id=row.customer_id,
            gateway_customer_id=row.gateway_customer_id,
            is_default=row.is_default,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _row(self, db: Session, subscription_id: int, gateway_id: str) -> Optional[PaymentMethod]:
        return db.query(PaymentMethod).filter(
            PaymentMethod.subscription_id == subscription_id,
            PaymentMethod.gateway_id == gateway_id,
        ).first()

    def _clear_default(self, db: Session, subscription_id: int, keep_id: Optional[int] = None) -> None:
        query = db.query(PaymentMethod).filter(
            PaymentMethod.subscription_id == subscription_id,
            PaymentMethod.is_default.is_(True),
        )
        if keep_id is not None:
            query = query.filter(PaymentMethod.id != keep_id)
        query.update({PaymentMethod.is_default: False}, synchronize_session="fetch")
        db.flush()

    # ========================================================================
    # WRITES
    # ========================================================================

    def save(
        self,
        db: Session,
        subscription_id: int,
        gateway_id: str,
        token: str,
        customer_id: str = "",
        gateway_customer_id: str = "",
        is_default: bool = True,
        commit: bool = True
    ) -> VaultedPaymentMethod:
        """Encrypt and store a token, replacing any existing one for the gateway

        The first method saved for a subscription always becomes the default.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
            ValueError: If the token is empty
        """
        get_subscription(db, subscription_id)
        encrypted = self.cipher.encrypt(token)

        has_default = db.query(PaymentMethod.id).filter(
            PaymentMethod.subscription_id == subscription_id,
            PaymentMethod.is_default.is_(True),
        ).first() is not None
        row = self._row(db, subscription_id, gateway_id)
        # re-saving the current default keeps it the default
        make_default = is_default or not has_default or (row is not None and row.is_default)

        if make_default:
            self._clear_default(db, subscription_id, keep_id=row.id if row else None)

        if row is None:
            row = PaymentMethod(subscription_id=subscription_id, gateway_id=gateway_id)
            db.add(row)
        row.encrypted_token = encrypted
        row.customer_id = customer_id or ""
        row.gateway_customer_id = gateway_customer_id or ""
        row.is_default = make_default
        db.flush()

        if commit:
            db.commit()
            db.refresh(row)

        vault_logger.info(
            f"Saved {gateway_id} payment method for subscription {subscription_id} "
            f"(default={make_default}, strong_encryption={self.cipher.is_strong})"
        )
        self.bus.emit(
            VaultEventKind.PAYMENT_METHOD_SAVED, subscription_id,
            gateway_id=gateway_id, is_default=make_default,
        )
        return self._view(row)

    def update(
        self,
        db: Session,
        subscription_id: int,
        gateway_id: str,
        new_token: str,
        gateway_customer_id: Optional[str] = None,
        commit: bool = True
    ) -> VaultedPaymentMethod:
        """Replace the token of an existing method (customer changed card)

        Raises:
            PaymentMethodNotFoundError: If nothing is vaulted for the gateway
        """
        row = self._row(db, subscription_id, gateway_id)
        if row is None:
            raise PaymentMethodNotFoundError(subscription_id, gateway_id)

        row.encrypted_token = self.cipher.encrypt(new_token)
        if gateway_customer_id is not None:
            row.gateway_customer_id = gateway_customer_id
        if commit:
            db.commit()
            db.refresh(row)

        vault_logger.info(f"Updated {gateway_id} payment method for subscription {subscription_id}")
        self.bus.emit(VaultEventKind.PAYMENT_METHOD_UPDATED, subscription_id, gateway_id=gateway_id)
        return self._view(row)

    def set_default(
        self,
        db: Session,
        subscription_id: int,
        gateway_id: str,
        commit: bool = True
    ) -> VaultedPaymentMethod:
        """Make an existing method the default

        Raises:
            PaymentMethodNotFoundError: If nothing is vaulted for the gateway
        """
        row = self._row(db, subscription_id, gateway_id)
        if row is None:
            raise PaymentMethodNotFoundError(subscription_id, gateway_id)

        if not row.is_default:
            self._clear_default(db, subscription_id, keep_id=row.id)
            row.is_default = True
            db.flush()
            if commit:
                db.commit()
                db.refresh(row)
            vault_logger.info(f"{gateway_id} is now the default payment method for subscription {subscription_id}")
            self.bus.emit(VaultEventKind.PAYMENT_METHOD_UPDATED, subscription_id, gateway_id=gateway_id)
        return self._view(row)

    def delete(self, db: Session, subscription_id: int, gateway_id: str, commit: bool = True) -> bool:
        """Detach a method. Returns False if nothing was vaulted for the gateway.

        Deleting the default does not promote another method; the next
        renewal without a default is treated as a configuration error.
        """
        row = self._row(db, subscription_id, gateway_id)
        if row is None:
            return False

        db.delete(row)
        if commit:
            db.commit()
        else:
            db.flush()

        vault_logger.info(f"Deleted {gateway_id} payment method for subscription {subscription_id}")
        self.bus.emit(VaultEventKind.PAYMENT_METHOD_DELETED, subscription_id, gateway_id=gateway_id)
        return True

    def delete_all_for_subscription(self, db: Session, subscription_id: int) -> int:
        """Remove every vaulted method of a subscription (hard delete). Does not commit."""
        rows = db.query(PaymentMethod).filter(PaymentMethod.subscription_id == subscription_id).all()
        for row in rows:
            db.delete(row)
        db.flush()
        for row in rows:
            self.bus.emit(VaultEventKind.PAYMENT_METHOD_DELETED, subscription_id, gateway_id=row.gateway_id)
        if rows:
            vault_logger.info(f"Deleted {len(rows)} payment method(s) for subscription {subscription_id}")
        return len(rows)

    # ========================================================================
    # READS
    # ========================================================================

    def get_default(self, db: Session, subscription_id: int) -> Optional[VaultedPaymentMethod]:
        row = db.query(PaymentMethod).filter(
            PaymentMethod.subscription_id == subscription_id,
            PaymentMethod.is_default.is_(True),
        ).first()
        return self._view(row) if row else None

    def get(self, db: Session, subscription_id: int, gateway_id: str) -> Optional[VaultedPaymentMethod]:
        row = self._row(db, subscription_id, gateway_id)
        return self._view(row) if row else None

    def list_for_subscription(self, db: Session, subscription_id: int) -> List[VaultedPaymentMethod]:
        rows = db.query(PaymentMethod).filter(
            PaymentMethod.subscription_id == subscription_id
        ).order_by(PaymentMethod.is_default.desc(), PaymentMethod.id.asc()).all()
        return [self._view(row) for row in rows]

    def list_for_customer(
        self,
        db: Session,
        customer_id: str,
        gateway_id: Optional[str] = None
    ) -> List[VaultedPaymentMethod]:
        """All methods a customer has vaulted across subscriptions"""
        query = db.query(PaymentMethod).filter(PaymentMethod.customer_id == customer_id)
        if gateway_id:
            query = query.filter(PaymentMethod.gateway_id == gateway_id)
        return [self._view(row) for row in query.order_by(PaymentMethod.id.asc()).all()]
