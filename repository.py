"""
repository.py
=============
Persistence for discounts and their redemptions.

`DiscountRepository` is the contract the engine is written against. Two
backends implement it:

- `SqlDiscountRepository`: SQLAlchemy session, one per request.
- `InMemoryDiscountRepository`: process-local dictionaries, used by tests and
  by callers that run without a database.

Callers pick a backend and hand it to the engine; nothing here is global.

Redemption accounting is the only write that races. Both backends expose
`redemption_scope(discount_id)`, inside which `conditionally_increment_usage`
and `append_redemption` either both take effect or neither does.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from clock import utcnow
from errors import DiscountValidationError, DuplicateCouponCode, StorageError

logger = logging.getLogger(__name__)


class DiscountRepository(ABC):

    # ── Discounts ──

    @abstractmethod
    def list_discounts(self) -> List[schemas.Discount]:
        """All discounts, active or not, highest priority first."""

    @abstractmethod
    def list_active_discounts(self, now: datetime, auto_apply_only: bool = False) -> List[schemas.Discount]:
        """Active discounts whose window brackets `now` and that still have usage headroom."""

    @abstractmethod
    def get_discount(self, discount_id: str) -> Optional[schemas.Discount]:
        ...

    @abstractmethod
    def get_discount_by_coupon_code(self, coupon_code: str) -> Optional[schemas.Discount]:
        """The active discount holding `coupon_code`, if any."""

    @abstractmethod
    def create_discount(self, data: schemas.DiscountCreate) -> schemas.Discount:
        ...

    @abstractmethod
    def update_discount(self, discount_id: str, fields: dict) -> Optional[schemas.Discount]:
        """Overwrite the given fields. Returns None if the discount does not exist."""

    @abstractmethod
    def delete_or_deactivate_discount(
        self, discount_id: str
    ) -> Optional[Tuple[schemas.DeletionOutcome, schemas.Discount]]:
        """
        Remove the discount when no redemption references it, otherwise mark it
        inactive. A discount that is already deactivated is left untouched.
        Returns the outcome and the discount as it was left (or as it
        was before removal), or None if it does not exist.
        """

    # ── Redemptions ──

    @abstractmethod
    def redemption_scope(self, discount_id: str):
        """
        Context manager making the usage increment and the redemption row one
        unit of work. Scopes for different discount ids do not block each other.
        """

    @abstractmethod
    def conditionally_increment_usage(self, discount_id: str) -> bool:
        """
        Increment usage_count if the discount is active and under its usage
        limit. Returns False, changing nothing, otherwise.
        """

    @abstractmethod
    def append_redemption(self, data: schemas.RedemptionCreate) -> schemas.Redemption:
        ...

    @abstractmethod
    def list_redemptions(self, discount_id: str) -> List[schemas.Redemption]:
        """Redemptions of a discount, newest first."""

    @abstractmethod
    def aggregate_redemption_stats(self, discount_id: str) -> schemas.RedemptionStats:
        ...


def _stats_from(count: int, total: float, first, last) -> schemas.RedemptionStats:
    if not count:
        return schemas.RedemptionStats()
    return schemas.RedemptionStats(
        total_redemptions=count,
        total_amount_saved=round(total, 2),
        average_amount_saved=round(total / count, 2),
        first_redemption_at=first,
        last_redemption_at=last,
    )


# ═══════════════════════════════════════════════════
#  SQLAlchemy backend
# ═══════════════════════════════════════════════════

class SqlDiscountRepository(DiscountRepository):

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _transaction(self, action: str):
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Storage error while %s", action, exc_info=exc)
            raise StorageError() from exc
        except Exception:
            self.db.rollback()
            raise

    def _find(self, discount_id: str) -> Optional[models.Discount]:
        # populate_existing: usage_count may have moved under a bulk UPDATE.
        return (
            self.db.query(models.Discount)
            .populate_existing()
            .filter(models.Discount.id == discount_id)
            .first()
        )

    @staticmethod
    def _column_values(fields: dict) -> dict:
        return {key: value.value if isinstance(value, Enum) else value for key, value in fields.items()}

    @staticmethod
    def _to_discount(row: models.Discount) -> schemas.Discount:
        return schemas.Discount.model_validate(row)

    @staticmethod
    def _to_redemption(row: models.Redemption) -> schemas.Redemption:
        return schemas.Redemption(
            id=row.id,
            discount_id=row.discount_id,
            user_id=row.user_id,
            order_id=row.order_id,
            amount_saved=row.amount_saved,
            created_at=row.created_at,
            metadata=row.metadata_,
        )

    def list_discounts(self) -> List[schemas.Discount]:
        rows = (
            self.db.query(models.Discount)
            .order_by(models.Discount.priority.desc(), models.Discount.created_at.desc())
            .all()
        )
        return [self._to_discount(row) for row in rows]

    def list_active_discounts(self, now: datetime, auto_apply_only: bool = False) -> List[schemas.Discount]:
        D = models.Discount
        query = self.db.query(D).filter(
            D.is_active == True,
            (D.usage_limit.is_(None)) | (D.usage_count < D.usage_limit),
            (D.start_date.is_(None)) | (D.start_date <= now),
            (D.end_date.is_(None)) | (D.end_date >= now),
        )
        if auto_apply_only:
            query = query.filter(D.is_auto_apply == True)
        rows = query.order_by(D.priority.desc(), D.created_at).all()
        return [self._to_discount(row) for row in rows]

    def get_discount(self, discount_id: str) -> Optional[schemas.Discount]:
        row = self._find(discount_id)
        return self._to_discount(row) if row else None

    def get_discount_by_coupon_code(self, coupon_code: str) -> Optional[schemas.Discount]:
        row = (
            self.db.query(models.Discount)
            .populate_existing()
            .filter(models.Discount.coupon_code == coupon_code, models.Discount.is_active == True)
            .first()
        )
        return self._to_discount(row) if row else None

    def create_discount(self, data: schemas.DiscountCreate) -> schemas.Discount:
        if data.id and self._find(data.id) is not None:
            raise DiscountValidationError(f"Discount with id={data.id} already exists")

        now = utcnow()
        row = models.Discount(
            **self._column_values(data.model_dump(exclude={"id"})),
            id=data.id or str(uuid.uuid4()),
            usage_count=0,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._transaction("creating discount"):
                self.db.add(row)
                self.db.flush()
        except StorageError as exc:
            if isinstance(exc.__cause__, IntegrityError) and data.coupon_code:
                raise DuplicateCouponCode(data.coupon_code) from exc.__cause__
            raise
        self.db.refresh(row)
        return self._to_discount(row)

    def update_discount(self, discount_id: str, fields: dict) -> Optional[schemas.Discount]:
        row = self._find(discount_id)
        if row is None:
            return None
        try:
            with self._transaction("updating discount"):
                for key, value in self._column_values(fields).items():
                    setattr(row, key, value)
                row.updated_at = utcnow()
                self.db.flush()
        except StorageError as exc:
            if isinstance(exc.__cause__, IntegrityError) and fields.get("coupon_code"):
                raise DuplicateCouponCode(fields["coupon_code"]) from exc.__cause__
            raise
        self.db.refresh(row)
        return self._to_discount(row)

    def delete_or_deactivate_discount(self, discount_id):
        row = self._find(discount_id)
        if row is None:
            return None
        if row.deactivated_at is not None:
            return schemas.DeletionOutcome.deactivated, self._to_discount(row)

        with self._transaction("deleting discount"):
            used = (
                self.db.query(func.count(models.Redemption.id))
                .filter(models.Redemption.discount_id == discount_id)
                .scalar()
            )
            if used:
                now = utcnow()
                row.is_active = False
                row.deactivated_at = now
                row.updated_at = now
                self.db.flush()
                outcome = schemas.DeletionOutcome.deactivated
            else:
                self.db.delete(row)
                self.db.flush()
                outcome = schemas.DeletionOutcome.removed
            snapshot = self._to_discount(row)
        return outcome, snapshot

    @contextmanager
    def redemption_scope(self, discount_id: str):
        # The conditional UPDATE takes the row lock; commit releases it.
        with self._transaction(f"recording redemption for discount {discount_id}"):
            yield

    def conditionally_increment_usage(self, discount_id: str) -> bool:
        D = models.Discount
        updated = (
            self.db.query(D)
            .filter(
                D.id == discount_id,
                D.is_active == True,
                (D.usage_limit.is_(None)) | (D.usage_count < D.usage_limit),
            )
            .update(
                {D.usage_count: D.usage_count + 1, D.updated_at: utcnow()},
                synchronize_session=False,
            )
        )
        return updated == 1

    def append_redemption(self, data: schemas.RedemptionCreate) -> schemas.Redemption:
        row = models.Redemption(
            id=str(uuid.uuid4()),
            discount_id=data.discount_id,
            user_id=data.user_id,
            order_id=data.order_id,
            amount_saved=data.amount_saved,
            created_at=utcnow(),
            metadata_=data.metadata,
        )
        self.db.add(row)
        self.db.flush()
        return self._to_redemption(row)

    def list_redemptions(self, discount_id: str) -> List[schemas.Redemption]:
        rows = (
            self.db.query(models.Redemption)
            .filter(models.Redemption.discount_id == discount_id)
            .order_by(models.Redemption.created_at.desc(), models.Redemption.id)
            .all()
        )
        return [self._to_redemption(row) for row in rows]

    def aggregate_redemption_stats(self, discount_id: str) -> schemas.RedemptionStats:
        R = models.Redemption
        count, total, first, last = (
            self.db.query(
                func.count(R.id),
                func.sum(R.amount_saved),
                func.min(R.created_at),
                func.max(R.created_at),
            )
            .filter(R.discount_id == discount_id)
            .one()
        )
        return _stats_from(count, float(total or 0), first, last)


# ═══════════════════════════════════════════════════
#  In-memory backend
# ═══════════════════════════════════════════════════

class InMemoryDiscountRepository(DiscountRepository):
    """
    Thread-safe in-process store. `_lock` guards the containers; each discount
    id additionally gets its own lock, held for a whole redemption scope.
    """

    def __init__(self):
        self._discounts: Dict[str, schemas.Discount] = {}
        self._redemptions: List[schemas.Redemption] = []
        self._lock = threading.Lock()
        self._discount_locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, discount_id: str) -> threading.Lock:
        with self._lock:
            return self._discount_locks.setdefault(discount_id, threading.Lock())

    def _code_taken(self, coupon_code: Optional[str], exclude_id: Optional[str] = None) -> bool:
        if not coupon_code:
            return False
        return any(
            d.coupon_code == coupon_code and d.is_active and d.id != exclude_id
            for d in self._discounts.values()
        )

    def list_discounts(self) -> List[schemas.Discount]:
        with self._lock:
            discounts = [d.model_copy(deep=True) for d in self._discounts.values()]
        discounts.sort(key=lambda d: d.created_at, reverse=True)
        discounts.sort(key=lambda d: d.priority, reverse=True)
        return discounts

    def list_active_discounts(self, now: datetime, auto_apply_only: bool = False) -> List[schemas.Discount]:
        with self._lock:
            discounts = [
                d.model_copy(deep=True)
                for d in self._discounts.values()
                if d.is_active
                and d.has_usage_headroom
                and d.is_within_window(now)
                and (d.is_auto_apply or not auto_apply_only)
            ]
        discounts.sort(key=lambda d: (-d.priority, d.created_at))
        return discounts

    def get_discount(self, discount_id: str) -> Optional[schemas.Discount]:
        with self._lock:
            discount = self._discounts.get(discount_id)
            return discount.model_copy(deep=True) if discount else None

    def get_discount_by_coupon_code(self, coupon_code: str) -> Optional[schemas.Discount]:
        with self._lock:
            for discount in self._discounts.values():
                if discount.coupon_code == coupon_code and discount.is_active:
                    return discount.model_copy(deep=True)
        return None

    def create_discount(self, data: schemas.DiscountCreate) -> schemas.Discount:
        now = utcnow()
        discount = schemas.Discount(
            **data.model_dump(exclude={"id"}),
            id=data.id or str(uuid.uuid4()),
            usage_count=0,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if discount.id in self._discounts:
                raise DiscountValidationError(f"Discount with id={discount.id} already exists")
            if discount.is_active and self._code_taken(discount.coupon_code):
                raise DuplicateCouponCode(discount.coupon_code)
            self._discounts[discount.id] = discount
        return discount.model_copy(deep=True)

    def update_discount(self, discount_id: str, fields: dict) -> Optional[schemas.Discount]:
        with self._lock:
            current = self._discounts.get(discount_id)
            if current is None:
                return None
            updated = current.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
            if updated.is_active and self._code_taken(updated.coupon_code, exclude_id=discount_id):
                raise DuplicateCouponCode(updated.coupon_code)
            self._discounts[discount_id] = updated
        return updated.model_copy(deep=True)

    def delete_or_deactivate_discount(self, discount_id):
        with self._lock_for(discount_id), self._lock:
            current = self._discounts.get(discount_id)
            if current is None:
                return None
            if current.deactivated_at is not None:
                return schemas.DeletionOutcome.deactivated, current.model_copy(deep=True)
            if any(r.discount_id == discount_id for r in self._redemptions):
                now = utcnow()
                current = current.model_copy(
                    update={"is_active": False, "deactivated_at": now, "updated_at": now}
                )
                self._discounts[discount_id] = current
                return schemas.DeletionOutcome.deactivated, current.model_copy(deep=True)
            del self._discounts[discount_id]
            return schemas.DeletionOutcome.removed, current.model_copy(deep=True)

    @contextmanager
    def redemption_scope(self, discount_id: str):
        with self._lock_for(discount_id):
            with self._lock:
                before = self._discounts.get(discount_id)
                checkpoint = len(self._redemptions)
            try:
                yield
            except Exception:
                with self._lock:
                    current = self._discounts.get(discount_id)
                    if before is not None and current is not None:
                        self._discounts[discount_id] = current.model_copy(
                            update={"usage_count": before.usage_count, "updated_at": before.updated_at}
                        )
                    # Only this scope can have appended rows for discount_id since the checkpoint.
                    self._redemptions = self._redemptions[:checkpoint] + [
                        r for r in self._redemptions[checkpoint:] if r.discount_id != discount_id
                    ]
                raise

    def conditionally_increment_usage(self, discount_id: str) -> bool:
        with self._lock:
            current = self._discounts.get(discount_id)
            if current is None or not current.is_active or not current.has_usage_headroom:
                return False
            self._discounts[discount_id] = current.model_copy(
                update={"usage_count": current.usage_count + 1, "updated_at": utcnow()}
            )
            return True

    def append_redemption(self, data: schemas.RedemptionCreate) -> schemas.Redemption:
        redemption = schemas.Redemption(
            id=str(uuid.uuid4()),
            discount_id=data.discount_id,
            user_id=data.user_id,
            order_id=data.order_id,
            amount_saved=data.amount_saved,
            created_at=utcnow(),
            metadata=data.metadata,
        )
        with self._lock:
            if data.discount_id not in self._discounts:
                raise StorageError(f"Discount with id={data.discount_id} does not exist")
            self._redemptions.append(redemption)
        return redemption.model_copy(deep=True)

    def list_redemptions(self, discount_id: str) -> List[schemas.Redemption]:
        with self._lock:
            redemptions = [r.model_copy(deep=True) for r in self._redemptions if r.discount_id == discount_id]
        redemptions.reverse()
        return redemptions

    def aggregate_redemption_stats(self, discount_id: str) -> schemas.RedemptionStats:
        with self._lock:
            redemptions = [r for r in self._redemptions if r.discount_id == discount_id]
        if not redemptions:
            return schemas.RedemptionStats()
        dates = [r.created_at for r in redemptions]
        return _stats_from(
            len(redemptions),
            sum(r.amount_saved for r in redemptions),
            min(dates),
            max(dates),
        )
