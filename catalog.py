"""
catalog.py
==========
Administrative operations on discounts: validated create/update, the
delete-or-deactivate rule, lookups and redemption statistics.
"""

import logging
from typing import List

from pydantic import ValidationError

import schemas
from errors import (
    CouponNotFound,
    DiscountInactive,
    DiscountNotFound,
    DiscountValidationError,
    DuplicateCouponCode,
)
from repository import DiscountRepository

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = set(schemas.DiscountCreate.model_fields) - {"id"}


def _describe(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        messages.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(messages)


def _ensure_code_free(repository: DiscountRepository, coupon_code, discount_id=None) -> None:
    if not coupon_code:
        return
    holder = repository.get_discount_by_coupon_code(coupon_code)
    if holder is not None and holder.id != discount_id:
        raise DuplicateCouponCode(coupon_code)


def list_discounts(repository: DiscountRepository) -> List[schemas.Discount]:
    return repository.list_discounts()


def get_discount(repository: DiscountRepository, discount_id: str) -> schemas.Discount:
    discount = repository.get_discount(discount_id)
    if discount is None:
        raise DiscountNotFound(discount_id)
    return discount


def get_discount_by_coupon_code(repository: DiscountRepository, coupon_code: str) -> schemas.Discount:
    coupon_code = coupon_code.strip()
    discount = repository.get_discount_by_coupon_code(coupon_code)
    if discount is None:
        raise CouponNotFound(coupon_code)
    return discount


def create_discount(repository: DiscountRepository, data: schemas.DiscountCreate) -> schemas.Discount:
    if data.is_active:
        _ensure_code_free(repository, data.coupon_code)
    discount = repository.create_discount(data)
    logger.info("Created discount %s (%s)", discount.id, discount.name)
    return discount


def update_discount(
    repository: DiscountRepository, discount_id: str, update: schemas.DiscountUpdate
) -> schemas.Discount:
    """
    Apply a partial update. The merged discount is validated as a whole, so a
    new trigger_type needs a matching trigger_condition and a new
    discount_type a value in its range.
    """
    existing = get_discount(repository, discount_id)
    if existing.deactivated_at is not None:
        raise DiscountInactive(discount_id)

    merged = existing.model_dump(include=_EDITABLE_FIELDS)
    merged.update(update.changes())
    try:
        validated = schemas.DiscountCreate(**merged)
    except ValidationError as exc:
        raise DiscountValidationError(_describe(exc)) from exc

    if validated.usage_limit is not None and validated.usage_limit < existing.usage_count:
        raise DiscountValidationError(
            f"usage_limit {validated.usage_limit} is below the current usage count {existing.usage_count}"
        )
    if validated.is_active:
        _ensure_code_free(repository, validated.coupon_code, discount_id)

    updated = repository.update_discount(discount_id, validated.model_dump(exclude={"id"}))
    if updated is None:
        raise DiscountNotFound(discount_id)
    logger.info("Updated discount %s", discount_id)
    return updated


def delete_discount(repository: DiscountRepository, discount_id: str) -> schemas.DeleteDiscountResponse:
    """
    Remove a discount nobody has redeemed; deactivate one with redemption
    history. Both end states are final.
    """
    result = repository.delete_or_deactivate_discount(discount_id)
    if result is None:
        raise DiscountNotFound(discount_id)

    outcome, discount = result
    if outcome == schemas.DeletionOutcome.deactivated:
        logger.info("Deactivated discount %s: it has redemptions", discount_id)
        message = "Discount has been deactivated because it has been used in orders"
    else:
        logger.info("Removed discount %s", discount_id)
        message = "Discount deleted successfully"
    return schemas.DeleteDiscountResponse(message=message, outcome=outcome, discount=discount)


def get_discount_stats(repository: DiscountRepository, discount_id: str) -> schemas.DiscountStatsResponse:
    discount = get_discount(repository, discount_id)
    stats = repository.aggregate_redemption_stats(discount_id)
    return schemas.DiscountStatsResponse(discount=discount, stats=stats)


def list_redemptions(repository: DiscountRepository, discount_id: str) -> List[schemas.Redemption]:
    get_discount(repository, discount_id)
    return repository.list_redemptions(discount_id)
