"""
discount_engine.py
==================
Core business logic for picking and pricing a discount.

Flow of `apply_discount`:
--------------------------
1. With a coupon code:
   - The code must belong to an active discount (CouponNotFound otherwise).
   - Its validity window must bracket now (CouponExpired) and it must have
     usage headroom (CouponNotFound).
   - Its own trigger must still pass (CouponNotApplicable). A code never
     bypasses the trigger.

2. Without a coupon code:
   - Active, auto-apply, in-window discounts with usage headroom are listed.
   - Those whose trigger passes are ranked by priority (highest first), then
     by the amount they would save (largest first), then oldest first.
   - The first one wins. Discounts never stack.

3. No winner is not an error: the cart is returned at full price.

Amounts:
--------
- fixed:      min(discount_value, cart total)
- percentage: discount_value% of the cart total
Both are rounded to cents and can never exceed the cart total.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional, Tuple

from clock import utcnow
from errors import CouponExpired, CouponNotApplicable, CouponNotFound
from repository import DiscountRepository
from schemas import ApplyDiscountResponse, Cart, Discount, DiscountType, User
from triggers import check_eligibility

logger = logging.getLogger(__name__)


# ─────────────────────────── Amounts ───────────────────────────

def calculate_discount_amount(discount: Discount, cart: Cart) -> float:
    total = cart.total_amount
    if discount.discount_type == DiscountType.fixed:
        amount = min(discount.discount_value, total)
    elif discount.discount_type == DiscountType.percentage:
        amount = discount.discount_value / 100 * total
    else:
        raise ValueError(f"Unknown discount type: {discount.discount_type}")
    return round(min(amount, total), 2)


# ─────────────────────────── Coupon codes ───────────────────────────

def resolve_coupon(
    repository: DiscountRepository,
    coupon_code: str,
    cart: Cart,
    user: Optional[User] = None,
    now: Optional[datetime] = None,
) -> Discount:
    """Return the one discount a coupon code stands for, or raise why it can't be used."""
    now = now or utcnow()
    code = coupon_code.strip()

    discount = repository.get_discount_by_coupon_code(code)
    if discount is None:
        raise CouponNotFound(code)
    if not discount.is_within_window(now):
        raise CouponExpired(code)
    if not discount.has_usage_headroom:
        raise CouponNotFound(code, f'Coupon code "{code}" has reached its usage limit')

    if not check_eligibility(discount, cart, user).eligible:
        raise CouponNotApplicable(code)
    return discount


# ─────────────────────────── Auto-apply selection ───────────────────────────

def select_best_discount(
    candidates: Iterable[Discount],
    cart: Cart,
    user: Optional[User] = None,
) -> Optional[Tuple[Discount, float]]:
    """
    Pick the discount to apply among `candidates`, returning it together with
    the amount it saves, or None when no candidate's trigger passes.
    """
    eligible = []
    for discount in candidates:
        if check_eligibility(discount, cart, user).eligible:
            eligible.append((discount, calculate_discount_amount(discount, cart)))

    if not eligible:
        return None

    eligible.sort(key=lambda pair: (-pair[0].priority, -pair[1], pair[0].created_at, pair[0].id))
    return eligible[0]


# ─────────────────────────── Apply ───────────────────────────

def apply_discount(
    repository: DiscountRepository,
    cart: Cart,
    user: Optional[User] = None,
    coupon_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApplyDiscountResponse:
    """
    Work out which discount (if any) applies to the cart and what it saves.
    Read-only: usage is only accounted for by ledger.record_redemption.
    """
    now = now or utcnow()

    if coupon_code and coupon_code.strip():
        discount = resolve_coupon(repository, coupon_code, cart, user, now)
        chosen = (discount, calculate_discount_amount(discount, cart))
    else:
        candidates = repository.list_active_discounts(now, auto_apply_only=True)
        chosen = select_best_discount(candidates, cart, user)

    original = round(cart.total_amount, 2)
    if chosen is None:
        return ApplyDiscountResponse(
            message="No eligible discounts found for this cart",
            original_amount=original,
            discount_amount=0.0,
            final_amount=original,
            applied_discount=None,
        )

    discount, amount = chosen
    logger.debug("Discount %s applies to cart (saves %.2f)", discount.id, amount)
    return ApplyDiscountResponse(
        message="Discount applied successfully",
        original_amount=original,
        discount_amount=amount,
        final_amount=round(cart.total_amount - amount, 2),
        applied_discount=discount,
    )
