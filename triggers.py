"""
triggers.py
===========
Eligibility checks for discount triggers.

Each trigger type has its own condition schema (see schemas.CONDITION_SCHEMAS)
and its own evaluator below:

1. cart_total:    compare cart.total_amount with `value`.
2. item_quantity: compare the quantity of `product_id`, or the summed quantity
                  of every line when no product is named.
3. user_role:     the user's role is one of `roles`.
4. product_combo: `all` / `any` of `required_products` are in the cart.
5. behavior_tag:  not supported yet. Always reported as `unsupported`, which
                  is never eligible.

Evaluation never raises. A condition that does not parse, or an evaluator
that blows up, yields an `error` result; checkout carries on without that
discount, and the error is logged so it can be noticed and fixed.
"""

import logging
import operator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from schemas import (
    BehaviorTagCondition,
    Cart,
    CartTotalCondition,
    ComboOperator,
    ComparisonOperator,
    ItemQuantityCondition,
    ProductComboCondition,
    TriggerType,
    User,
    UserRoleCondition,
    parse_trigger_condition,
)

logger = logging.getLogger(__name__)


class TriggerOutcome(str, Enum):
    eligible = "eligible"
    ineligible = "ineligible"
    unsupported = "unsupported"
    error = "error"


@dataclass(frozen=True)
class TriggerResult:
    outcome: TriggerOutcome
    reason: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return self.outcome is TriggerOutcome.eligible

    @property
    def failed(self) -> bool:
        return self.outcome is TriggerOutcome.error


ELIGIBLE = TriggerResult(TriggerOutcome.eligible)
INELIGIBLE = TriggerResult(TriggerOutcome.ineligible)


def _result(passed: bool) -> TriggerResult:
    return ELIGIBLE if passed else INELIGIBLE


_COMPARATORS = {
    ComparisonOperator.gt: operator.gt,
    ComparisonOperator.gte: operator.ge,
    ComparisonOperator.lt: operator.lt,
    ComparisonOperator.lte: operator.le,
    ComparisonOperator.eq: operator.eq,
}


# ─────────────────────────── Evaluators ───────────────────────────

def _evaluate_cart_total(condition: CartTotalCondition, cart: Cart, user: Optional[User]) -> TriggerResult:
    compare = _COMPARATORS[condition.operator]
    return _result(compare(cart.total_amount, condition.value))


def _evaluate_item_quantity(condition: ItemQuantityCondition, cart: Cart, user: Optional[User]) -> TriggerResult:
    if condition.product_id is not None:
        quantity = next(
            (line.quantity for line in cart.products if line.product_id == condition.product_id),
            0,
        )
    else:
        quantity = sum(line.quantity for line in cart.products)
    compare = _COMPARATORS[condition.operator]
    return _result(compare(quantity, condition.quantity))


def _evaluate_user_role(condition: UserRoleCondition, cart: Cart, user: Optional[User]) -> TriggerResult:
    if user is None or not user.role:
        return INELIGIBLE
    return _result(user.role in condition.roles)


def _evaluate_product_combo(condition: ProductComboCondition, cart: Cart, user: Optional[User]) -> TriggerResult:
    in_cart = {line.product_id for line in cart.products}
    if not in_cart:
        return INELIGIBLE
    if condition.operator == ComboOperator.all:
        return _result(all(pid in in_cart for pid in condition.required_products))
    return _result(any(pid in in_cart for pid in condition.required_products))


def _evaluate_behavior_tag(condition: BehaviorTagCondition, cart: Cart, user: Optional[User]) -> TriggerResult:
    # TODO: count logged behavior events for user.id once an event source is wired in.
    tagged = user is not None and condition.tag in user.tags
    return TriggerResult(
        TriggerOutcome.unsupported,
        f"behavior_tag triggers are not supported yet (tag={condition.tag!r}, "
        f"min_count={condition.min_count}, user_tagged={tagged})",
    )


_EVALUATORS = {
    TriggerType.cart_total: _evaluate_cart_total,
    TriggerType.item_quantity: _evaluate_item_quantity,
    TriggerType.user_role: _evaluate_user_role,
    TriggerType.product_combo: _evaluate_product_combo,
    TriggerType.behavior_tag: _evaluate_behavior_tag,
}

# Every TriggerType needs an evaluator.
_missing = set(TriggerType) - set(_EVALUATORS)
if _missing:
    raise RuntimeError(f"No evaluator for trigger types: {sorted(t.value for t in _missing)}")


# ─────────────────────────── Entry points ───────────────────────────

def evaluate_trigger(trigger_type: Any, condition: Any, cart: Cart, user: Optional[User] = None) -> TriggerResult:
    """
    Decide whether a trigger passes for the given cart and user.
    Pure: the same inputs always give the same result, and nothing is mutated.
    """
    try:
        kind = TriggerType(trigger_type)
    except ValueError:
        return TriggerResult(TriggerOutcome.error, f"Unknown trigger type: {trigger_type!r}")

    try:
        parsed = parse_trigger_condition(kind, condition)
    except (ValueError, TypeError) as e:
        return TriggerResult(TriggerOutcome.error, f"Malformed {kind.value} condition: {e}")

    try:
        return _EVALUATORS[kind](parsed, cart, user)
    except Exception as e:
        return TriggerResult(TriggerOutcome.error, f"{kind.value} evaluation failed: {e}")


def check_eligibility(discount, cart: Cart, user: Optional[User] = None) -> TriggerResult:
    """Evaluate a discount's trigger, logging anything other than a plain yes/no."""
    result = evaluate_trigger(discount.trigger_type, discount.trigger_condition, cart, user)
    if result.failed:
        logger.warning("Error checking eligibility for discount %s: %s", discount.id, result.reason)
    elif result.outcome is TriggerOutcome.unsupported:
        logger.debug("Skipping discount %s: %s", discount.id, result.reason)
    return result
