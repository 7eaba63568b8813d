"""
ledger.py
=========
Recording discount redemptions.

A redemption is written only after checkout succeeds. Incrementing the
discount's usage count and appending the redemption row happen in one
repository scope: the increment is a conditional update that refuses to go
past the usage limit, so two checkouts racing for the last use cannot both
win, and a failure on either step leaves neither behind.
"""

import logging

from errors import DiscountExhausted, DiscountInactive, DiscountNotFound
from repository import DiscountRepository
from schemas import Redemption, RedemptionCreate

logger = logging.getLogger(__name__)


def record_redemption(repository: DiscountRepository, data: RedemptionCreate) -> Redemption:
    discount = repository.get_discount(data.discount_id)
    if discount is None:
        raise DiscountNotFound(data.discount_id)
    if not discount.is_active:
        raise DiscountInactive(data.discount_id)

    with repository.redemption_scope(data.discount_id):
        if not repository.conditionally_increment_usage(data.discount_id):
            # Re-read to tell a spent discount from one deactivated meanwhile.
            current = repository.get_discount(data.discount_id)
            if current is None:
                raise DiscountNotFound(data.discount_id)
            if not current.is_active:
                raise DiscountInactive(data.discount_id)
            logger.info("Redemption rejected: discount %s is exhausted", data.discount_id)
            raise DiscountExhausted(data.discount_id)
        redemption = repository.append_redemption(data)

    logger.info(
        "Recorded redemption %s for discount %s (order=%s, saved=%.2f)",
        redemption.id,
        redemption.discount_id,
        redemption.order_id,
        redemption.amount_saved,
    )
    return redemption
