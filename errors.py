"""
errors.py
=========
Errors raised by the discount engine.

Every error carries the HTTP status the API layer answers with, so the
routes never need to translate them one by one.
"""


class DiscountEngineError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


# ─────────────────────────── Validation ───────────────────────────

class DiscountValidationError(DiscountEngineError):
    status_code = 422


class DuplicateCouponCode(DiscountValidationError):
    status_code = 409

    def __init__(self, coupon_code: str):
        super().__init__(f'Coupon code "{coupon_code}" is already in use')
        self.coupon_code = coupon_code


# ─────────────────────────── Coupons ───────────────────────────

class CouponNotFound(DiscountEngineError):
    status_code = 404

    def __init__(self, coupon_code: str, detail: str = None):
        super().__init__(detail or f'Coupon code "{coupon_code}" is invalid or expired')
        self.coupon_code = coupon_code


class CouponExpired(CouponNotFound):
    status_code = 400

    def __init__(self, coupon_code: str):
        super().__init__(coupon_code, f'Coupon code "{coupon_code}" has expired or is not yet valid')


class CouponNotApplicable(DiscountEngineError):
    status_code = 400

    def __init__(self, coupon_code: str):
        super().__init__(f'Coupon code "{coupon_code}" is not applicable to this cart')
        self.coupon_code = coupon_code


# ─────────────────────────── Discounts / redemptions ───────────────────────────

class DiscountNotFound(DiscountEngineError):
    status_code = 404

    def __init__(self, discount_id: str):
        super().__init__(f"Discount with id={discount_id} not found")
        self.discount_id = discount_id


class DiscountExhausted(DiscountEngineError):
    status_code = 409

    def __init__(self, discount_id: str):
        super().__init__(f"Discount with id={discount_id} has reached its usage limit")
        self.discount_id = discount_id


class DiscountInactive(DiscountEngineError):
    status_code = 409

    def __init__(self, discount_id: str):
        super().__init__(f"Discount with id={discount_id} is not active")
        self.discount_id = discount_id


# ─────────────────────────── Storage ───────────────────────────

class StorageError(DiscountEngineError):
    """Backend failure. The detail never leaks driver messages to callers."""

    status_code = 500

    def __init__(self, detail: str = "Internal storage error"):
        super().__init__(detail)
