from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Any, Dict, Union
from datetime import datetime
from enum import Enum

from clock import to_naive_utc


# ─────────────── Enums ───────────────

class DiscountType(str, Enum):
    fixed = "fixed"
    percentage = "percentage"


class TriggerType(str, Enum):
    cart_total = "cart_total"
    item_quantity = "item_quantity"
    user_role = "user_role"
    product_combo = "product_combo"
    behavior_tag = "behavior_tag"


class ComparisonOperator(str, Enum):
    gt = "gt"
    gte = "gte"
    lt = "lt"
    lte = "lte"
    eq = "eq"


class ComboOperator(str, Enum):
    all = "all"
    any = "any"


class DeletionOutcome(str, Enum):
    removed = "removed"
    deactivated = "deactivated"


# ─────────────── Trigger condition sub-schemas ───────────────

class CartTotalCondition(BaseModel):
    operator: ComparisonOperator
    value: float = Field(ge=0, allow_inf_nan=False)  # Compared against cart.total_amount


class ItemQuantityCondition(BaseModel):
    operator: ComparisonOperator
    quantity: int = Field(ge=0)
    product_id: Optional[str] = None  # None => compare the summed quantity of all lines


class UserRoleCondition(BaseModel):
    roles: List[str]

    @field_validator("roles")
    @classmethod
    def not_empty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("Role list cannot be empty")
        return v


class ProductComboCondition(BaseModel):
    required_products: List[str]
    operator: ComboOperator

    @field_validator("required_products")
    @classmethod
    def not_empty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("Product list cannot be empty")
        return v


class BehaviorTagCondition(BaseModel):
    tag: str = Field(min_length=1)
    min_count: int = Field(ge=1)


TriggerCondition = Union[
    CartTotalCondition,
    ItemQuantityCondition,
    UserRoleCondition,
    ProductComboCondition,
    BehaviorTagCondition,
]

CONDITION_SCHEMAS = {
    TriggerType.cart_total: CartTotalCondition,
    TriggerType.item_quantity: ItemQuantityCondition,
    TriggerType.user_role: UserRoleCondition,
    TriggerType.product_combo: ProductComboCondition,
    TriggerType.behavior_tag: BehaviorTagCondition,
}

_unmapped = set(TriggerType) - set(CONDITION_SCHEMAS)
if _unmapped:
    raise RuntimeError(f"No condition schema for trigger types: {sorted(t.value for t in _unmapped)}")


def parse_trigger_condition(trigger_type, condition: Any) -> TriggerCondition:
    """
    Parse a raw condition payload into the schema of its trigger type.
    Raises ValueError (or pydantic's ValidationError) when it does not fit.
    """
    schema = CONDITION_SCHEMAS[TriggerType(trigger_type)]
    if isinstance(condition, schema):
        return condition
    if isinstance(condition, BaseModel):
        condition = condition.model_dump()
    if not isinstance(condition, dict):
        raise ValueError(f"Trigger condition must be an object, got {type(condition).__name__}")
    return schema(**condition)


# ─────────────── Discount Request / Response ───────────────

class DiscountCreate(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1, max_length=100)
    description: str = ""
    discount_type: DiscountType
    trigger_type: TriggerType
    trigger_condition: Any  # Validated per trigger type below
    discount_value: float = Field(allow_inf_nan=False)
    is_active: bool = True
    usage_limit: Optional[int] = Field(default=None, gt=0)
    is_auto_apply: bool = False
    coupon_code: Optional[str] = Field(default=None, max_length=50)
    priority: int = 0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("coupon_code")
    @classmethod
    def blank_code_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("start_date", "end_date")
    @classmethod
    def store_as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)

    @model_validator(mode="after")
    def validate_discount(self) -> "DiscountCreate":
        condition = parse_trigger_condition(self.trigger_type, self.trigger_condition)
        self.trigger_condition = condition.model_dump(mode="json")

        if self.discount_type == DiscountType.percentage:
            if not 0 < self.discount_value <= 100:
                raise ValueError("Percentage discount value must be between 0 and 100")
        elif not self.discount_value > 0:
            raise ValueError("Fixed discount value must be greater than 0")

        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class DiscountUpdate(BaseModel):
    """
    Partial update. Only fields present in the payload are applied; usage_limit,
    coupon_code, start_date and end_date may be cleared by sending null.
    """
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    trigger_type: Optional[TriggerType] = None
    trigger_condition: Optional[Any] = None
    discount_value: Optional[float] = Field(default=None, allow_inf_nan=False)
    is_active: Optional[bool] = None
    usage_limit: Optional[int] = None
    is_auto_apply: Optional[bool] = None
    coupon_code: Optional[str] = None
    priority: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def changes(self) -> Dict[str, Any]:
        nullable = {"usage_limit", "coupon_code", "start_date", "end_date"}
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None or key in nullable
        }


class Discount(BaseModel):
    id: str
    name: str
    description: str = ""
    discount_type: DiscountType
    trigger_type: TriggerType
    trigger_condition: Any
    discount_value: float = Field(allow_inf_nan=False)
    is_active: bool
    usage_limit: Optional[int] = None
    usage_count: int = 0
    is_auto_apply: bool
    coupon_code: Optional[str] = None
    priority: int = 0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def has_usage_headroom(self) -> bool:
        return self.usage_limit is None or self.usage_count < self.usage_limit

    def is_within_window(self, now: datetime) -> bool:
        if self.start_date is not None and self.start_date > now:
            return False
        if self.end_date is not None and self.end_date < now:
            return False
        return True


class DeleteDiscountResponse(BaseModel):
    message: str
    outcome: DeletionOutcome
    discount: Discount


# ─────────────── Cart / user schemas ───────────────

class CartProduct(BaseModel):
    product_id: str
    quantity: int

    @field_validator("quantity")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Quantity must be at least 1")
        return v


class Cart(BaseModel):
    products: List[CartProduct] = []
    total_amount: float = Field(allow_inf_nan=False)

    @field_validator("total_amount")
    @classmethod
    def total_positive(cls, v: float) -> float:
        if not v > 0:
            raise ValueError("Cart total must be positive")
        return v


class User(BaseModel):
    id: Optional[str] = None
    role: Optional[str] = None
    tags: List[str] = []  # Behavior tags the caller knows about; event counts are not tracked


# ─────────────── Apply Discount ───────────────

class ApplyDiscountRequest(BaseModel):
    cart: Cart
    user: Optional[User] = None
    coupon_code: Optional[str] = None


class ApplyDiscountResponse(BaseModel):
    message: str
    original_amount: float
    discount_amount: float
    final_amount: float
    applied_discount: Optional[Discount] = None


# ─────────────── Redemptions ───────────────

class RedemptionCreate(BaseModel):
    discount_id: str
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    amount_saved: float = Field(allow_inf_nan=False)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("amount_saved")
    @classmethod
    def amount_positive(cls, v: float) -> float:
        if not v > 0:
            raise ValueError("Amount saved must be positive")
        return v


class Redemption(BaseModel):
    id: str
    discount_id: str
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    amount_saved: float
    created_at: datetime
    metadata: Optional[Dict[str, Any]] = None


class RedemptionStats(BaseModel):
    total_redemptions: int = 0
    total_amount_saved: float = 0.0
    average_amount_saved: float = 0.0
    first_redemption_at: Optional[datetime] = None
    last_redemption_at: Optional[datetime] = None


class DiscountStatsResponse(BaseModel):
    discount: Discount
    stats: RedemptionStats


class RedemptionListResponse(BaseModel):
    count: int
    redemptions: List[Redemption]


