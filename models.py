import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    text,
)

from clock import utcnow
from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Discount(Base):
    """
    Database model for promotional discounts.

    discount_type: 'fixed' | 'percentage'
    trigger_type:  'cart_total' | 'item_quantity' | 'user_role' | 'product_combo' | 'behavior_tag'
    trigger_condition: JSON payload whose shape depends on trigger_type.
        - cart_total:    { "operator": "gt|gte|lt|lte|eq", "value": <number> }
        - item_quantity: { "operator": ..., "quantity": <int>, "product_id": <str, optional> }
        - user_role:     { "roles": [<str>, ...] }
        - product_combo: { "required_products": [<str>, ...], "operator": "all|any" }
        - behavior_tag:  { "tag": <str>, "min_count": <int> }
    deactivated_at: set when a discount with redemption history is deleted.
    """
    __tablename__ = "discounts"

    id = Column(String(50), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    discount_type = Column(String(20), nullable=False)
    trigger_type = Column(String(50), nullable=False)
    trigger_condition = Column(JSON, nullable=False)
    discount_value = Column(Numeric(10, 2, asdecimal=False), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    is_auto_apply = Column(Boolean, nullable=False, default=False)
    coupon_code = Column(String(50), nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    deactivated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # Coupon codes only need to be unique among active discounts.
        Index(
            "uq_discounts_active_coupon_code",
            "coupon_code",
            unique=True,
            sqlite_where=text("is_active = 1 AND coupon_code IS NOT NULL"),
            postgresql_where=text("is_active AND coupon_code IS NOT NULL"),
        ),
    )


class Redemption(Base):
    """Append-only record of a discount actually used at checkout."""
    __tablename__ = "discount_redemptions"

    id = Column(String(50), primary_key=True, default=_new_id)
    discount_id = Column(String(50), ForeignKey("discounts.id"), nullable=False, index=True)
    user_id = Column(String(50), nullable=True)
    order_id = Column(String(50), nullable=True)
    amount_saved = Column(Numeric(10, 2, asdecimal=False), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    # "metadata" is reserved on declarative classes.
    metadata_ = Column("metadata", JSON, nullable=True)
