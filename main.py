"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /discounts                      - Create a discount
  GET    /discounts                      - List all discounts
  GET    /discounts/{id}                 - Get discount by ID
  GET    /discounts/coupon/{code}        - Get the active discount holding a coupon code
  PUT    /discounts/{id}                 - Update discount
  DELETE /discounts/{id}                 - Delete (or deactivate) discount
  GET    /discounts/{id}/stats           - Redemption statistics for a discount
  GET    /discounts/{id}/redemptions     - Redemptions of a discount
  POST   /discounts/apply                - Pick and price the discount for a cart
  POST   /discounts/redemptions          - Record a redemption after checkout
"""

import logging
from typing import List

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import catalog
import config
import discount_engine
import ledger
import schemas
from database import get_db, init_db
from errors import DiscountEngineError
from repository import DiscountRepository, SqlDiscountRepository

logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
logger = logging.getLogger(__name__)

# Create DB tables on startup
init_db()

app = FastAPI(
    title=config.APP_NAME,
    description="Promotional discount engine: rule-based automatic discounts, coupon codes and redemption accounting.",
    version=config.APP_VERSION,
)


def get_repository(db: Session = Depends(get_db)) -> DiscountRepository:
    return SqlDiscountRepository(db)


@app.exception_handler(DiscountEngineError)
def handle_engine_error(request: Request, exc: DiscountEngineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# ═══════════════════════════════════════════════════
#  APPLY / REDEEM
# ═══════════════════════════════════════════════════

@app.post(
    "/discounts/apply",
    response_model=schemas.ApplyDiscountResponse,
    tags=["Checkout"],
    summary="Apply the best discount (or a coupon code) to a cart",
)
def apply_discount(request: schemas.ApplyDiscountRequest, repository: DiscountRepository = Depends(get_repository)):
    """
    Without a coupon code, the highest-priority auto-apply discount whose
    trigger passes is applied. With a code, only that coupon is considered.
    Finding nothing to apply is not an error.
    """
    return discount_engine.apply_discount(
        repository,
        cart=request.cart,
        user=request.user,
        coupon_code=request.coupon_code,
    )


@app.post(
    "/discounts/redemptions",
    response_model=schemas.Redemption,
    status_code=status.HTTP_201_CREATED,
    tags=["Checkout"],
    summary="Record a discount redemption",
)
def record_redemption(data: schemas.RedemptionCreate, repository: DiscountRepository = Depends(get_repository)):
    return ledger.record_redemption(repository, data)


# ═══════════════════════════════════════════════════
#  DISCOUNT CRUD
# ═══════════════════════════════════════════════════

@app.post(
    "/discounts",
    response_model=schemas.Discount,
    status_code=status.HTTP_201_CREATED,
    tags=["Discounts"],
    summary="Create a new discount",
)
def create_discount(discount: schemas.DiscountCreate, repository: DiscountRepository = Depends(get_repository)):
    """
    Create a discount. trigger_condition is validated against trigger_type:
    - **cart_total**: `{operator, value}`
    - **item_quantity**: `{operator, quantity, product_id?}`
    - **user_role**: `{roles}`
    - **product_combo**: `{required_products, operator: all|any}`
    - **behavior_tag**: `{tag, min_count}`
    """
    return catalog.create_discount(repository, discount)


@app.get(
    "/discounts",
    response_model=List[schemas.Discount],
    tags=["Discounts"],
    summary="Get all discounts",
)
def get_all_discounts(repository: DiscountRepository = Depends(get_repository)):
    """Retrieve all discounts (both active and inactive)."""
    return catalog.list_discounts(repository)


@app.get(
    "/discounts/coupon/{coupon_code}",
    response_model=schemas.Discount,
    tags=["Discounts"],
    summary="Get the active discount for a coupon code",
)
def get_discount_by_coupon(coupon_code: str, repository: DiscountRepository = Depends(get_repository)):
    return catalog.get_discount_by_coupon_code(repository, coupon_code)


@app.get(
    "/discounts/{discount_id}",
    response_model=schemas.Discount,
    tags=["Discounts"],
    summary="Get a discount by ID",
)
def get_discount(discount_id: str, repository: DiscountRepository = Depends(get_repository)):
    return catalog.get_discount(repository, discount_id)


@app.put(
    "/discounts/{discount_id}",
    response_model=schemas.Discount,
    tags=["Discounts"],
    summary="Update a discount",
)
def update_discount(
    discount_id: str,
    update_data: schemas.DiscountUpdate,
    repository: DiscountRepository = Depends(get_repository),
):
    """
    Update a discount. Only provided fields are changed; the result is
    validated as a whole.
    """
    return catalog.update_discount(repository, discount_id, update_data)


@app.delete(
    "/discounts/{discount_id}",
    response_model=schemas.DeleteDiscountResponse,
    tags=["Discounts"],
    summary="Delete a discount",
)
def delete_discount(discount_id: str, repository: DiscountRepository = Depends(get_repository)):
    """
    Discounts that were never redeemed are removed. Discounts with redemption
    history are deactivated instead and stay retrievable.
    """
    return catalog.delete_discount(repository, discount_id)


# ═══════════════════════════════════════════════════
#  REDEMPTION REPORTING
# ═══════════════════════════════════════════════════

@app.get(
    "/discounts/{discount_id}/stats",
    response_model=schemas.DiscountStatsResponse,
    tags=["Reporting"],
    summary="Redemption statistics for a discount",
)
def get_discount_stats(discount_id: str, repository: DiscountRepository = Depends(get_repository)):
    return catalog.get_discount_stats(repository, discount_id)


@app.get(
    "/discounts/{discount_id}/redemptions",
    response_model=schemas.RedemptionListResponse,
    tags=["Reporting"],
    summary="Redemptions of a discount, newest first",
)
def get_discount_redemptions(discount_id: str, repository: DiscountRepository = Depends(get_repository)):
    redemptions = catalog.list_redemptions(repository, discount_id)
    return schemas.RedemptionListResponse(count=len(redemptions), redemptions=redemptions)


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": f"{config.APP_NAME} is running"}
