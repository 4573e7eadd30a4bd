"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /coupons               - Create a coupon
  GET    /coupons               - List coupons (optional ?type= and ?active= filters)
  GET    /coupons/{id}          - Get coupon by ID
  PUT    /coupons/{id}          - Update coupon
  DELETE /coupons/{id}          - Delete coupon
  POST   /applicable-coupons    - Rank all applicable coupons for a given cart
  POST   /apply-coupon/{id}     - Apply a specific coupon to the cart
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query, status
from pydantic import ValidationError
from sqlalchemy import or_
from sqlalchemy.orm import Session

import models
import schemas
import coupon_engine
from database import engine, get_db

logger = logging.getLogger(__name__)

# Create DB tables on startup
models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Coupons Management API",
    description="RESTful API to manage cart-wise, product-wise, and BxGy discount coupons for an e-commerce platform.",
    version="2.0.0",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _naive_utc(value: datetime) -> datetime:
    """Expiration dates are stored as naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _column_values(coupon: schemas.CouponBase) -> dict:
    values = coupon.model_dump()
    if values["expiration_date"] is not None:
        values["expiration_date"] = _naive_utc(values["expiration_date"])
    return values


def _get_coupon_or_404(db: Session, coupon_id: int) -> models.Coupon:
    coupon = db.query(models.Coupon).filter(models.Coupon.id == coupon_id).first()
    if not coupon:
        raise HTTPException(status_code=404, detail=f"Coupon with id={coupon_id} not found")
    return coupon


def _code_taken(db: Session, code: str) -> bool:
    return db.query(models.Coupon).filter(models.Coupon.code == code).first() is not None


# ═══════════════════════════════════════════════════
#  COUPON CRUD
# ═══════════════════════════════════════════════════

@app.post(
    "/coupons",
    response_model=schemas.CouponResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Coupons"],
    summary="Create a new coupon",
)
def create_coupon(coupon: schemas.CouponCreate, db: Session = Depends(get_db)):
    """
    Create a new coupon. Supports three types:
    - **CART_WISE**: Percentage off the entire cart, optional minimum cart value and cap.
    - **PRODUCT_WISE**: Percentage or fixed amount off specific products.
    - **BXGY**: Buy X get Y free with a repetition limit.
    """
    if _code_taken(db, coupon.code):
        raise HTTPException(status_code=400, detail=f"Coupon code '{coupon.code}' already exists")

    db_coupon = models.Coupon(**_column_values(coupon))
    db.add(db_coupon)
    db.commit()
    db.refresh(db_coupon)
    logger.info("Created %s coupon %s (id=%s)", db_coupon.type, db_coupon.code, db_coupon.id)
    return db_coupon


@app.get(
    "/coupons",
    response_model=List[schemas.CouponResponse],
    tags=["Coupons"],
    summary="Get all coupons",
)
def get_all_coupons(
    coupon_type: Optional[schemas.CouponType] = Query(None, alias="type"),
    active: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    """Retrieve coupons, newest first, optionally filtered by type and active flag."""
    query = db.query(models.Coupon)
    if coupon_type is not None:
        query = query.filter(models.Coupon.type == coupon_type.value)
    if active is not None:
        query = query.filter(models.Coupon.is_active == active)
    return query.order_by(models.Coupon.id.desc()).all()


@app.get(
    "/coupons/{coupon_id}",
    response_model=schemas.CouponResponse,
    tags=["Coupons"],
    summary="Get a coupon by ID",
)
def get_coupon(coupon_id: int, db: Session = Depends(get_db)):
    """Retrieve a specific coupon by its ID."""
    return _get_coupon_or_404(db, coupon_id)


@app.put(
    "/coupons/{coupon_id}",
    response_model=schemas.CouponResponse,
    tags=["Coupons"],
    summary="Update a coupon",
)
def update_coupon(coupon_id: int, update_data: schemas.CouponUpdate, db: Session = Depends(get_db)):
    """
    Update a specific coupon. All fields are optional; only provided fields are updated.
    The resulting coupon must still satisfy the rules of its type.
    """
    coupon = _get_coupon_or_404(db, coupon_id)

    current = schemas.CouponResponse.model_validate(coupon).model_dump(
        exclude={"id", "created_at", "updated_at"}
    )
    merged = {**current, **update_data.model_dump(exclude_unset=True)}
    try:
        validated = schemas.CouponBase.model_validate(merged)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail=[err["msg"] for err in exc.errors()],
        )

    if validated.code != coupon.code and _code_taken(db, validated.code):
        raise HTTPException(status_code=400, detail=f"Coupon code '{validated.code}' already exists")

    for key, value in _column_values(validated).items():
        setattr(coupon, key, value)

    db.commit()
    db.refresh(coupon)
    logger.info("Updated coupon %s (id=%s)", coupon.code, coupon.id)
    return coupon


@app.delete(
    "/coupons/{coupon_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Coupons"],
    summary="Delete a coupon",
)
def delete_coupon(coupon_id: int, db: Session = Depends(get_db)):
    """Delete a specific coupon by its ID."""
    coupon = _get_coupon_or_404(db, coupon_id)
    db.delete(coupon)
    db.commit()
    logger.info("Deleted coupon id=%s", coupon_id)
    return None


# ═══════════════════════════════════════════════════
#  APPLICABLE COUPONS
# ═══════════════════════════════════════════════════

@app.post(
    "/applicable-coupons",
    response_model=schemas.ApplicableCouponsResponse,
    tags=["Apply Coupons"],
    summary="Fetch all applicable coupons for a given cart",
)
def get_applicable_coupons(request: schemas.CartRequest, db: Session = Depends(get_db)):
    """
    Given a cart (list of items with product_id, quantity, price),
    returns all currently active and non-expired coupons that give a discount,
    largest discount first.
    """
    now = _utcnow()
    rows = (
        db.query(models.Coupon)
        .filter(models.Coupon.is_active == True)
        .filter(or_(models.Coupon.expiration_date.is_(None), models.Coupon.expiration_date >= _naive_utc(now)))
        .order_by(models.Coupon.id)
        .all()
    )

    coupons = []
    for row in rows:
        try:
            coupons.append(schemas.coupon_from_record(row))
        except ValueError:
            # Malformed coupon record, skip it
            logger.warning("Skipping malformed coupon id=%s", row.id)

    ranked = coupon_engine.rank_coupons(coupons, request.cart, now)
    return schemas.ApplicableCouponsResponse(
        cart=request.cart,
        applicable_coupons=ranked,
        total_applicable=len(ranked),
    )


# ═══════════════════════════════════════════════════
#  APPLY COUPON
# ═══════════════════════════════════════════════════

@app.post(
    "/apply-coupon/{coupon_id}",
    response_model=schemas.ApplyCouponResponse,
    tags=["Apply Coupons"],
    summary="Apply a specific coupon to the cart",
)
def apply_coupon(coupon_id: int, request: schemas.CartRequest, db: Session = Depends(get_db)):
    """
    Apply a specific coupon to the cart.

    Returns an updated cart showing:
    - Each item's quantity and price, plus the discount and free quantity on matched items.
    - Total price (before discount), total discount, and final price.
    - The applied coupon stamp.

    The coupon's usage counter is incremented once the discount has been computed.
    """
    row = _get_coupon_or_404(db, coupon_id)
    try:
        coupon = schemas.coupon_from_record(row)
    except ValueError as exc:
        logger.error("Coupon id=%s cannot be loaded: %s", coupon_id, exc)
        raise HTTPException(status_code=422, detail=f"Coupon with id={coupon_id} is malformed")

    try:
        result = coupon_engine.apply_to_cart(coupon, request.cart, _utcnow())
    except coupon_engine.ApplicationError as exc:
        logger.warning("Coupon %s not applied: %s", coupon.code, exc.reason)
        raise HTTPException(status_code=400, detail=str(exc))

    if not models.increment_usage(db, coupon_id):
        logger.warning("Coupon %s reached its usage limit concurrently", coupon.code)
        raise HTTPException(status_code=409, detail="Coupon usage limit reached")

    logger.info("Applied coupon %s: discount=%s", coupon.code, result.discount_result.discount)
    return schemas.ApplyCouponResponse(
        message="Coupon applied successfully",
        coupon=schemas.CouponSummary(id=coupon_id, code=coupon.code, type=coupon.type),
        updated_cart=result.updated_cart,
        discount_result=result.discount_result,
    )


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": "Coupons Management API is running 🚀"}
