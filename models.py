from sqlalchemy import Column, Integer, String, JSON, DateTime, Boolean, Float, update, or_
from sqlalchemy.orm import Session
from sqlalchemy.sql import func
from database import Base


class Coupon(Base):
    """
    Database model for coupons.

    type: 'CART_WISE' | 'PRODUCT_WISE' | 'BXGY'
    Variant-specific columns:
        - CART_WISE:    discount_value (percent), max_discount
        - PRODUCT_WISE: discount_value, discount_type ('PERCENTAGE' | 'FIXED_AMOUNT'),
                        applicable_products: [<int>, ...]
        - BXGY:         buy_products: [{"product_id": <int>, "quantity": <int>}, ...],
                        get_products: [{"product_id": <int>, "quantity": <int>}, ...],
                        repetition_limit: <int>
    """
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String, unique=True, index=True, nullable=False)
    type = Column(String, index=True, nullable=False)
    discount_value = Column(Float, nullable=False, default=0.0)
    discount_type = Column(String, nullable=True)
    min_cart_value = Column(Float, nullable=False, default=0.0)
    max_discount = Column(Float, nullable=True)
    applicable_products = Column(JSON, nullable=True)
    buy_products = Column(JSON, nullable=True)
    get_products = Column(JSON, nullable=True)
    repetition_limit = Column(Integer, nullable=False, default=1)
    expiration_date = Column(DateTime, nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    usage_limit = Column(Integer, nullable=True)
    current_usage = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


def increment_usage(db: Session, coupon_id: int) -> bool:
    """
    Atomically bump current_usage for one coupon.

    The check against usage_limit happens in the same UPDATE statement, so two
    concurrent requests can never both take the last available use. Returns
    False when no row matched (coupon gone or limit already reached).
    """
    result = db.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id)
        .where(or_(Coupon.usage_limit.is_(None), Coupon.current_usage < Coupon.usage_limit))
        .values(current_usage=Coupon.current_usage + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1
