from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Union, Literal, Annotated
from datetime import datetime, timezone
from enum import Enum


# ─────────────── Enums ───────────────

class CouponType(str, Enum):
    cart_wise = "CART_WISE"
    product_wise = "PRODUCT_WISE"
    bxgy = "BXGY"


class DiscountType(str, Enum):
    percentage = "PERCENTAGE"
    fixed_amount = "FIXED_AMOUNT"


# ─────────────── Shared sub-schemas ───────────────

class BuyGetProduct(BaseModel):
    product_id: int
    quantity: int

    @field_validator("product_id", "quantity")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Must be a positive integer")
        return v


# ─────────────── Coupon records (engine input) ───────────────

class _CouponRecord(BaseModel):
    """
    Fields shared by every coupon variant as the discount engine sees them.

    Records are assumed to be validated already (see CouponBase), so these
    models stay lenient: missing product lists load as empty lists.
    """
    id: Optional[int] = None
    code: str
    discount_value: float = 0.0
    min_cart_value: Optional[float] = 0.0
    max_discount: Optional[float] = None
    expiration_date: Optional[datetime] = None
    is_active: bool = True
    usage_limit: Optional[int] = None
    current_usage: int = 0

    model_config = {"from_attributes": True}

    @field_validator("current_usage", mode="before")
    @classmethod
    def usage_default(cls, v):
        return 0 if v is None else v

    @field_validator("is_active", mode="before")
    @classmethod
    def active_default(cls, v):
        return True if v is None else v


class CartWiseCoupon(_CouponRecord):
    type: Literal["CART_WISE"] = "CART_WISE"


class ProductWiseCoupon(_CouponRecord):
    type: Literal["PRODUCT_WISE"] = "PRODUCT_WISE"
    discount_type: DiscountType = DiscountType.percentage
    applicable_products: List[int] = []

    @field_validator("applicable_products", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return [] if v is None else v


class BxGyCoupon(_CouponRecord):
    type: Literal["BXGY"] = "BXGY"
    buy_products: List[BuyGetProduct] = []
    get_products: List[BuyGetProduct] = []
    repetition_limit: int = 1

    @field_validator("buy_products", "get_products", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return [] if v is None else v

    @field_validator("repetition_limit", mode="before")
    @classmethod
    def limit_default(cls, v):
        return 1 if not v else v


Coupon = Annotated[
    Union[CartWiseCoupon, ProductWiseCoupon, BxGyCoupon],
    Field(discriminator="type"),
]

COUPON_MODELS = {
    CouponType.cart_wise: CartWiseCoupon,
    CouponType.product_wise: ProductWiseCoupon,
    CouponType.bxgy: BxGyCoupon,
}


def coupon_from_record(record) -> Union[CartWiseCoupon, ProductWiseCoupon, BxGyCoupon]:
    """Build the engine's variant model from an ORM row or a CouponBase."""
    model = COUPON_MODELS[CouponType(record.type)]
    return model.model_validate(record, from_attributes=True)


# ─────────────── Coupon Request / Response ───────────────

class CouponBase(BaseModel):
    """
    A coupon as written by an admin. The model validator enforces the
    variant rules: which product lists each type may carry and the
    allowed discount_value range.
    """
    code: str
    type: CouponType
    discount_value: float = 0.0
    discount_type: Optional[DiscountType] = None
    min_cart_value: float = 0.0
    max_discount: Optional[float] = None
    applicable_products: Optional[List[int]] = None
    buy_products: Optional[List[BuyGetProduct]] = None
    get_products: Optional[List[BuyGetProduct]] = None
    repetition_limit: int = 1
    expiration_date: Optional[datetime] = None
    is_active: bool = True
    usage_limit: Optional[int] = None
    current_usage: int = 0

    model_config = {"use_enum_values": True}

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        v = v.strip().upper()
        if not 3 <= len(v) <= 20:
            raise ValueError("Coupon code must be between 3 and 20 characters")
        return v

    @field_validator("min_cart_value", "max_discount", "discount_value")
    @classmethod
    def not_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("Must not be negative")
        return v

    @field_validator("repetition_limit", "usage_limit")
    @classmethod
    def at_least_one(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("Must be at least 1")
        return v

    @field_validator("current_usage")
    @classmethod
    def usage_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Current usage must not be negative")
        return v

    @field_validator("applicable_products")
    @classmethod
    def product_ids_positive(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if v is not None and any(pid <= 0 for pid in v):
            raise ValueError("Product ids must be positive integers")
        return v

    @model_validator(mode="after")
    def validate_by_type(self) -> "CouponBase":
        type_ = self.type
        if type_ == CouponType.cart_wise:
            if not 1 <= self.discount_value <= 100:
                raise ValueError("Discount value must be between 1 and 100 for CART_WISE coupons")
            if self.discount_type not in (None, DiscountType.percentage):
                raise ValueError("CART_WISE coupons only support PERCENTAGE discounts")
            self._forbid("applicable_products", "buy_products", "get_products")
            self.discount_type = DiscountType.percentage.value

        elif type_ == CouponType.product_wise:
            if self.discount_value <= 0:
                raise ValueError("Discount value must be positive for PRODUCT_WISE coupons")
            if self.discount_type is None:
                raise ValueError("discount_type is required for PRODUCT_WISE coupons")
            if self.discount_type == DiscountType.percentage and self.discount_value > 100:
                raise ValueError("Percentage discount cannot exceed 100%")
            if not self.applicable_products:
                raise ValueError("PRODUCT_WISE coupons require applicable_products")
            self._forbid("buy_products", "get_products")

        elif type_ == CouponType.bxgy:
            if self.discount_type is not None:
                raise ValueError("discount_type is not applicable for BXGY coupons")
            self._forbid("applicable_products")
            if not self.buy_products:
                raise ValueError("BXGY coupons require buy_products")
            if not self.get_products:
                raise ValueError("BXGY coupons require get_products")
            buy_ids = [p.product_id for p in self.buy_products]
            get_ids = [p.product_id for p in self.get_products]
            if len(set(buy_ids)) != len(buy_ids):
                raise ValueError("Buy products must have unique product ids")
            if len(set(get_ids)) != len(get_ids):
                raise ValueError("Get products must have unique product ids")
            if set(buy_ids) & set(get_ids):
                raise ValueError("Product cannot be both in buy_products and get_products")
        return self

    def _forbid(self, *fields: str) -> None:
        for name in fields:
            if getattr(self, name):
                raise ValueError(f"{name} is not allowed for {self.type} coupons")


def _must_be_future(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return v
    aware = v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    if aware <= datetime.now(timezone.utc):
        raise ValueError("Expiration date must be in the future")
    return v


class CouponCreate(CouponBase):
    @field_validator("expiration_date")
    @classmethod
    def must_be_future(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _must_be_future(v)


class CouponUpdate(BaseModel):
    """All fields optional; the merged coupon is re-validated as a CouponBase."""
    code: Optional[str] = None
    type: Optional[CouponType] = None
    discount_value: Optional[float] = None
    discount_type: Optional[DiscountType] = None
    min_cart_value: Optional[float] = None
    max_discount: Optional[float] = None
    applicable_products: Optional[List[int]] = None
    buy_products: Optional[List[BuyGetProduct]] = None
    get_products: Optional[List[BuyGetProduct]] = None
    repetition_limit: Optional[int] = None
    expiration_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    usage_limit: Optional[int] = None
    current_usage: Optional[int] = None

    @field_validator("expiration_date")
    @classmethod
    def must_be_future(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _must_be_future(v)


class CouponResponse(BaseModel):
    id: int
    code: str
    type: CouponType
    discount_value: float
    discount_type: Optional[DiscountType] = None
    min_cart_value: Optional[float] = None
    max_discount: Optional[float] = None
    applicable_products: Optional[List[int]] = None
    buy_products: Optional[List[BuyGetProduct]] = None
    get_products: Optional[List[BuyGetProduct]] = None
    repetition_limit: Optional[int] = None
    expiration_date: Optional[datetime] = None
    is_active: bool
    usage_limit: Optional[int] = None
    current_usage: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ─────────────── Cart schemas ───────────────

class CartItem(BaseModel):
    product_id: int
    quantity: int
    price: float  # Price per unit

    @field_validator("product_id")
    @classmethod
    def id_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Product id must be positive")
        return v

    @field_validator("quantity")
    @classmethod
    def qty_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be positive")
        return v

    @field_validator("price")
    @classmethod
    def price_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Price must be positive")
        return v


class Cart(BaseModel):
    items: List[CartItem]

    @field_validator("items")
    @classmethod
    def not_empty(cls, v: list) -> list:
        if not v:
            raise ValueError("Cart must contain at least one item")
        return v


class CartRequest(BaseModel):
    cart: Cart


# ─────────────── Engine results ───────────────

class Evaluation(BaseModel):
    applicable: bool
    reason: Optional[str] = None
    cart_total: float = 0.0
    applicable_items: List[CartItem] = []
    applicable_total: Optional[float] = None
    max_applications: Optional[int] = None
    cart_products: Dict[int, int] = {}


class ItemDiscount(BaseModel):
    product_id: int
    quantity: int
    item_discount: float


class FreeItem(BaseModel):
    product_id: int
    free_quantity: int
    item_discount: float
    note: Optional[str] = None  # "item not in cart" when no line could be credited


class DiscountResult(BaseModel):
    discount: float
    reason: Optional[str] = None
    cart_total: float = 0.0
    discount_type: Optional[str] = None  # "percentage" | "fixed" | "free_items"
    applicable_items: List[CartItem] = []
    item_discounts: List[ItemDiscount] = []
    max_applications: Optional[int] = None
    free_items: List[FreeItem] = []
    total_free_items: int = 0


# ─────────────── Apply Coupon Response ───────────────

class AppliedCoupon(BaseModel):
    coupon_id: Optional[int] = None
    code: str
    type: CouponType
    discount_value: float  # Absolute discount granted


class UpdatedCartItem(BaseModel):
    product_id: int
    quantity: int
    price: float
    total_discount: Optional[float] = None
    discounted_price: Optional[float] = None
    free_quantity: Optional[int] = None


class UpdatedCart(BaseModel):
    items: List[UpdatedCartItem]
    total_price: float
    total_discount: float
    final_price: float
    applied_coupon: Optional[AppliedCoupon] = None


class ApplyResult(BaseModel):
    updated_cart: UpdatedCart
    discount_result: DiscountResult


class CouponSummary(BaseModel):
    id: int
    code: str
    type: CouponType


class ApplyCouponResponse(BaseModel):
    message: str
    coupon: CouponSummary
    updated_cart: UpdatedCart
    discount_result: DiscountResult


# ─────────────── Applicable Coupons Response ───────────────

class ApplicableCoupon(BaseModel):
    coupon_id: Optional[int] = None
    code: str
    type: CouponType
    discount: float  # Absolute discount value
    details: DiscountResult


class ApplicableCouponsResponse(BaseModel):
    cart: Cart
    applicable_coupons: List[ApplicableCoupon]
    total_applicable: int
