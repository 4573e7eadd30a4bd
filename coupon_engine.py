"""
coupon_engine.py
================
Core business logic for deciding whether a coupon applies to a cart and
computing the discount it grants.

Everything in this module is a pure function of its arguments: no I/O, no
logging, no shared state. The clock is an explicit ``now`` argument, and usage
counters are only read, never written (see models.increment_usage).

Implemented Cases:
------------------
1. CART_WISE:
   - Percentage off the whole cart, optionally capped by max_discount.
   - Never more than the cart total.

2. PRODUCT_WISE:
   - Percentage or fixed amount per unit off every line whose product is listed.
   - max_discount caps each matched line on its own, not the aggregate.
   - A line is never discounted below zero.

3. BXGY (Buy X, Get Y):
   - Every buy requirement must be met; the weakest one decides how many
     times the offer applies, capped by repetition_limit.
   - Each application frees get_products[i].quantity units of each get product.
   - Free units are limited to what is already in the cart. A get product that
     is missing from the cart earns nothing and no line is added for it.

Precision:
----------
No rounding happens here. Amounts are floats straight from price * quantity
arithmetic, and callers that present money are responsible for rounding.

Unimplemented / Noted Cases:
-----------------------------
- Stacking multiple coupons on the same cart simultaneously.
- Applicability based on product category (only product ids are matched).
- final_price is not floored at zero; the per-variant clamps already keep the
  discount within the cart total.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from schemas import (
    AppliedCoupon,
    ApplicableCoupon,
    ApplyResult,
    CartItem,
    Coupon,
    CouponType,
    DiscountResult,
    DiscountType,
    Evaluation,
    FreeItem,
    ItemDiscount,
    UpdatedCart,
    UpdatedCartItem,
)


class ApplicationError(Exception):
    """Raised by apply_to_cart when the coupon grants no discount on the cart."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "Invalid coupon"
        super().__init__(f"Cannot apply coupon: {self.reason}")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _cart_items(cart) -> List[CartItem]:
    """Line items of a Cart, a dict with "items", or a plain sequence of lines.

    A cart that cannot be read as valid line items counts as empty.
    """
    if cart is None:
        return []
    if isinstance(cart, dict):
        lines = cart.get("items")
    elif isinstance(cart, (list, tuple)):
        lines = cart
    else:
        lines = getattr(cart, "items", None)
    try:
        return [CartItem.model_validate(line, from_attributes=True) for line in lines or []]
    except (TypeError, ValidationError):
        return []


def _subtotal(items: Iterable[CartItem]) -> float:
    return sum((item.price * item.quantity for item in items), 0.0)


def _cart_quantities(items: Iterable[CartItem]) -> Dict[int, int]:
    quantities: Dict[int, int] = {}
    for item in items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return quantities


# ─────────────────────────── Eligibility ───────────────────────────

def inactive_reason(coupon: Coupon, now: datetime) -> Optional[str]:
    """Return why the coupon cannot be used at ``now``, or None if it can."""
    if not coupon.is_active:
        return "Coupon is not active"
    if coupon.expiration_date is not None and _as_utc(now) > _as_utc(coupon.expiration_date):
        return "Coupon has expired"
    if coupon.usage_limit and coupon.current_usage >= coupon.usage_limit:
        return "Coupon usage limit reached"
    return None


def is_applicable(coupon: Coupon, now: datetime) -> bool:
    return inactive_reason(coupon, now) is None


def _evaluate_cart_wise(coupon, items: List[CartItem], cart_total: float) -> Evaluation:
    return Evaluation(applicable=True, cart_total=cart_total)


def _evaluate_product_wise(coupon, items: List[CartItem], cart_total: float) -> Evaluation:
    if not coupon.applicable_products:
        return Evaluation(
            applicable=False,
            reason="No applicable products configured for this coupon",
            cart_total=cart_total,
        )

    targets = set(coupon.applicable_products)
    matched = [item.model_copy() for item in items if item.product_id in targets]
    if not matched:
        return Evaluation(
            applicable=False,
            reason="None of the applicable products are in the cart",
            cart_total=cart_total,
        )

    return Evaluation(
        applicable=True,
        cart_total=cart_total,
        applicable_items=matched,
        applicable_total=_subtotal(matched),
    )


def _evaluate_bxgy(coupon, items: List[CartItem], cart_total: float) -> Evaluation:
    if not coupon.buy_products or not coupon.get_products:
        return Evaluation(
            applicable=False,
            reason="Invalid BXGY configuration: buy and get products are required",
            cart_total=cart_total,
        )

    quantities = _cart_quantities(items)
    applications = min(
        quantities.get(requirement.product_id, 0) // requirement.quantity
        for requirement in coupon.buy_products
    )
    applications = min(applications, coupon.repetition_limit)

    if applications <= 0:
        return Evaluation(
            applicable=False,
            reason="Insufficient quantity of buy products",
            cart_total=cart_total,
            cart_products=quantities,
        )

    return Evaluation(
        applicable=True,
        cart_total=cart_total,
        max_applications=applications,
        cart_products=quantities,
    )


_EVALUATORS = {
    CouponType.cart_wise: _evaluate_cart_wise,
    CouponType.product_wise: _evaluate_product_wise,
    CouponType.bxgy: _evaluate_bxgy,
}


def evaluate(coupon: Coupon, cart, now: datetime) -> Evaluation:
    """
    Decide whether ``coupon`` applies to ``cart`` at ``now``.

    Never raises for an inapplicable coupon: the outcome is reported through
    ``Evaluation.applicable`` and ``Evaluation.reason``. A missing or empty
    cart counts as a total of 0 and is never applicable.
    """
    reason = inactive_reason(coupon, now)
    if reason:
        return Evaluation(applicable=False, reason=reason)

    items = _cart_items(cart)
    cart_total = _subtotal(items)
    if not items:
        return Evaluation(applicable=False, reason="Cart is empty", cart_total=cart_total)

    if coupon.min_cart_value and cart_total < coupon.min_cart_value:
        return Evaluation(
            applicable=False,
            reason=f"Cart total ({cart_total}) is less than minimum required ({coupon.min_cart_value})",
            cart_total=cart_total,
        )

    return _EVALUATORS[CouponType(coupon.type)](coupon, items, cart_total)


# ─────────────────────────── Discount calculation ───────────────────────────

def _calculate_cart_wise(coupon, evaluation: Evaluation, items: List[CartItem]) -> DiscountResult:
    cart_total = evaluation.cart_total
    discount = cart_total * coupon.discount_value / 100
    if coupon.max_discount:
        discount = min(discount, coupon.max_discount)
    discount = min(discount, cart_total)

    return DiscountResult(discount=discount, cart_total=cart_total, discount_type="percentage")


def _calculate_product_wise(coupon, evaluation: Evaluation, items: List[CartItem]) -> DiscountResult:
    item_discounts = []
    for item in evaluation.applicable_items:
        subtotal = item.price * item.quantity
        if coupon.discount_type == DiscountType.percentage:
            item_discount = subtotal * coupon.discount_value / 100
        else:
            item_discount = coupon.discount_value * item.quantity

        # max_discount caps every line separately
        if coupon.max_discount:
            item_discount = min(item_discount, coupon.max_discount)
        item_discount = min(item_discount, subtotal)

        item_discounts.append(ItemDiscount(
            product_id=item.product_id,
            quantity=item.quantity,
            item_discount=item_discount,
        ))

    label = "percentage" if coupon.discount_type == DiscountType.percentage else "fixed"
    return DiscountResult(
        discount=sum((d.item_discount for d in item_discounts), 0.0),
        cart_total=evaluation.cart_total,
        discount_type=label,
        applicable_items=evaluation.applicable_items,
        item_discounts=item_discounts,
    )


def _calculate_bxgy(coupon, evaluation: Evaluation, items: List[CartItem]) -> DiscountResult:
    lines: Dict[int, CartItem] = {}
    for item in items:
        lines.setdefault(item.product_id, item)

    applications = evaluation.max_applications
    free_items = []
    entitled = 0

    for entry in coupon.get_products:
        target_free = entry.quantity * applications
        entitled += target_free
        line = lines.get(entry.product_id)
        if line is None:
            free_items.append(FreeItem(
                product_id=entry.product_id,
                free_quantity=target_free,
                item_discount=0.0,
                note="item not in cart",
            ))
            continue

        actual_free = min(target_free, line.quantity)
        free_items.append(FreeItem(
            product_id=entry.product_id,
            free_quantity=actual_free,
            item_discount=actual_free * line.price,
        ))

    discount = sum((f.item_discount for f in free_items), 0.0)
    return DiscountResult(
        discount=discount,
        reason=None if discount > 0 else "None of the free products are in the cart",
        cart_total=evaluation.cart_total,
        discount_type="free_items",
        max_applications=applications,
        free_items=free_items,
        total_free_items=entitled,
    )


_CALCULATORS = {
    CouponType.cart_wise: _calculate_cart_wise,
    CouponType.product_wise: _calculate_product_wise,
    CouponType.bxgy: _calculate_bxgy,
}


def calculate(coupon: Coupon, cart, now: datetime) -> DiscountResult:
    """
    Compute the discount ``coupon`` grants on ``cart`` at ``now``.

    An inapplicable coupon yields ``discount == 0`` with the evaluator's reason.
    """
    evaluation = evaluate(coupon, cart, now)
    if not evaluation.applicable:
        return DiscountResult(discount=0.0, reason=evaluation.reason, cart_total=evaluation.cart_total)

    return _CALCULATORS[CouponType(coupon.type)](coupon, evaluation, _cart_items(cart))


# ─────────────────────────── Cart mutation ───────────────────────────

def _add_discount(line: UpdatedCartItem, amount: float) -> None:
    line.total_discount = (line.total_discount or 0.0) + amount
    line.discounted_price = line.price * line.quantity - line.total_discount


def _annotate_cart_wise(lines: List[UpdatedCartItem], result: DiscountResult) -> None:
    """Cart-wise discounts apply to the whole cart, so no line is annotated."""


def _annotate_product_wise(lines: List[UpdatedCartItem], result: DiscountResult) -> None:
    # item_discounts follow the cart order of the matched lines
    pending = list(result.item_discounts)
    for line in lines:
        if pending and line.product_id == pending[0].product_id:
            _add_discount(line, pending.pop(0).item_discount)


def _annotate_bxgy(lines: List[UpdatedCartItem], result: DiscountResult) -> None:
    for free in result.free_items:
        if free.item_discount <= 0:
            continue
        line = next((c for c in lines if c.product_id == free.product_id), None)
        if line is not None:
            _add_discount(line, free.item_discount)
            line.free_quantity = free.free_quantity


_ANNOTATORS = {
    CouponType.cart_wise: _annotate_cart_wise,
    CouponType.product_wise: _annotate_product_wise,
    CouponType.bxgy: _annotate_bxgy,
}


def apply_to_cart(coupon: Coupon, cart, now: datetime) -> ApplyResult:
    """
    Apply ``coupon`` to a copy of ``cart``.

    Returns the annotated copy together with the DiscountResult it was built
    from. Neither the cart nor the coupon passed in is modified, and usage
    counters are left to the caller.

    Raises:
        ApplicationError: the coupon grants no discount on this cart.
    """
    result = calculate(coupon, cart, now)
    if result.discount <= 0:
        raise ApplicationError(result.reason)

    lines = [
        UpdatedCartItem(product_id=item.product_id, quantity=item.quantity, price=item.price)
        for item in _cart_items(cart)
    ]
    _ANNOTATORS[CouponType(coupon.type)](lines, result)

    cart_total = result.cart_total
    updated_cart = UpdatedCart(
        items=lines,
        total_price=cart_total,
        total_discount=result.discount,
        final_price=cart_total - result.discount,
        applied_coupon=AppliedCoupon(
            coupon_id=coupon.id,
            code=coupon.code,
            type=coupon.type,
            discount_value=result.discount,
        ),
    )
    return ApplyResult(updated_cart=updated_cart, discount_result=result)


# ─────────────────────────── Ranking ───────────────────────────

def rank_coupons(coupons: Iterable[Coupon], cart, now: datetime) -> List[ApplicableCoupon]:
    """
    Score every coupon against one cart and return those with a positive
    discount, largest first. Coupons with equal discounts keep their input order.
    """
    ranked = []
    for coupon in coupons:
        result = calculate(coupon, cart, now)
        if result.discount > 0:
            ranked.append(ApplicableCoupon(
                coupon_id=coupon.id,
                code=coupon.code,
                type=coupon.type,
                discount=result.discount,
                details=result,
            ))

    return sorted(ranked, key=lambda c: c.discount, reverse=True)
