"""
Coupon validation and usage accounting.

``evaluate_coupon`` is a pure decision over a coupon document and an amount.
Usage is only counted by ``CouponValidator.redeem``, once per order id.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from pymongo.errors import DuplicateKeyError

import errors
from database import create_document
from schemas import Coupon, CouponValidation, money_str, to_money

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_discount(coupon: Dict[str, Any], amount: Decimal) -> Decimal:
    value = Decimal(str(coupon["discount_value"]))
    if coupon["discount_type"] == "percentage":
        discount = amount * value / 100
        if coupon.get("max_discount_amount") is not None:
            discount = min(discount, Decimal(str(coupon["max_discount_amount"])))
    else:
        # fixed discounts are not capped at the amount; order totals clamp at zero
        discount = value
    return to_money(discount)


def evaluate_coupon(coupon: Optional[Dict[str, Any]], amount, now: Optional[datetime] = None) -> CouponValidation:
    """Decide whether ``coupon`` applies to ``amount``.

    Checks run in a fixed order and stop at the first failure: existence,
    active flag, expiry, minimum order amount, usage limit. A coupon that
    passes all of them yields the discount it grants on ``amount``.
    """
    if not coupon:
        return CouponValidation(valid=False, message="Invalid coupon code")
    if not coupon.get("is_active", False):
        return CouponValidation(valid=False, message="Coupon is no longer active")

    now = now or datetime.now(timezone.utc)
    valid_until = coupon.get("valid_until")
    if valid_until is not None and _as_utc(now) > _as_utc(valid_until):
        return CouponValidation(valid=False, message="Coupon has expired")

    amount = Decimal(str(amount))
    min_amount = coupon.get("min_order_amount")
    if min_amount is not None and amount < Decimal(str(min_amount)):
        return CouponValidation(valid=False, message=f"Minimum order amount is ₹{money_str(min_amount)}")

    usage_limit = coupon.get("usage_limit")
    if usage_limit is not None and coupon.get("used_count", 0) >= usage_limit:
        return CouponValidation(valid=False, message="Coupon usage limit reached")

    return CouponValidation(valid=True, discount=float(compute_discount(coupon, amount)))


class CouponValidator:
    def __init__(self, db):
        self.coupons = db["coupon"]
        self.db = db

    def get(self, code: str) -> Optional[dict]:
        return self.coupons.find_one({"code": code})

    def validate(self, code: str, amount, now: Optional[datetime] = None) -> CouponValidation:
        return evaluate_coupon(self.get(code), amount, now=now)

    def redeem(self, code: str, order_id: str) -> bool:
        """Count one use of ``code`` for ``order_id``; repeat calls are no-ops.

        The increment is conditional on ``used_count`` staying under the
        coupon's ``usage_limit``, so concurrent orders cannot overshoot it.
        """
        coupon = self.coupons.find_one({"code": code}, {"usage_limit": 1})
        if not coupon:
            logger.warning("coupon_redeem_skipped", code=code, order_id=order_id, reason="unknown_code")
            return False
        query = {"code": code, "redeemed_orders": {"$ne": order_id}}
        if coupon.get("usage_limit") is not None:
            query["used_count"] = {"$lt": coupon["usage_limit"]}
        res = self.coupons.update_one(
            query,
            {
                "$inc": {"used_count": 1},
                "$addToSet": {"redeemed_orders": order_id},
                "$set": {"updated_at": datetime.now(timezone.utc)},
            },
        )
        if res.modified_count:
            logger.info("coupon_redeemed", code=code, order_id=order_id)
        else:
            logger.warning("coupon_redeem_skipped", code=code, order_id=order_id, reason="already_counted_or_limit_reached")
        return bool(res.modified_count)

    def create(self, body: Coupon) -> Dict[str, Any]:
        doc = body.model_dump()
        for key in ("discount_value", "min_order_amount", "max_discount_amount"):
            if doc.get(key) is not None:
                doc[key] = money_str(doc[key])
        doc["redeemed_orders"] = []
        try:
            create_document(self.db, "coupon", doc)
        except DuplicateKeyError:
            raise errors.ConflictError(f"Coupon {body.code} already exists")
        return serialize_coupon(self.get(body.code))


def serialize_coupon(doc: dict) -> Dict[str, Any]:
    c = dict(doc)
    c["id"] = str(c.pop("_id"))
    c.pop("redeemed_orders", None)
    return c
