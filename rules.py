"""
Membership quota and coupon rules.

Both rules are decisions over documents fetched from the store. The write
paths (``reserve_product_slot`` and ``redeem_coupon``) fold the decision into
a single conditional update so two concurrent requests for the same user or
coupon cannot both pass the check.
"""

import logging
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import COUPONS, PRODUCTS, USERS, utcnow
from errors import Conflict, CouponError, NotFound, QuotaExceeded

logger = logging.getLogger(__name__)

FREE_PRODUCT_LIMIT = 1
PREMIUM = "premium"


class QuotaDecision(NamedTuple):
    allowed: bool
    current_count: int
    limit: Optional[int]  # None: unlimited

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "currentCount": self.current_count,
            "limit": "unlimited" if self.limit is None else self.limit,
        }


# ---------------------- Membership Gate ----------------------

def is_premium(user: Dict[str, Any]) -> bool:
    return (user.get("membership") or {}).get("status") == PREMIUM


def count_products(db: Database, email: str) -> int:
    return db[PRODUCTS].count_documents({"owner.email": email})


def can_submit_product(db: Database, email: str) -> QuotaDecision:
    """Read-only quota check: premium is unlimited, everyone else gets one product."""
    user = db[USERS].find_one({"email": email}, {"membership": 1})
    if not user:
        raise NotFound("User not found")

    current = count_products(db, email)
    if is_premium(user):
        return QuotaDecision(True, current, None)
    return QuotaDecision(current < FREE_PRODUCT_LIMIT, current, FREE_PRODUCT_LIMIT)


def reserve_product_slot(db: Database, email: str) -> QuotaDecision:
    """
    Claim one submission slot for ``email`` or raise.

    The user's ``productCount`` is incremented by one conditional update that
    only matches premium users or users still under the free limit. Callers
    must ``release_product_slot`` if the product insert does not happen.
    """
    users = db[USERS]
    user = users.find_one({"email": email}, {"membership": 1, "productCount": 1})
    if not user:
        raise NotFound("User not found")

    if "productCount" not in user:
        # accounts created before the counter existed
        users.update_one(
            {"email": email, "productCount": {"$exists": False}},
            {"$set": {"productCount": count_products(db, email)}},
        )

    updated = users.find_one_and_update(
        {
            "email": email,
            "$or": [
                {"membership.status": PREMIUM},
                {"productCount": {"$lt": FREE_PRODUCT_LIMIT}},
            ],
        },
        {"$inc": {"productCount": 1}},
        projection={"membership": 1, "productCount": 1},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = users.find_one({"email": email}, {"productCount": 1})
        if not current:
            raise NotFound("User not found")
        count = current.get("productCount", 0)
        logger.info("Product limit reached for %s (%d/%d)", email, count, FREE_PRODUCT_LIMIT)
        raise QuotaExceeded(count, FREE_PRODUCT_LIMIT)

    if is_premium(updated):
        return QuotaDecision(True, updated["productCount"], None)
    return QuotaDecision(True, updated["productCount"], FREE_PRODUCT_LIMIT)


def release_product_slot(db: Database, email: str):
    db[USERS].update_one(
        {"email": email, "productCount": {"$gt": 0}},
        {"$inc": {"productCount": -1}},
    )


# ---------------------- Coupon Validator ----------------------

def normalize_code(code: str) -> str:
    return code.upper()


def public_coupon(coupon: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "code": coupon["code"],
        "description": coupon.get("description"),
        "discountAmount": coupon.get("discountAmount"),
        "minOrderAmount": coupon.get("minOrderAmount"),
    }


def check_coupon(coupon: Dict[str, Any], now: datetime):
    if not coupon.get("isActive"):
        raise CouponError(CouponError.INACTIVE)
    expiry = coupon.get("expiryDate")
    if expiry is None or now >= expiry:
        raise CouponError(CouponError.EXPIRED)
    max_uses = coupon.get("maxUses")
    if max_uses and coupon.get("usedCount", 0) >= max_uses:
        raise CouponError(CouponError.EXHAUSTED_USES)


def find_coupon(db: Database, code: str) -> Dict[str, Any]:
    coupon = db[COUPONS].find_one({"code": normalize_code(code)})
    if not coupon:
        raise CouponError(CouponError.NOT_FOUND)
    return coupon


def validate_coupon(db: Database, code: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    coupon = find_coupon(db, code)
    check_coupon(coupon, now or utcnow())
    return public_coupon(coupon)


def redeem_coupon(db: Database, code: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Validate and consume one use of a coupon in a single conditional update.

    The filter repeats every validity rule against the stored document, so the
    increment only lands if the coupon is still usable at write time.
    """
    now = now or utcnow()
    coupon = find_coupon(db, code)
    check_coupon(coupon, now)

    max_uses = coupon.get("maxUses")
    guard: Dict[str, Any] = {
        "_id": coupon["_id"],
        "isActive": True,
        "expiryDate": {"$gt": now},
        "maxUses": max_uses,
    }
    if max_uses:
        guard["usedCount"] = {"$lt": max_uses}

    updated = db[COUPONS].find_one_and_update(
        guard,
        {"$inc": {"usedCount": 1}, "$set": {"updatedAt": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # lost a race with another redemption or an admin edit
        current = find_coupon(db, code)
        check_coupon(current, now)
        raise Conflict("Coupon changed during redemption, please retry")

    logger.info("Coupon %s redeemed (%d uses)", updated["code"], updated["usedCount"])
    return {**public_coupon(updated), "usedCount": updated["usedCount"]}
