import calendar
import logging
import math
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import settings
from database import (
    COUPONS,
    PAYMENTS,
    PRODUCTS,
    REVIEWS,
    USERS,
    Services,
    create_document,
    ensure_indexes,
    get_documents,
    oid_to_str,
    parse_object_id,
    utcnow,
)
from errors import APIError, Conflict, NotFound, ServiceUnavailable, ValidationError
from rules import (
    PREMIUM,
    can_submit_product,
    redeem_coupon,
    release_product_slot,
    reserve_product_slot,
    validate_coupon,
)
from schemas import (
    CouponIn,
    FeaturedUpdate,
    Payment,
    PaymentIn,
    PaymentIntentIn,
    Product,
    ProductIn,
    ProductUpdate,
    ReportIn,
    Review,
    ReviewIn,
    RoleUpdate,
    StatusUpdate,
    User,
    UserIn,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------- Dependencies ----------------------

def get_services(request: Request) -> Optional[Services]:
    return request.app.state.services


def get_db(services: Optional[Services] = Depends(get_services)) -> Database:
    if services is None or services.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return services.db


def _fields(*names: str) -> Dict[str, int]:
    return {n: 1 for n in names}


USER_FIELDS = _fields("name", "email", "photo", "role", "membership", "createdAt", "bio", "authProvider", "updatedAt")
PROFILE_FIELDS = _fields("name", "email", "photo", "role", "membership", "createdAt", "bio")
PRODUCT_FIELDS = _fields("name", "image", "description", "tags", "externalLink", "votes", "status",
                         "featured", "createdAt", "owner")
CARD_FIELDS = _fields("name", "image", "tags", "votes", "owner", "createdAt")
LISTING_FIELDS = {**CARD_FIELDS, **_fields("description", "featured")}
MODERATION_FIELDS = {**PRODUCT_FIELDS, **_fields("updatedAt", "reviewedAt")}
REPORT_FIELDS = {**MODERATION_FIELDS, **_fields("reported", "reportReason", "reportedBy", "reporterName",
                                                 "reporterImage", "reportedAt")}
REVIEW_FIELDS = _fields("reviewerName", "reviewerImage", "description", "rating", "createdAt")


# ---------------------- Root & Health ----------------------

@router.get("/")
def read_root():
    return {"message": "StackVault Server is Running"}


@router.get("/test")
def test_database(services: Optional[Services] = Depends(get_services)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "payments": "❌ Not Configured",
        "collections": [],
    }
    db = services.db if services else None
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            try:
                response["collections"] = db.list_collection_names()[:10]
                response["database"] = "✅ Connected & Working"
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"

    if services and services.payments is not None:
        response["payments"] = "✅ Configured"
    return response


# ---------------------- Users ----------------------

@router.post("/users")
def upsert_user(payload: UserIn, response: Response, db: Database = Depends(get_db)):
    now = utcnow()
    defaults = User(email=payload.email)
    update = {
        "$setOnInsert": {
            "email": payload.email,
            "role": defaults.role,
            "membership": defaults.membership.model_dump(by_alias=True, exclude_none=True),
            "productCount": 0,
            "createdAt": payload.created_at or now,
        },
        "$set": {
            "name": payload.name or defaults.name,
            "photo": payload.photo or defaults.photo,
            "bio": payload.bio or defaults.bio,
            "authProvider": payload.auth_provider or defaults.auth_provider,
            "updatedAt": now,
        },
    }
    try:
        result = db[USERS].update_one({"email": payload.email}, update, upsert=True)
    except DuplicateKeyError:
        raise Conflict("Email already exists")

    created = result.upserted_id is not None
    response.status_code = 201 if created else 200
    user = db[USERS].find_one({"email": payload.email}, {"_id": 0, "productCount": 0})
    return {"status": "created" if created else "updated", "user": user}


@router.get("/users/{email}")
def get_user(email: str, db: Database = Depends(get_db)):
    user = db[USERS].find_one({"email": email}, USER_FIELDS)
    if not user:
        raise NotFound("User not found")
    return oid_to_str(user)


@router.get("/user-profile/{email}")
def get_user_profile(email: str, db: Database = Depends(get_db)):
    user = db[USERS].find_one({"email": email}, PROFILE_FIELDS)
    if not user:
        raise NotFound("User not found")
    return oid_to_str(user)


@router.get("/users/{email}/product-quota")
def get_product_quota(email: str, db: Database = Depends(get_db)):
    return can_submit_product(db, email).to_dict()


# ---------------------- Payments ----------------------

@router.post("/create-payment-intent")
def create_payment_intent(payload: PaymentIntentIn, services: Optional[Services] = Depends(get_services)):
    if services is None or services.payments is None:
        raise ServiceUnavailable("Stripe service unavailable")

    coupon_code = None
    if payload.coupon_code:
        coupon_code = validate_coupon(get_db(services), payload.coupon_code)["code"]

    logger.info(
        "Creating payment intent for amount: $%.2f for user: %s%s",
        payload.amount,
        payload.user_email or "unknown",
        f" with coupon: {coupon_code}" if coupon_code else "",
    )
    intent = services.payments.create_payment_intent(
        payload.amount,
        metadata={
            "service": "StackVault_membership",
            "user_email": payload.user_email or "unknown",
            "coupon_code": coupon_code or "none",
        },
    )
    logger.info("Payment intent created: %s", intent["id"])
    return {"clientSecret": intent["client_secret"], "paymentIntentId": intent["id"]}


@router.post("/payments")
def record_payment(payload: PaymentIn, db: Database = Depends(get_db)):
    """Append the payment to the history and upgrade the payer to premium."""
    now = utcnow()
    logger.info("Processing payment for: %s, amount: $%.2f, transaction: %s",
                payload.email, payload.amount, payload.transaction_id)

    payment = Payment(
        email=payload.email,
        amount=payload.amount,
        transaction_id=payload.transaction_id,
        membership_type=payload.membership_type or "premium",
        paid_at=now,
    ).model_dump(by_alias=True)
    payment_id = create_document(db, PAYMENTS, payment)

    result = db[USERS].update_one(
        {"email": payload.email},
        {
            "$set": {
                "membership.status": PREMIUM,
                "membership.type": payload.membership_type or "monthly",
                "membership.purchasedAt": now,
                "membership.transactionId": payload.transaction_id,
                "membership.amount": payload.amount,
                "updatedAt": now,
            }
        },
    )
    logger.info("Membership upgraded for %s: %s", payload.email,
                "Success" if result.modified_count else "No changes")

    return {
        "status": "success",
        "message": "Payment processed successfully - Membership upgraded to Premium!",
        "payment": {"id": payment_id, **payment},
        "userUpdated": result.modified_count > 0,
    }


@router.get("/payments/{email}")
def payment_history(email: str, db: Database = Depends(get_db)) -> List[Dict[str, Any]]:
    return get_documents(db, PAYMENTS, {"email": email}, projection={"_id": 0}, sort=[("paidAt", -1)])


# ---------------------- Products ----------------------

@router.post("/products", status_code=201)
def submit_product(payload: ProductIn, db: Database = Depends(get_db)):
    email = payload.owner.email
    decision = reserve_product_slot(db, email)

    product = Product(**payload.model_dump())
    try:
        product_id = create_document(db, PRODUCTS, product)
    except PyMongoError:
        release_product_slot(db, email)
        raise

    return {
        "success": True,
        "message": "Product submitted successfully",
        "productId": product_id,
        "userProductCount": decision.current_count,
        "isPremium": decision.limit is None,
        "limit": "unlimited" if decision.limit is None else decision.limit,
    }


@router.get("/products")
def list_products(page: int = Query(1, ge=1), limit: int = Query(6, ge=1, le=100), search: str = "",
                  db: Database = Depends(get_db)):
    query: Dict[str, Any] = {"status": "accepted"}
    term = search.strip()
    if term:
        pattern = {"$regex": re.escape(term), "$options": "i"}
        query["$or"] = [{"tags": pattern}, {"name": pattern}, {"description": pattern}]

    products = get_documents(db, PRODUCTS, query, projection=LISTING_FIELDS, sort=[("createdAt", -1)],
                             skip=(page - 1) * limit, limit=limit)
    total = db[PRODUCTS].count_documents(query)
    return {
        "products": products,
        "totalPages": math.ceil(total / limit),
        "currentPage": page,
        "totalProducts": total,
    }


@router.get("/products/user/{email}")
def list_user_products(email: str, db: Database = Depends(get_db)):
    return get_documents(db, PRODUCTS, {"owner.email": email}, projection=PRODUCT_FIELDS,
                         sort=[("createdAt", -1)])


@router.get("/products/featured")
def list_featured_products(db: Database = Depends(get_db)):
    return get_documents(db, PRODUCTS, {"status": "accepted", "featured": True}, projection=CARD_FIELDS,
                         sort=[("createdAt", -1)], limit=4)


@router.get("/products/trending")
def list_trending_products(db: Database = Depends(get_db)):
    return get_documents(db, PRODUCTS, {"status": "accepted"}, projection=CARD_FIELDS,
                         sort=[("votes", -1)], limit=6)


@router.get("/products/pending")
def list_pending_products(db: Database = Depends(get_db)):
    products = get_documents(db, PRODUCTS, {"status": "pending"}, projection=MODERATION_FIELDS,
                             sort=[("createdAt", 1)])
    logger.info("Found %d pending products", len(products))
    return products


@router.get("/products/pending/count")
def count_pending_products(db: Database = Depends(get_db)):
    return {"count": db[PRODUCTS].count_documents({"status": "pending"})}


@router.get("/products/reported")
def list_reported_products(db: Database = Depends(get_db)):
    return get_documents(db, PRODUCTS, {"reported": True}, projection=REPORT_FIELDS,
                         sort=[("reportedAt", -1)])


@router.get("/products/reported/count")
def count_reported_products(db: Database = Depends(get_db)):
    return {"count": db[PRODUCTS].count_documents({"reported": True})}


@router.get("/products/accepted-non-featured")
def list_accepted_non_featured(db: Database = Depends(get_db)):
    return get_documents(db, PRODUCTS, {"status": "accepted", "featured": {"$ne": True}},
                         projection=MODERATION_FIELDS, sort=[("createdAt", -1)])


@router.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    product = db[PRODUCTS].find_one({"_id": parse_object_id(product_id)}, PRODUCT_FIELDS)
    if not product:
        raise NotFound("Product not found")
    return oid_to_str(product)


@router.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, db: Database = Depends(get_db)):
    oid = parse_object_id(product_id)
    updates = payload.model_dump(by_alias=True, exclude_none=True)
    updates["updatedAt"] = utcnow()

    res = db[PRODUCTS].update_one({"_id": oid}, {"$set": updates})
    if res.matched_count == 0:
        raise NotFound("Product not found")
    return {"success": True, "message": "Product updated successfully", "productId": product_id}


@router.delete("/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db)):
    """Delete a product together with its reviews and free the owner's slot."""
    oid = parse_object_id(product_id)
    product = db[PRODUCTS].find_one({"_id": oid}, {"owner.email": 1})
    if not product:
        raise NotFound("Product not found")

    reviews = db[REVIEWS].delete_many({"productId": product_id})
    res = db[PRODUCTS].delete_one({"_id": oid})
    if res.deleted_count == 0:
        raise NotFound("Product not found")

    owner_email = (product.get("owner") or {}).get("email")
    if owner_email:
        release_product_slot(db, owner_email)

    return {
        "success": True,
        "message": "Product deleted successfully",
        "reviewsDeleted": reviews.deleted_count,
    }


@router.patch("/products/{product_id}/status")
def update_product_status(product_id: str, payload: StatusUpdate, db: Database = Depends(get_db)):
    oid = parse_object_id(product_id)
    now = utcnow()
    updates: Dict[str, Any] = {"status": payload.status, "updatedAt": now}
    if payload.status == "accepted":
        updates["reviewedAt"] = now

    res = db[PRODUCTS].update_one({"_id": oid}, {"$set": updates})
    if res.matched_count == 0:
        raise NotFound("Product not found")
    return {
        "success": True,
        "message": f"Product {payload.status} successfully",
        "productId": product_id,
        "status": payload.status,
    }


@router.patch("/products/{product_id}/featured")
def update_product_featured(product_id: str, payload: FeaturedUpdate, db: Database = Depends(get_db)):
    oid = parse_object_id(product_id)
    product = db[PRODUCTS].find_one({"_id": oid}, {"status": 1})
    if not product:
        raise NotFound("Product not found")
    if product.get("status") != "accepted":
        raise ValidationError("Only accepted products can be featured")

    db[PRODUCTS].update_one({"_id": oid}, {"$set": {"featured": payload.featured, "updatedAt": utcnow()}})
    return {
        "success": True,
        "message": f"Product {'marked as' if payload.featured else 'unmarked from'} featured",
        "productId": product_id,
        "featured": payload.featured,
    }


@router.post("/products/{product_id}/upvote")
def upvote_product(product_id: str, db: Database = Depends(get_db)):
    product = db[PRODUCTS].find_one_and_update(
        {"_id": parse_object_id(product_id)},
        {"$inc": {"votes": 1}, "$set": {"updatedAt": utcnow()}},
        projection=PRODUCT_FIELDS,
        return_document=ReturnDocument.AFTER,
    )
    if not product:
        raise NotFound("Product not found")
    return oid_to_str(product)


@router.post("/products/{product_id}/report")
def report_product(product_id: str, payload: Optional[ReportIn] = None, db: Database = Depends(get_db)):
    oid = parse_object_id(product_id)
    payload = payload or ReportIn()
    now = utcnow()
    res = db[PRODUCTS].update_one(
        {"_id": oid},
        {
            "$set": {
                "reported": True,
                "reportedBy": payload.user_email,
                "reporterName": payload.user_name,
                "reporterImage": payload.user_photo or "",
                "reportReason": payload.reason,
                "reportedAt": now,
                "updatedAt": now,
            }
        },
    )
    if res.matched_count == 0:
        raise NotFound("Product not found")
    return {"success": True, "message": "Product reported successfully"}


@router.get("/moderator/products")
def list_moderation_queue(db: Database = Depends(get_db)):
    # alphabetical status puts accepted, pending, rejected in that order
    return get_documents(db, PRODUCTS, {}, projection=MODERATION_FIELDS,
                         sort=[("status", 1), ("createdAt", 1)])


# ---------------------- Admin ----------------------

@router.get("/admin/users")
def list_users(db: Database = Depends(get_db)):
    fields = {k: v for k, v in USER_FIELDS.items() if k != "updatedAt"}
    return get_documents(db, USERS, {}, projection=fields, sort=[("createdAt", -1)])


@router.patch("/admin/users/{user_id}/role")
def update_user_role(user_id: str, payload: RoleUpdate, db: Database = Depends(get_db)):
    oid = parse_object_id(user_id, "user")
    res = db[USERS].update_one({"_id": oid}, {"$set": {"role": payload.role, "updatedAt": utcnow()}})
    if res.matched_count == 0:
        raise NotFound("User not found")
    return {
        "success": True,
        "message": f"User role updated to {payload.role}",
        "userId": user_id,
        "role": payload.role,
    }


def one_month_before(moment: datetime) -> datetime:
    """Same day of the previous calendar month, clamped to that month's last day."""
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def statistics_start(window: str, now: datetime) -> Optional[datetime]:
    if window == "week":
        return now - timedelta(days=7)
    if window == "month":
        return one_month_before(now)
    return None


@router.get("/admin/statistics")
def admin_statistics(range: Literal["all", "month", "week"] = "all", db: Database = Depends(get_db)):
    start = statistics_start(range, utcnow())
    created = {"createdAt": {"$gte": start}} if start else {}
    paid = {"paidAt": {"$gte": start}} if start else {}

    products = db[PRODUCTS]
    counts = {status: products.count_documents({"status": status, **created})
              for status in ("accepted", "pending", "rejected")}
    total_users = db[USERS].count_documents(created)
    premium_users = db[USERS].count_documents({"membership.status": PREMIUM, **created})

    revenue = list(db[PAYMENTS].aggregate([
        {"$match": {"status": "completed", **paid}},
        {"$group": {"_id": None, "totalRevenue": {"$sum": "$amount"}}},
    ]))
    total_revenue = revenue[0]["totalRevenue"] if revenue else 0

    return {
        "range": range,
        "products": {**counts, "total": products.count_documents(created)},
        "users": {
            "total": total_users,
            "premium": premium_users,
            "regular": total_users - premium_users,
        },
        "reviews": {"total": db[REVIEWS].count_documents(created)},
        "revenue": {"total": round(total_revenue, 2)},
    }


@router.get("/admin/coupons")
def list_coupons(db: Database = Depends(get_db)):
    return get_documents(db, COUPONS, {}, sort=[("createdAt", -1)])


@router.post("/admin/coupons", status_code=201)
def create_coupon(payload: CouponIn, db: Database = Depends(get_db)):
    doc = payload.to_coupon().model_dump(by_alias=True)
    if db[COUPONS].find_one({"code": doc["code"]}):
        raise Conflict("Coupon code already exists")
    try:
        coupon_id = create_document(db, COUPONS, doc)
    except DuplicateKeyError:
        raise Conflict("Coupon code already exists")

    coupon = db[COUPONS].find_one({"code": doc["code"]})
    return {
        "success": True,
        "message": "Coupon created successfully",
        "couponId": coupon_id,
        "coupon": oid_to_str(coupon),
    }


@router.put("/admin/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: CouponIn, db: Database = Depends(get_db)):
    oid = parse_object_id(coupon_id, "coupon")
    updates = payload.to_coupon().model_dump(by_alias=True, exclude={"used_count"})
    if db[COUPONS].find_one({"code": updates["code"], "_id": {"$ne": oid}}):
        raise Conflict("Coupon code already exists")

    updates["updatedAt"] = utcnow()
    try:
        res = db[COUPONS].update_one({"_id": oid}, {"$set": updates})
    except DuplicateKeyError:
        raise Conflict("Coupon code already exists")
    if res.matched_count == 0:
        raise NotFound("Coupon not found")
    return {"success": True, "message": "Coupon updated successfully", "couponId": coupon_id}


@router.delete("/admin/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, db: Database = Depends(get_db)):
    res = db[COUPONS].delete_one({"_id": parse_object_id(coupon_id, "coupon")})
    if res.deleted_count == 0:
        raise NotFound("Coupon not found")
    return {"success": True, "message": "Coupon deleted successfully"}


# ---------------------- Coupons ----------------------

@router.get("/coupons/validate/{code}")
def check_coupon_code(code: str, db: Database = Depends(get_db)):
    return {"valid": True, "coupon": validate_coupon(db, code)}


@router.post("/coupons/use/{code}")
def use_coupon(code: str, db: Database = Depends(get_db)):
    coupon = redeem_coupon(db, code)
    return {"success": True, "message": "Coupon usage updated", "coupon": coupon}


# ---------------------- Reviews ----------------------

@router.get("/reviews/product/{product_id}")
def list_product_reviews(product_id: str, db: Database = Depends(get_db)):
    return get_documents(db, REVIEWS, {"productId": product_id}, projection=REVIEW_FIELDS,
                         sort=[("createdAt", -1)])


@router.post("/reviews", status_code=201)
def create_review(payload: ReviewIn, db: Database = Depends(get_db)):
    review_id = create_document(db, REVIEWS, Review(**payload.model_dump()))
    return oid_to_str(db[REVIEWS].find_one({"_id": parse_object_id(review_id, "review")}))


# ---------------------- App ----------------------

def install_services(app: FastAPI, services: Services):
    app.state.services = services
    if services.db is not None:
        ensure_indexes(services.db)


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = None
    if app.state.services is None:
        owned = Services.from_settings()
        install_services(app, owned)
    yield
    if owned is not None:
        owned.close()
        app.state.services = None


async def api_error_handler(request: Request, exc: APIError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Missing or invalid fields", "errors": jsonable_encoder(exc.errors())},
    )


async def store_error_handler(request: Request, exc: PyMongoError):
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


def create_app(services: Optional[Services] = None) -> FastAPI:
    settings.configure_logging()

    app = FastAPI(title="StackVault API", lifespan=lifespan)
    app.state.services = None
    if services is not None:
        install_services(app, services)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(PyMongoError, store_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
