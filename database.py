"""
Database helpers

The Mongo client and the payment gateway live on a ``Services`` object that
is built at startup and closed at shutdown. Handlers receive it through
FastAPI dependencies instead of importing module-level globals.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import settings
from errors import ValidationError
from payments import StripeGateway

logger = logging.getLogger(__name__)

USERS = "user"
PRODUCTS = "product"
PAYMENTS = "payment"
REVIEWS = "review"
COUPONS = "coupon"


def utcnow() -> datetime:
    # naive UTC, the same shape pymongo hands back for stored dates
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_indexes(db: Database):
    db[USERS].create_index([("email", ASCENDING)], unique=True)
    db[COUPONS].create_index([("code", ASCENDING)], unique=True)
    db[PRODUCTS].create_index([("owner.email", ASCENDING)])
    db[REVIEWS].create_index([("productId", ASCENDING)])


class Services:
    """Per-process collaborators: the document store and the payment gateway."""

    def __init__(self, db: Optional[Database] = None, payments=None, client: Optional[MongoClient] = None):
        self.db = db
        self.payments = payments
        self.client = client

    @classmethod
    def from_settings(cls) -> "Services":
        client = None
        db = None
        if settings.DATABASE_URL:
            client = MongoClient(settings.DATABASE_URL)
            db = client[settings.DATABASE_NAME]
            logger.info("Connected to MongoDB database %s", settings.DATABASE_NAME)
        else:
            logger.warning("DATABASE_URL not set; store endpoints are disabled")

        payments = None
        if settings.STRIPE_API_KEY:
            payments = StripeGateway(settings.STRIPE_API_KEY, currency=settings.PAYMENT_CURRENCY)
        else:
            logger.warning("STRIPE_API_KEY not set; payment intents are disabled")

        return cls(db=db, payments=payments, client=client)

    def close(self):
        if self.client is not None:
            self.client.close()
            self.client = None


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with createdAt/updatedAt and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True)
    else:
        data_dict = data.copy()

    now = utcnow()
    data_dict.setdefault("createdAt", now)
    data_dict["updatedAt"] = now

    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  projection: Optional[Dict[str, Any]] = None, sort: Optional[List] = None,
                  skip: int = 0, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return [oid_to_str(d) for d in cursor]


def oid_to_str(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


def parse_object_id(value: str, label: str = "product") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {label} ID")
    return ObjectId(value)
