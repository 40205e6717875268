"""
Database Schemas

Define your MongoDB collection schemas here using Pydantic models.
Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Product -> "product" collection
- Payment -> "payment" collection
- Review -> "review" collection
- Coupon -> "coupon" collection

Stored documents and JSON bodies use camelCase keys (``owner.email``,
``membership.status``, ``expiryDate``); Python attributes stay snake_case.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ProductStatus = Literal["pending", "accepted", "rejected"]
Role = Literal["user", "moderator", "admin"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ---------------------- Collections ----------------------

class Membership(CamelModel):
    status: Literal["none", "premium"] = "none"
    type: Optional[str] = None
    purchased_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    amount: Optional[float] = None


class User(CamelModel):
    """
    Users collection schema
    Collection name: "user"
    """
    email: str = Field(..., min_length=1, description="Unique email address, stored as sent")
    name: str = Field("", description="Display name")
    photo: str = Field("", description="Avatar URL")
    bio: str = ""
    auth_provider: str = Field("password", description="password, google, github, ...")
    role: Role = "user"
    membership: Membership = Field(default_factory=Membership)
    product_count: int = Field(0, ge=0, description="Submission slots in use")


class Owner(CamelModel):
    name: str = ""
    email: str = Field(..., min_length=1)
    photo: str = ""


class Product(CamelModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str
    image: str
    description: str
    tags: List[str] = []
    external_link: Optional[str] = None
    owner: Owner
    votes: int = Field(0, ge=0)
    status: ProductStatus = "pending"
    featured: bool = False
    reported: bool = False


class Payment(CamelModel):
    """
    Append-only payment history
    Collection name: "payment"
    """
    email: str
    amount: float = Field(..., ge=0)
    transaction_id: str
    membership_type: str = "premium"
    paid_at: datetime
    status: str = "completed"
    service: str = "membership_upgrade"


class Review(CamelModel):
    """
    Reviews collection schema
    Collection name: "review"
    """
    product_id: str
    reviewer_name: str = ""
    reviewer_image: str = ""
    reviewer_email: Optional[str] = None
    description: str
    rating: int = Field(..., ge=1, le=5)


class Coupon(CamelModel):
    """
    Coupons collection schema
    Collection name: "coupon"
    """
    code: str = Field(..., description="Unique, upper-cased coupon code")
    description: str
    discount_amount: float = Field(..., gt=0)
    expiry_date: datetime
    max_uses: Optional[int] = Field(None, description="None means unlimited")
    min_order_amount: Optional[float] = None
    is_active: bool = True
    used_count: int = Field(0, ge=0)


# ---------------------- Request bodies ----------------------

class UserIn(CamelModel):
    email: str = Field(..., min_length=1)
    name: Optional[str] = None
    photo: Optional[str] = None
    bio: Optional[str] = None
    auth_provider: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def naive_created_at(cls, value):
        return _naive_utc(value)


class PaymentIntentIn(CamelModel):
    amount: float = Field(..., gt=0)
    user_email: Optional[str] = None
    coupon_code: Optional[str] = None


class PaymentIn(CamelModel):
    email: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    transaction_id: str = Field(..., min_length=1)
    membership_type: Optional[str] = None


class ProductIn(CamelModel):
    name: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    owner: Owner
    tags: List[str] = []
    external_link: Optional[str] = None


class ProductUpdate(CamelModel):
    name: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    tags: Optional[List[str]] = None
    external_link: Optional[str] = None


class StatusUpdate(BaseModel):
    status: ProductStatus


class FeaturedUpdate(BaseModel):
    featured: bool


class ReportIn(CamelModel):
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    user_photo: Optional[str] = None
    reason: Optional[str] = None


class RoleUpdate(BaseModel):
    role: Role


class CouponIn(CamelModel):
    code: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    discount_amount: float = Field(..., gt=0)
    expiry_date: datetime
    max_uses: Optional[int] = Field(None, ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    is_active: bool = True

    @field_validator("expiry_date")
    @classmethod
    def naive_expiry_date(cls, value):
        return _naive_utc(value)

    def to_coupon(self, used_count: int = 0) -> Coupon:
        return Coupon(
            code=self.code.upper(),
            description=self.description,
            discount_amount=self.discount_amount,
            expiry_date=self.expiry_date,
            # 0 and missing both mean "no cap"
            max_uses=self.max_uses or None,
            min_order_amount=self.min_order_amount or None,
            is_active=self.is_active,
            used_count=used_count,
        )


class ReviewIn(CamelModel):
    product_id: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    reviewer_name: str = ""
    reviewer_image: str = ""
    reviewer_email: Optional[str] = None
