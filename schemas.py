"""
Database Schemas for the Storefront

Each Pydantic model below is one stored collection (or the input for one).
Collection names are the plural lowercase of the class name:
- Product -> "products"
- Category -> "categories"
- Customer -> "customers"
- Admin -> "admins"
- Session -> "sessions"

Fields are snake_case in Python and camelCase on the wire (createdAt,
interestedProducts). Prices and ratings are decimal strings, never floats.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel
from pydantic.networks import validate_email


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decimal_string(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("must be a decimal string")
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        raise ValueError("must be a decimal string")
    value = value.strip()
    try:
        number = Decimal(value)
    except InvalidOperation:
        raise ValueError("must be a decimal string")
    if not number.is_finite():
        raise ValueError("must be a finite number")
    return value


def _check_price(value: str) -> str:
    if Decimal(value) < 0:
        raise ValueError("price cannot be negative")
    return value


def _check_rating(value: str) -> str:
    if not (0 <= Decimal(value) <= 5):
        raise ValueError("rating must be between 0 and 5")
    return value


def _check_email(value: str) -> str:
    # validated only; the address is stored exactly as sent
    if "<" in value:
        raise ValueError("value is not a bare email address")
    validate_email(value)
    return value


DecimalString = Annotated[str, BeforeValidator(_decimal_string)]
Price = Annotated[DecimalString, AfterValidator(_check_price)]
Rating = Annotated[DecimalString, AfterValidator(_check_rating)]
EmailAddress = Annotated[str, AfterValidator(_check_email)]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class StoredModel(CamelModel):
    """A persisted record: server-assigned id and creation time."""

    id: str
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # SQLite hands back naive datetimes
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# ---------- Products ----------

class ProductCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: str
    price: Price = Field(..., description="Decimal string, e.g. '499.99'")
    category: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1, description="Image URL")
    stock: int = Field(0, ge=0)
    rating: Rating = Field("0", description="Decimal string between 0 and 5")
    featured: bool = False


class ProductUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[Price] = None
    category: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = Field(None, min_length=1)
    stock: Optional[int] = Field(None, ge=0)
    rating: Optional[Rating] = None
    featured: Optional[bool] = None


class Product(StoredModel):
    name: str
    description: str
    price: str
    category: str
    image: str
    stock: int = 0
    rating: str = "0"
    featured: bool = False


class ProductPage(CamelModel):
    products: List[Product]
    total: int


# ---------- Categories ----------

class CategoryCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class CategoryUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None


class Category(StoredModel):
    name: str
    description: Optional[str] = None


# ---------- Customers ----------

class CustomerCreate(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailAddress
    phone: str = Field(..., min_length=1)
    interested_products: List[str] = Field(default_factory=list)


class CustomerUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailAddress] = None
    phone: Optional[str] = Field(None, min_length=1)
    interested_products: Optional[List[str]] = None


class Customer(StoredModel):
    name: str
    email: str
    phone: str
    interested_products: List[str] = Field(default_factory=list)


# ---------- Admins & sessions ----------

class AdminCreate(CamelModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, description="Already-hashed credential")


class Admin(StoredModel):
    username: str
    password: str


class Session(CamelModel):
    id: str
    admin_id: str
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


# ---------- Orders (schema only) ----------

OrderStatus = Literal["Pending (COD)", "Confirmed", "Shipped", "Delivered", "Cancelled"]
PaymentMethod = Literal["cod", "online"]


class OrderItem(CamelModel):
    id: str
    name: str
    price: DecimalString
    quantity: int = Field(..., gt=0)
    image: str
    category: str


class OrderCustomer(CamelModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=6)
    address: str = Field(..., min_length=5)


class OrderCreate(CamelModel):
    items: List[OrderItem] = Field(..., min_length=1)
    customer: OrderCustomer
    payment_method: PaymentMethod = "cod"
    total: DecimalString
    status: OrderStatus = "Pending (COD)"


class Order(OrderCreate, StoredModel):
    pass


# ---------- Patches ----------

def clean_patch(patch: BaseModel, nullable: tuple = ()) -> Dict[str, Any]:
    """Fields the client actually sent, keyed by attribute name.

    Omitted fields keep their stored value. An explicit null is dropped too,
    except for fields named in ``nullable``, where it clears the value.
    """
    sent = patch.model_dump(exclude_unset=True)
    return {k: v for k, v in sent.items() if v is not None or k in nullable}
