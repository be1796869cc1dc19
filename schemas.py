"""
Plantify Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the lowercase
class name. Example: class Product -> collection "product".

Documents are stored with camelCase keys (the wire format the web client uses); Python code
addresses fields by their snake_case attribute names. These schemas are used for validation
before inserting/updating documents.
"""
import re
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional

from bson import ObjectId
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    PlainSerializer,
    WithJsonSchema,
    field_validator,
)
from pydantic.alias_generators import to_camel

from database import to_object_id


def _validate_object_id(value: Any) -> ObjectId:
    oid = to_object_id(value)
    if oid is None:
        raise ValueError("Invalid ObjectId")
    return oid


PyObjectId = Annotated[
    ObjectId,
    BeforeValidator(_validate_object_id),
    PlainSerializer(str, when_used="json"),
    WithJsonSchema({"type": "string"}),
]

Role = Literal["buyer", "seller", "admin"]
BusinessType = Literal["individual", "partnership", "company", "other"]
Category = Literal["fertilizer", "seed", "plant", "tool", "accessory"]
ItemStatus = Literal["pending", "shipped", "delivered", "cancelled"]
OrderStatus = Literal["processing", "completed", "cancelled"]
PaymentMethod = Literal["COD", "Online"]
PaymentStatus = Literal["pending", "completed", "failed"]

PHONE_RE = re.compile(r"^[6-9]\d{9}$")
POSTAL_CODE_RE = re.compile(r"^\d{5,6}$")
GST_RE = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z]{1}[1-9A-Z]{1}Z[0-9A-Z]{1}$")
IMAGE_URL_RE = re.compile(r"^https?://.+")

DEFAULT_PRODUCT_IMAGE = "https://www.shutterstock.com/image-vector/no-item-found-vector-outline-260nw-2082716986.jpg"
DEFAULT_PROFILE_IMAGE = "https://cdn-icons-png.flaticon.com/512/3135/3135715.png"


class Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        str_strip_whitespace=True,
    )


class User(Document):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., min_length=2, description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercased")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = "buyer"
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    profile_image: Optional[str] = None
    profile_image_id: Optional[str] = None
    shop_name: Optional[str] = None
    business_type: BusinessType = "other"
    gst_number: Optional[str] = None
    is_profile_complete: bool = False
    reset_password_token: Optional[str] = None
    reset_password_expire: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v: Optional[str]) -> Optional[str]:
        if v and not PHONE_RE.match(v):
            raise ValueError("Please enter a valid 10-digit phone number")
        return v

    @field_validator("postal_code")
    @classmethod
    def check_postal_code(cls, v: Optional[str]) -> Optional[str]:
        if v and not POSTAL_CODE_RE.match(v):
            raise ValueError("Please enter a valid postal code")
        return v

    @field_validator("gst_number")
    @classmethod
    def check_gst_number(cls, v: Optional[str]) -> Optional[str]:
        if v and not GST_RE.match(v):
            raise ValueError("Invalid GST number")
        return v

    def profile_is_complete(self) -> bool:
        general = [self.name, self.phone, self.address, self.city, self.state, self.postal_code]
        if not all(f and str(f).strip() for f in general):
            return False
        if self.role == "seller":
            seller = [self.shop_name, self.business_type, self.gst_number]
            if not all(f and str(f).strip() for f in seller):
                return False
        return True


class Rating(Document):
    user_id: PyObjectId
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    created_at: Optional[datetime] = None


class Product(Document):
    """
    Products collection schema
    Collection name: "product"
    """
    seller_id: PyObjectId
    name: str = Field(..., min_length=2, description="Product name")
    description: str = Field(..., min_length=10, description="Product description")
    category: Category
    price: float = Field(..., ge=0, description="Price in INR")
    stock: int = Field(..., ge=0, description="Units in stock")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    ratings: List[Rating] = Field(default_factory=list)

    @field_validator("price")
    @classmethod
    def two_decimals(cls, v: float) -> float:
        if round(v, 2) != v:
            raise ValueError("Price can have up to two decimal places")
        return v

    @field_validator("images")
    @classmethod
    def check_image_urls(cls, v: List[str]) -> List[str]:
        for url in v:
            if not IMAGE_URL_RE.match(url):
                raise ValueError("Please provide valid Cloudinary or HTTP image URLs")
        return v


def average_rating(ratings: List[dict]) -> float:
    if not ratings:
        return 0
    total = sum(r.get("rating", 0) for r in ratings)
    return round(total / len(ratings), 1)


class CartItem(Document):
    product_id: PyObjectId
    seller_id: PyObjectId
    quantity: int = Field(1, ge=1)
    price_at_time: float = Field(..., ge=0)  # captured price at add-to-cart time


class Cart(Document):
    """
    Carts collection schema
    Collection name: "cart"
    """
    user_id: PyObjectId
    items: List[CartItem] = Field(default_factory=list)


class OrderItem(Document):
    id: PyObjectId = Field(default_factory=ObjectId, alias="_id")
    product_id: PyObjectId
    seller_id: Optional[PyObjectId] = None
    quantity: int = Field(..., ge=1)
    price_at_time: float = Field(..., ge=0)
    item_status: ItemStatus = "pending"
    can_reorder: bool = False


class Order(Document):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: PyObjectId
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    shipping_address: str = Field(..., min_length=1)
    payment_method: PaymentMethod = "COD"
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "processing"
    version: int = 0
