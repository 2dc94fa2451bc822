"""
Database Schemas for the Storefront

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
Stored field names are the camelCase aliases; references to other
collections are ObjectIds tagged with their target model via Ref().
"""
from typing import Annotated, Any, Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field


def to_object_id(value):
    if value is None or isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    raise ValueError(f"Invalid ObjectId: {value!r}")


PyObjectId = Annotated[Any, BeforeValidator(to_object_id)]


def Ref(target: str, default: Any = ..., **kwargs) -> Any:
    """Field holding the ObjectId of a document in another collection."""
    return Field(default, json_schema_extra={"ref": target}, **kwargs)


class Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class User(Document):
    email: EmailStr = Field(..., description="Identity key, unique")
    name: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")
    is_seller: bool = Field(False, alias="isSeller")
    cart_items: Dict[str, int] = Field(default_factory=dict, alias="cartItems")


class Address(Document):
    user_id: str = Field(..., alias="userId")
    full_name: str = Field(..., alias="fullName")
    phone_number: str = Field(..., alias="phoneNumber")
    pincode: str
    area: str
    city: str
    state: str


class Product(Document):
    user_id: str = Field(..., alias="userId")
    name: str
    description: Optional[str] = None
    price: float
    offer_price: float = Field(..., alias="offerPrice")
    category: str
    image: List[str] = Field(..., min_length=1, description="Image URLs in display order")


class OrderItem(Document):
    product: Optional[PyObjectId] = Ref("Product", None)
    quantity: Optional[int] = None


class Order(Document):
    user_id: str = Field(..., alias="userId")
    items: List[OrderItem] = Field(default_factory=list)
    amount: float
    address: PyObjectId = Ref("Address")
    status: str = "Order Placed"
