"""
Database Schemas for the College Stationery service

Each stored Pydantic model maps to a MongoDB collection whose name is the lowercase of the class name.
Use these models to validate incoming data and to keep a consistent structure in the DB.
Request models accept the camelCase field names the admin frontend sends as well as snake_case.
"""
from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

PaymentMethod = Literal["cash", "online"]


class _Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Catalog and registries (maintained outside this service)

class SetItem(_Document):
    """
    One component of a set product (embedded in Product)
    """
    product: ObjectId = Field(..., description="Component product _id")
    quantity: int = Field(1, ge=1, description="Units of the component per one set")


class Product(_Document):
    """
    Catalog products, plain items and bundled sets
    Collection: "product"
    """
    name: str = Field(..., description="Product name")
    price: float = Field(..., ge=0, description="Unit price")
    stock: int = Field(0, ge=0, description="Units in stock, not authoritative for sets")
    is_set: bool = Field(False, description="Whether this product is a bundle of other products")
    set_items: List[SetItem] = Field(default_factory=list)


class Student(_Document):
    """
    Students receiving stationery
    Collection: "student"
    """
    name: str
    student_id: str = Field(..., description="College-provided roll number")
    course: str
    year: int
    branch: str = ""
    items: dict = Field(default_factory=dict, description="Product _id (as string) -> received")
    item_names: dict = Field(default_factory=dict, description="Product _id (as string) -> name when received")
    paid: bool = False
    paid_at: Optional[datetime] = None


class Vendor(_Document):
    """
    Suppliers that stock entries are purchased from
    Collection: "vendor"
    """
    name: str
    contact_person: str = ""
    email: str = ""
    phone: str = ""


# Sales

class StudentSnapshot(_Document):
    """Student identity copied into a transaction at sale time"""
    user_id: ObjectId
    name: str
    student_id: str
    course: str
    year: int
    branch: str = ""


class SetComponent(_Document):
    """Component stock consumed by one set line"""
    product_id: ObjectId
    name: str
    quantity: int = Field(..., ge=0)


class TransactionItem(_Document):
    """
    Line item within a transaction (embedded in Transaction)
    Not a collection by itself.
    """
    product_id: ObjectId
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    is_set: bool = False
    status: Literal["fulfilled", "partial"] = "fulfilled"
    set_components: List[SetComponent] = Field(default_factory=list)


class Transaction(_Document):
    """
    Sales to students
    Collection: "transaction"
    """
    transaction_id: str
    student: StudentSnapshot
    items: List[TransactionItem]
    total_amount: float = Field(..., ge=0)
    payment_method: PaymentMethod = "cash"
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    transaction_date: datetime
    remarks: str = ""
    revision: int = 0


class TransactionItemIn(_Request):
    product_id: str = Field(..., alias="productId")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    name: Optional[str] = None


class TransactionCreate(_Request):
    student_id: str = Field(..., alias="studentId")
    items: List[TransactionItemIn] = Field(..., min_length=1)
    payment_method: Optional[PaymentMethod] = Field(None, alias="paymentMethod")
    is_paid: bool = Field(False, alias="isPaid")
    remarks: Optional[str] = None


class TransactionUpdate(_Request):
    items: Optional[List[TransactionItemIn]] = None
    payment_method: Optional[PaymentMethod] = Field(None, alias="paymentMethod")
    is_paid: Optional[bool] = Field(None, alias="isPaid")
    remarks: Optional[str] = None


# Purchases

class StockEntry(_Document):
    """
    Purchases that added stock to a product
    Collection: "stockentry"
    """
    product: ObjectId
    vendor: ObjectId
    quantity: int = Field(..., ge=1)
    invoice_number: str = ""
    invoice_date: datetime
    purchase_price: float = Field(0, ge=0)
    total_cost: float = Field(0, ge=0)
    remarks: str = ""
    created_by: str = "System"


class StockEntryCreate(_Request):
    product: str
    vendor: str
    quantity: int = Field(..., ge=1)
    invoice_number: Optional[str] = Field(None, alias="invoiceNumber")
    invoice_date: Optional[datetime] = Field(None, alias="invoiceDate")
    purchase_price: float = Field(0, ge=0, alias="purchasePrice")
    remarks: Optional[str] = None
    created_by: Optional[str] = Field(None, alias="createdBy")


class StockEntryUpdate(_Request):
    quantity: Optional[int] = Field(None, ge=1)
    invoice_number: Optional[str] = Field(None, alias="invoiceNumber")
    invoice_date: Optional[datetime] = Field(None, alias="invoiceDate")
    purchase_price: Optional[float] = Field(None, ge=0, alias="purchasePrice")
    remarks: Optional[str] = None
