"""Customer and order payload schemas shared by the API and the consumers."""

import re
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^[+]?[(]?[0-9]{3}[)]?[-\s.]?[0-9]{3}[-\s.]?[0-9]{4,6}$")

# Allowed drift between totalAmount and sum(price * quantity)
TOTAL_TOLERANCE = 0.01


class PayloadModel(BaseModel):
    """Base for wire payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    def to_message(self) -> Dict[str, Any]:
        """Serialize to the JSON-safe camelCase dict published on the queue."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class CustomerInput(PayloadModel):
    """A customer record; email is the natural key."""

    first_name: str = Field(min_length=1, max_length=255)
    last_name: str = Field(min_length=1, max_length=255)
    email: str = Field(max_length=255)
    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email format")
        return v.lower()

    @field_validator('phone')
    @classmethod
    def validate_phone(cls, v):
        if v is not None and not PHONE_PATTERN.match(v):
            raise ValueError("Invalid phone number format")
        return v


class OrderItem(PayloadModel):
    product_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)


class ShippingAddress(PayloadModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class OrderInput(PayloadModel):
    """An order record. ``total_amount`` must match the line items."""

    customer_id: uuid.UUID
    items: List[OrderItem] = Field(min_length=1)
    total_amount: float = Field(ge=0)
    payment_method: str = Field(min_length=1)
    status: Literal["pending", "processing", "completed", "cancelled"] = "pending"
    payment_status: Literal["unpaid", "paid", "refunded"] = "unpaid"
    shipping_address: Optional[ShippingAddress] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('total_amount')
    @classmethod
    def check_total(cls, v, info: ValidationInfo):
        items = info.data.get('items')
        if items is None:
            # items already failed validation
            return v
        calculated = sum(item.price * item.quantity for item in items)
        if abs(calculated - v) >= TOTAL_TOLERANCE:
            raise ValueError("Total amount does not match with the sum of item prices")
        return v


def format_errors(exc: ValidationError, prefix: str = "") -> List[Dict[str, str]]:
    """
    Flatten a pydantic ValidationError into ``[{field, message}]``.

    Locations use the wire (camelCase) names with list indices in brackets,
    e.g. ``items[0].quantity``. ``prefix`` is prepended for bulk payloads.
    """
    errors = []
    for error in exc.errors():
        path = prefix
        for part in error.get("loc", ()):
            if isinstance(part, int):
                path += f"[{part}]"
            else:
                path = f"{path}.{part}" if path else str(part)
        message = error.get("msg", "Invalid value")
        # pydantic prefixes messages raised from validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"field": path or "body", "message": message})
    return errors
