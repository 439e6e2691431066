from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentEvent(BaseModel):
    id: str
    type: str
    data: Dict[str, Any] = {}

    @property
    def object(self) -> Dict[str, Any]:
        return self.data.get("object") or {}


class CheckoutMetadata(BaseModel):
    """
    Free-form string metadata attached by the checkout flow.

    Parsed once at the boundary: blank or malformed values become None so
    handlers only ever see present-or-absent fields.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: Optional[int] = Field(None, alias="userId")
    order_id: Optional[int] = Field(None, alias="orderId")

    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = Field(None, alias="zipCode")
    country: Optional[str] = None

    customer_name: Optional[str] = Field(None, alias="customerName")
    customer_email: Optional[str] = Field(None, alias="customerEmail")
    card_last4: Optional[str] = Field(None, alias="cardLast4")
    card_brand: Optional[str] = Field(None, alias="cardBrand")
    ip_address: Optional[str] = Field(None, alias="ipAddress")
    user_agent: Optional[str] = Field(None, alias="userAgent")

    subtotal: Optional[Decimal] = None
    shipping: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    total: Optional[Decimal] = None

    @field_validator("user_id", "order_id", mode="before")
    @classmethod
    def _parse_id(cls, value):
        if value is None:
            return None
        try:
            parsed = int(str(value).strip())
        except ValueError:
            return None
        return parsed if parsed > 0 else None

    @field_validator("subtotal", "shipping", "tax", "total", mode="before")
    @classmethod
    def _parse_amount(cls, value):
        if value is None:
            return None
        try:
            parsed = Decimal(str(value).strip())
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None

    @field_validator(
        "first_name", "last_name", "phone", "street", "city", "state", "zip_code", "country",
        "customer_name", "customer_email", "card_last4", "card_brand", "ip_address", "user_agent",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @classmethod
    def parse(cls, metadata: Optional[Dict[str, Any]]) -> "CheckoutMetadata":
        return cls.model_validate(metadata or {})

    def pricing(self) -> Dict[str, Decimal]:
        fields = {"subtotal": self.subtotal, "shipping": self.shipping, "tax": self.tax, "total": self.total}
        return {name: value for name, value in fields.items() if value is not None}


class ShippingDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = Field(None, alias="zipCode")
    country: Optional[str] = None

    @classmethod
    def from_checkout(cls, meta: CheckoutMetadata, customer_details: Optional[Dict[str, Any]] = None):
        """Metadata wins; a checkout session's customer_details fills the gaps."""
        details = customer_details or {}
        address = details.get("address") or {}
        name_parts = (details.get("name") or "").split()

        return cls(
            first_name=meta.first_name or (name_parts[0] if name_parts else None),
            last_name=meta.last_name or (" ".join(name_parts[1:]) or None),
            phone=meta.phone or details.get("phone") or None,
            street=meta.street or address.get("line1") or None,
            city=meta.city or address.get("city") or None,
            state=meta.state or address.get("state") or None,
            zip_code=meta.zip_code or address.get("postal_code") or None,
            country=meta.country or address.get("country") or None,
        )

    def snapshot(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True, exclude_none=True)


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: Optional[int]
    order_number: str
    customer_id: Optional[int]
    customer_name: str
    customer_email: str
    amount: Decimal
    currency: str
    provider: str
    payment_method: str
    status: str
    transaction_id: str
    provider_transaction_id: str
    fees: Decimal
    net_amount: Decimal
    notes: Optional[str]
    processed_at: Optional[datetime]
    failed_at: Optional[datetime]
    created_at: datetime


class LedgerPage(BaseModel):
    entries: List[LedgerEntryOut]
    total: int
