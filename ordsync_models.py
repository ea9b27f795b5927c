from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

NULL_DATE = "0001-01-01T00:00:00Z"
NULL_DATE_PREFIX = "0001-01-01"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


# ---------- OMS order record ----------
class OrderAddress(BaseModel):
    model_config = ConfigDict(extra="allow")

    EmailAddress: str | None = None
    FullName: str | None = None
    Company: str | None = None
    Address1: str | None = None
    Address2: str | None = None
    Address3: str | None = None
    Town: str | None = None
    Region: str | None = None
    PostCode: str | None = None
    Country: str | None = None
    CountryId: str | None = None
    PhoneNumber: str | None = None


class OrderGeneralInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    Status: int = 0
    ReferenceNum: str | None = None
    SecondaryReference: str | None = None
    ExternalReferenceNum: str | None = None
    ReceivedDate: str | None = None
    DespatchByDate: str | None = None
    Source: str | None = None
    SubSource: str | None = None
    Location: str | None = None
    NumItems: int = 0
    HoldOrCancel: bool = False

    @field_validator("ReceivedDate", "DespatchByDate", mode="before")
    @classmethod
    def _drop_null_dates(cls, v: Any) -> Any:
        # OMS sends 0001-01-01, with or without zone or fraction, for "no date"
        if v in (None, "") or str(v).startswith(NULL_DATE_PREFIX):
            return None
        return str(v)


class OrderShippingInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    Vendor: str | None = None
    PostalServiceName: str | None = None
    TrackingNumber: str | None = None
    TotalWeight: float = 0
    ItemWeight: float = 0
    PostageCost: float = 0
    PostageCostExTax: float = 0


class OrderCustomerInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    ChannelBuyerName: str | None = None
    Address: OrderAddress = Field(default_factory=OrderAddress)
    BillingAddress: OrderAddress | None = None


class OrderTotalsInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    Subtotal: float = 0
    PostageCost: float = 0
    Tax: float = 0
    TotalCharge: float = 0
    TotalDiscount: float = 0
    PaymentMethod: str | None = None
    Currency: str | None = None
    ConversionRate: float = 1


class OrderItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    ItemId: str | None = None
    SKU: str | None = None
    ItemNumber: str | None = None
    ChannelSKU: str | None = None
    Title: str | None = None
    ItemTitle: str | None = None
    ChannelTitle: str | None = None
    Quantity: int = 1
    PricePerUnit: float | None = None
    UnitCost: float | None = None

    @property
    def sku(self) -> str:
        return (self.SKU or self.ItemNumber or self.ChannelSKU or "").strip()

    @property
    def title(self) -> str | None:
        return self.Title or self.ChannelTitle or self.ItemTitle


class Order(BaseModel):
    """OMS order plus the local sync bookkeeping fields."""

    model_config = ConfigDict(extra="allow")

    OrderId: str
    NumOrderId: int | None = None
    Processed: bool = False
    FulfilmentLocationId: str | None = None
    GeneralInfo: OrderGeneralInfo = Field(default_factory=OrderGeneralInfo)
    ShippingInfo: OrderShippingInfo = Field(default_factory=OrderShippingInfo)
    CustomerInfo: OrderCustomerInfo = Field(default_factory=OrderCustomerInfo)
    TotalsInfo: OrderTotalsInfo = Field(default_factory=OrderTotalsInfo)
    Items: list[OrderItem] = Field(default_factory=list)

    # Local state, never sent by the OMS
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_retries: int = 0
    sync_error: str | None = None
    remote_sales_order_id: str | None = None
    created_at: float | None = None
    updated_at: float | None = None
    last_synced_at: float | None = None

    @field_validator("Items", mode="before")
    @classmethod
    def _items_list(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []

    @property
    def customer_email(self) -> str:
        return (self.CustomerInfo.Address.EmailAddress or "").strip()

    @property
    def customer_name(self) -> str:
        return (self.CustomerInfo.Address.FullName or "").strip()


LOCAL_ORDER_FIELDS = {
    "sync_status",
    "sync_retries",
    "sync_error",
    "remote_sales_order_id",
    "created_at",
    "updated_at",
    "last_synced_at",
}


def order_from_oms(record: dict[str, Any]) -> Order:
    """Build an Order from a raw OMS open-order record, ignoring local fields."""
    data = {k: v for k, v in record.items() if k not in LOCAL_ORDER_FIELDS}
    if not data.get("OrderId") and data.get("pkOrderID"):
        data["OrderId"] = data["pkOrderID"]
    return Order.model_validate(data)


class StockLocation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    StockLocationId: str
    LocationName: str


class StockLevelUpdate(BaseModel):
    SKU: str
    LocationId: str
    Level: int

    @field_validator("Level", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> int:
        # OMS rejects negative stock; available-for-sale can dip below zero in Books
        try:
            level = int(float(v or 0))
        except (TypeError, ValueError):
            level = 0
        return max(0, level)


# ---------- Location mapping ----------
class LocationMapping(BaseModel):
    books_location_id: str = Field(min_length=1)
    books_location_name: str = ""
    oms_location_id: str = Field(min_length=1)
    oms_location_name: str = ""
    updated_at: float | None = None


# ---------- Books ----------
class BooksLocationStock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    location_id: str
    location_name: str = ""
    location_actual_available_for_sale_stock: float = 0

    @field_validator("location_actual_available_for_sale_stock", mode="before")
    @classmethod
    def _none_is_zero(cls, v: Any) -> Any:
        return 0 if v in (None, "") else v


class BooksItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    item_id: str
    name: str | None = None
    sku: str | None = None
    rate: float | None = None
    status: str | None = None
    tax_id: str | None = None
    locations: list[BooksLocationStock] = Field(default_factory=list)

    @field_validator("item_id", mode="before")
    @classmethod
    def _id_str(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator("locations", mode="before")
    @classmethod
    def _locations_list(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []


class StockUpdateItem(BaseModel):
    sku: str
    quantity: float
    books_location_id: str
    books_location_name: str = ""


class ContactAddress(BaseModel):
    attention: str | None = None
    address: str = ""
    street2: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = ""
    phone: str = ""


class ContactPerson(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    phone: str | None = None


class ContactCreate(BaseModel):
    contact_name: str = Field(min_length=1)
    company_name: str = ""
    contact_type: str = "customer"
    email: str = ""
    phone: str = ""
    billing_address: ContactAddress = Field(default_factory=ContactAddress)
    shipping_address: ContactAddress = Field(default_factory=ContactAddress)
    contact_persons: list[ContactPerson] = Field(default_factory=list)


class ResolvedLineItem(BaseModel):
    item_id: str
    sku: str
    name: str | None = None
    rate: float = 0
    quantity: int = 1
    tax_id: str | None = None


class SalesOrderLine(BaseModel):
    item_id: str
    name: str | None = None
    rate: float = 0
    quantity: int = Field(default=1, ge=1)
    tax_id: str | None = None
    sku: str | None = None
    unit: str | None = "pcs"


class SalesOrderCreate(BaseModel):
    customer_id: str = Field(min_length=1)
    date: str
    line_items: list[SalesOrderLine] = Field(min_length=1)
    currency_code: str = "EUR"
    reference_number: str
    notes: str | None = None
    is_inclusive_tax: bool = True
    shipping_charge: float | None = None
    bcy_shipping_charge: float | None = None


# ---------- Inbound webhooks ----------
class WebhookLineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    item_id: str | None = None
    sku: str | None = None

    @field_validator("item_id", mode="before")
    @classmethod
    def _id_str(cls, v: Any) -> Any:
        return str(v) if v is not None else v


class WebhookResourcePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    line_items: list[WebhookLineItem] = Field(default_factory=list)


class ShipmentPackage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    package_id: str | None = None
    tracking_number: str | None = None
    shipment_order: dict[str, Any] | None = None

    @property
    def tracking(self) -> str:
        value = self.tracking_number or (self.shipment_order or {}).get("tracking_number") or ""
        return str(value).strip()


class ShipmentWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    salesorder_id: str = Field(min_length=1)
    packages: list[ShipmentPackage] = Field(default_factory=list)


# ---------- Results ----------
class PollResult(BaseModel):
    total_open_orders: int = 0
    new_orders: int = 0
    ready_orders: int = 0
    skipped_empty_orders: int = 0
    saved_orders: int = 0
    failed_batches: int = 0


class SyncCycleResult(BaseModel):
    pending_orders: int = 0
    synced_orders: int = 0
    failed_orders: int = 0


class StrategyResult(BaseModel):
    resource_type: str
    line_items: int = 0
    successful_skus: list[str] = Field(default_factory=list)
    failed_skus: list[str] = Field(default_factory=list)
    skipped_skus: list[str] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    status_code: int = 200
    success: bool = True
    message: str
    error: str | None = None
    details: list[StrategyResult] = Field(default_factory=list)
    timestamp: str


class InventorySyncResult(BaseModel):
    oms_skus: int = 0
    books_batches: int = 0
    failed_batches: int = 0
    failed_pages: int = 0
    updated_lines: int = 0
    failed_lines: int = 0
    unmapped_locations: int = 0
