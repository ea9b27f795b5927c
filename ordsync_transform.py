from __future__ import annotations

import re
from datetime import date, datetime

import structlog
from pydantic import ValidationError

from ordsync_models import (
    ContactAddress,
    ContactCreate,
    ContactPerson,
    Order,
    OrderAddress,
    ResolvedLineItem,
    SalesOrderCreate,
    SalesOrderLine,
)

logger = structlog.get_logger()

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")


def _clean(value: str | None) -> str:
    return (value or "").strip()


# ---------- Contact ----------
def contact_name_for(order: Order) -> str:
    addr = order.CustomerInfo.Address
    full = _clean(addr.FullName)
    company = _clean(addr.Company)
    if full and company:
        return f"{full} ({company})"
    return full or company or f"Customer {order.OrderId}"


def _contact_address(addr: OrderAddress | None, attention: str) -> ContactAddress:
    addr = addr or OrderAddress()
    return ContactAddress(
        attention=attention,
        address=_clean(addr.Address1),
        street2=_clean(addr.Address2) or _clean(addr.Address3),
        city=_clean(addr.Town),
        state=_clean(addr.Region),
        zip=_clean(addr.PostCode),
        country=_clean(addr.Country),
        phone=_clean(addr.PhoneNumber),
    )


def build_contact(order: Order) -> ContactCreate:
    """Books customer contact from the order's customer block."""
    info = order.CustomerInfo
    name = contact_name_for(order)
    email = _clean(info.Address.EmailAddress)
    phone = _clean(info.Address.PhoneNumber)
    first, _, last = _clean(info.Address.FullName).partition(" ")

    persons = []
    if email or phone:
        persons.append(
            ContactPerson(
                first_name=first,
                last_name=last.strip(),
                email=email or None,
                phone=phone or None,
            )
        )
    try:
        return ContactCreate(
            contact_name=name,
            company_name=_clean(info.Address.Company),
            email=email,
            phone=phone,
            # Billing prefers the explicit billing block, shipping the delivery address
            billing_address=_contact_address(info.BillingAddress or info.Address, name),
            shipping_address=_contact_address(info.Address, name),
            contact_persons=persons,
        )
    except ValidationError as e:
        logger.error("Invalid contact data", order_id=order.OrderId, validation_errors=e.errors())
        raise


# ---------- Sales order ----------
def format_order_date(value: str | None, today: date | None = None) -> str:
    """YYYY-MM-DD from an OMS timestamp; today when missing or unparseable."""
    fallback = (today or date.today()).isoformat()
    if not value:
        return fallback
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        m = _DATE_PREFIX.match(value)
        return m.group(0) if m else fallback


def map_currency(currency: str | None, default: str = "EUR") -> str:
    return _clean(currency).upper() or default


def build_reference_number(order: Order, prefix: str = "EXT-") -> str:
    info = order.GeneralInfo
    ref = _clean(info.ExternalReferenceNum) or _clean(info.ReferenceNum)
    if ref:
        return f"{prefix}{ref}"
    return f"OMS-{order.NumOrderId if order.NumOrderId is not None else order.OrderId}"


def build_order_notes(order: Order) -> str | None:
    info = order.GeneralInfo
    notes = []
    if info.Source:
        notes.append(f"Source: {info.Source}")
    if info.SubSource and info.SubSource != info.Source:
        notes.append(f"Channel: {info.SubSource}")
    if info.ExternalReferenceNum:
        notes.append(f"External Ref: {info.ExternalReferenceNum}")
    if info.SecondaryReference and info.SecondaryReference != info.ReferenceNum:
        notes.append(f"Secondary Ref: {info.SecondaryReference}")
    payment = order.TotalsInfo.PaymentMethod
    if payment and payment != "Default":
        notes.append(f"Payment: {payment}")
    service = order.ShippingInfo.PostalServiceName
    if service and service != "Default":
        notes.append(f"Shipping: {service}")
    return " | ".join(notes) if notes else None


def shipping_cost(order: Order) -> float:
    return float(order.ShippingInfo.PostageCost or order.TotalsInfo.PostageCost or 0)


def build_sales_order(
    order: Order,
    customer_id: str,
    lines: list[ResolvedLineItem],
    reference_prefix: str = "EXT-",
    today: date | None = None,
) -> SalesOrderCreate:
    """Map an order plus its resolved Books items to a sales-order payload."""
    try:
        so = SalesOrderCreate(
            customer_id=customer_id,
            date=format_order_date(order.GeneralInfo.ReceivedDate, today),
            line_items=[
                SalesOrderLine(
                    item_id=li.item_id,
                    name=li.name,
                    rate=li.rate,
                    quantity=li.quantity,
                    tax_id=li.tax_id,
                    sku=li.sku,
                )
                for li in lines
            ],
            currency_code=map_currency(order.TotalsInfo.Currency),
            reference_number=build_reference_number(order, reference_prefix),
            notes=build_order_notes(order),
            is_inclusive_tax=True,
        )
    except ValidationError as e:
        logger.error("Invalid sales order data", order_id=order.OrderId, validation_errors=e.errors())
        raise

    charge = shipping_cost(order)
    if charge > 0:
        so.shipping_charge = charge
        so.bcy_shipping_charge = charge
    return so
