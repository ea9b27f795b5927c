from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any

import structlog
from pydantic import ValidationError

from ordsync_http import ApiClient, NotFoundError
from ordsync_models import BooksItem, ContactCreate, SalesOrderCreate, StockUpdateItem

logger = structlog.get_logger()


class BooksItemNotFoundError(NotFoundError):
    def __init__(self, ref: str, message: str | None = None):
        super().__init__(message or f"No Books item found for {ref}", operation="items")
        self.ref = ref


def clean_item_ids(item_ids: Iterable[Any]) -> list[str]:
    """Strip, drop blanks and deduplicate while keeping first-seen order."""
    seen: dict[str, None] = {}
    for raw in item_ids:
        val = str(raw if raw is not None else "").strip()
        if val:
            seen.setdefault(val, None)
    return list(seen)


def get_item_ids(line_items: Iterable[Any]) -> list[str]:
    ids = []
    for li in line_items:
        value = li.get("item_id") if isinstance(li, dict) else getattr(li, "item_id", None)
        if value:
            ids.append(str(value))
    return ids


def stock_by_location(items: Iterable[BooksItem], target_location_ids: list[str]) -> list[StockUpdateItem]:
    """One entry per (item, target warehouse); quantities are never summed."""
    targets = set(target_location_ids)
    updates: list[StockUpdateItem] = []
    for item in items:
        if not item.sku:
            continue
        for loc in item.locations:
            if loc.location_id not in targets:
                continue
            updates.append(
                StockUpdateItem(
                    sku=item.sku,
                    quantity=loc.location_actual_available_for_sale_stock,
                    books_location_id=loc.location_id,
                    books_location_name=loc.location_name,
                )
            )
    return updates


class BooksClient(ApiClient):
    """Accounting REST client; every call carries the organization id."""

    name = "books"

    def __init__(self, *args: Any, organization_id: str, item_batch_size: int = 50, **kw: Any):
        super().__init__(*args, **kw)
        self.organization_id = organization_id
        self.item_batch_size = item_batch_size

    def auth_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Zoho-oauthtoken {token}", "Accept": "application/json"}

    def default_params(self) -> dict[str, Any]:
        return {"organization_id": self.organization_id}

    # ---------- Contacts ----------
    async def search_contacts_by_email(self, email: str) -> list[dict[str, Any]]:
        email = (email or "").strip()
        if not email:
            return []
        data = await self.request(
            "GET",
            "contacts",
            operation="SearchContacts",
            params={"status": "active", "email_startswith": email},
        )
        contacts = data.get("contacts") if isinstance(data, dict) else None
        return contacts if isinstance(contacts, list) else []

    async def find_contact_id_by_email(self, email: str) -> str | None:
        contacts = await self.search_contacts_by_email(email)
        if not contacts:
            return None
        if len(contacts) > 1:
            logger.info("Several contacts share this email, using the first", email=email, matches=len(contacts))
        return str(contacts[0].get("contact_id") or "") or None

    async def create_contact(self, contact: ContactCreate) -> str:
        data = await self.request(
            "POST", "contacts", operation="CreateContact", json=contact.model_dump(exclude_none=True)
        )
        contact_id = str((data.get("contact") or {}).get("contact_id") or "")
        if not contact_id:
            raise RuntimeError(f"Books created a contact but returned no id: {data}")
        logger.info("Created Books contact", contact_id=contact_id, contact_name=contact.contact_name)
        return contact_id

    async def delete_contact(self, contact_id: str) -> None:
        if not (contact_id or "").strip():
            return
        await self.request("DELETE", f"contacts/{contact_id}", operation="DeleteContact")
        logger.info("Rolled back Books contact", contact_id=contact_id)

    # ---------- Items ----------
    async def get_item_by_sku(self, sku: str) -> BooksItem:
        data = await self.request("GET", "items", operation="GetItemBySku", params={"sku": sku})
        items = data.get("items") if isinstance(data, dict) else None
        if not items:
            raise BooksItemNotFoundError(f"sku {sku}")
        return BooksItem.model_validate(items[0])

    async def get_item(self, item_id: str) -> BooksItem:
        data = await self.request("GET", f"items/{item_id}", operation="GetItem")
        item = data.get("item") if isinstance(data, dict) else None
        if not item:
            raise BooksItemNotFoundError(f"item id {item_id}")
        return BooksItem.model_validate(item)

    async def _item_details_batch(self, batch: list[str]) -> list[BooksItem]:
        data = await self.request(
            "GET", "itemdetails", operation="GetItemDetails", params={"item_ids": ",".join(batch)}
        )
        items: list[BooksItem] = []
        for raw in (data.get("items") if isinstance(data, dict) else None) or []:
            try:
                items.append(BooksItem.model_validate(raw))
            except ValidationError as e:
                logger.warning("Skipping malformed Books item", validation_errors=e.errors())
        return items

    async def get_item_details(self, item_ids: Iterable[Any]) -> list[BooksItem]:
        ids = clean_item_ids(item_ids)
        if not ids:
            logger.warning("Item details requested with no usable item ids")
            return []
        batches = [ids[i : i + self.item_batch_size] for i in range(0, len(ids), self.item_batch_size)]
        results = await asyncio.gather(*(self._item_details_batch(b) for b in batches))
        return [item for batch in results for item in batch]

    # ---------- Sales orders ----------
    async def create_sales_order(self, order: SalesOrderCreate) -> dict[str, Any]:
        data = await self.request(
            "POST", "salesorders", operation="CreateSalesOrder", json=order.model_dump(exclude_none=True)
        )
        so = data.get("salesorder") if isinstance(data, dict) else None
        if not so or not so.get("salesorder_id"):
            raise RuntimeError(f"Books created a sales order but returned no id: {data}")
        logger.info(
            "Sales order created",
            salesorder_id=so["salesorder_id"],
            salesorder_number=so.get("salesorder_number"),
        )
        return so

    async def approve_sales_order(self, salesorder_id: str) -> None:
        await self.request("POST", f"salesorders/{salesorder_id}/approve", operation="ApproveSalesOrder", json={})
        logger.info("Sales order approved", salesorder_id=salesorder_id)

    async def confirm_sales_order(self, salesorder_id: str) -> None:
        await self.request(
            "POST", f"salesorders/{salesorder_id}/status/confirmed", operation="ConfirmSalesOrder", json={}
        )
        logger.info("Sales order confirmed", salesorder_id=salesorder_id)
