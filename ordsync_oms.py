from __future__ import annotations

import asyncio
from typing import Any

import structlog
from pydantic import ValidationError

from ordsync_http import ApiClient, ClientError, NotFoundError
from ordsync_models import Order, StockLevelUpdate, StockLocation, order_from_oms

logger = structlog.get_logger()


class SkuNotFoundError(NotFoundError):
    """The OMS has no stock item for the SKU; callers treat this as a soft skip."""

    def __init__(self, sku: str, message: str | None = None, **kw: Any):
        super().__init__(message or f"SKU not found in OMS: {sku}", **kw)
        self.sku = sku


def _chunks(seq: list[Any], size: int) -> list[list[Any]]:
    return [seq[i : i + size] for i in range(0, len(seq), size)]


class OmsClient(ApiClient):
    """Order-management REST client. Token goes in the raw Authorization header."""

    name = "oms"

    def __init__(self, *args: Any, batch_size: int = 50, page_size: int = 200, **kw: Any):
        super().__init__(*args, **kw)
        self.batch_size = batch_size
        self.page_size = page_size

    def auth_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": token, "Accept": "application/json"}

    # ---------- Orders ----------
    async def get_all_open_order_ids(self, location_id: str) -> list[str]:
        """Every open order id at a location, across all pages."""
        ids: list[str] = []
        page = 1
        while True:
            data = await self.request(
                "POST",
                "OpenOrders/GetOpenOrderIds",
                operation="GetOpenOrderIds",
                json={"LocationId": location_id, "EntriesPerPage": self.page_size, "PageNumber": page},
            )
            if isinstance(data, list):
                # Older endpoint shape: a bare list, no paging info
                ids.extend(str(x) for x in data)
                break
            batch = [str(x) for x in (data.get("Data") or [])]
            ids.extend(batch)
            total_pages = int(data.get("TotalPages") or 1)
            logger.debug("Fetched open order ids page", page=page, count=len(batch), total_pages=total_pages)
            if page >= total_pages or not batch:
                break
            page += 1
        return ids

    async def _fetch_details_batch(self, order_ids: list[str]) -> list[Order]:
        data = await self.request(
            "POST",
            "OpenOrders/GetOpenOrdersDetails",
            operation="GetOpenOrdersDetails",
            json={"OrderIds": order_ids},
        )
        records = data if isinstance(data, list) else (data.get("Data") or data.get("Orders") or [])
        orders: list[Order] = []
        for rec in records:
            try:
                orders.append(order_from_oms(rec))
            except ValidationError as e:
                logger.error(
                    "Invalid order record",
                    order_id=rec.get("OrderId"),
                    validation_errors=e.errors(),
                )
        return orders

    async def get_open_order_details(self, order_ids: list[str]) -> tuple[list[Order], int]:
        """Fetch details in batches; a failed batch is logged and skipped.

        Returns the orders from successful batches and the number of failed batches.
        """
        if not order_ids:
            return [], 0
        batches = _chunks(order_ids, self.batch_size)
        results = await asyncio.gather(
            *(self._fetch_details_batch(b) for b in batches), return_exceptions=True
        )
        orders: list[Order] = []
        failed = 0
        for idx, res in enumerate(results):
            if isinstance(res, BaseException):
                failed += 1
                logger.error(
                    "Order details batch failed",
                    batch=idx + 1,
                    batches=len(batches),
                    size=len(batches[idx]),
                    error=str(res),
                )
                continue
            orders.extend(res)
        return orders, failed

    async def set_order_shipping_info(self, order_id: str, tracking_number: str) -> Any:
        return await self.request(
            "POST",
            "Orders/SetOrderShippingInfo",
            operation="SetOrderShippingInfo",
            json={"orderId": order_id, "info": {"TrackingNumber": tracking_number}},
        )

    async def process_order(self, order_id: str, location_id: str) -> bool:
        data = await self.request(
            "POST",
            "Orders/ProcessOrder",
            operation="ProcessOrder",
            json={"orderId": order_id, "locationId": location_id, "scanPerformed": True},
        )
        return bool(isinstance(data, dict) and data.get("Processed"))

    # ---------- Inventory ----------
    async def get_stock_locations(self) -> list[StockLocation]:
        data = await self.request("POST", "Inventory/GetStockLocations", operation="GetStockLocations")
        records = data if isinstance(data, list) else []
        locations = []
        for rec in records:
            try:
                locations.append(StockLocation.model_validate(rec))
            except ValidationError as e:
                logger.warning("Skipping malformed stock location", validation_errors=e.errors())
        return locations

    async def set_stock_levels(self, updates: list[StockLevelUpdate]) -> list[dict[str, Any]]:
        if not updates:
            return []
        skus = ", ".join(u.SKU for u in updates)
        try:
            data = await self.request(
                "POST",
                "Stock/SetStockLevel",
                operation="SetStockLevel",
                json={"stockLevels": [u.model_dump() for u in updates]},
            )
        except ClientError as e:
            if e.status_code == 400 and "not found" in (e.detail or "").lower():
                raise SkuNotFoundError(
                    skus, operation=e.operation, url=e.url, status_code=e.status_code, detail=e.detail
                ) from e
            raise
        if isinstance(data, list) and not data:
            # OMS answers an empty list when none of the SKUs exist
            raise SkuNotFoundError(skus)
        return data if isinstance(data, list) else []

    async def update_single_item_stock(self, sku: str, location_id: str, level: float) -> None:
        update = StockLevelUpdate(SKU=sku, LocationId=location_id, Level=level)
        await self.set_stock_levels([update])
        logger.info("Stock level set", sku=sku, location_id=location_id, level=update.Level)

    async def get_stock_items_full(self, page_number: int, entries_per_page: int) -> list[dict[str, Any]]:
        data = await self.request(
            "POST",
            "Stock/GetStockItemsFull",
            operation="GetStockItemsFull",
            json={
                "keyword": "",
                "loadCompositeParents": False,
                "loadVariationParents": False,
                "entriesPerPage": entries_per_page,
                "pageNumber": page_number,
                "dataRequirements": ["StockLevels"],
                "searchTypes": ["SKU", "Title", "Barcode"],
            },
        )
        if isinstance(data, list):
            return data
        return list(data.get("items") or data.get("Items") or [])
