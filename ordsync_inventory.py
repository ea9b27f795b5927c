from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import structlog

from ordsync_books import BooksClient, stock_by_location
from ordsync_locations import LocationMappingMissingError, LocationMappingService
from ordsync_models import InventorySyncResult, StockLevelUpdate
from ordsync_oms import OmsClient
from ordsync_scheduler import CycleGuard

logger = structlog.get_logger()


class InventorySync:
    """Full reconciliation: every OMS stock item gets the Books available-for-sale level.

    The Books item id is read from the OMS item's barcode field.
    """

    def __init__(
        self,
        oms: OmsClient,
        books: BooksClient,
        locations: LocationMappingService,
        target_location_ids: list[str],
        page_size: int = 200,
        update_batch: int = 50,
        page_delay: float = 0.1,
    ):
        self.oms = oms
        self.books = books
        self.locations = locations
        self.target_location_ids = target_location_ids
        self.page_size = page_size
        self.update_batch = update_batch
        self.page_delay = page_delay
        self.guard = CycleGuard("inventory")

    async def _pages(self, result: InventorySyncResult) -> AsyncIterator[list[dict[str, Any]]]:
        page = 1
        while True:
            try:
                items = await self.oms.get_stock_items_full(page, self.page_size)
            except RuntimeError as e:
                result.failed_pages += 1
                logger.error("OMS stock page fetch failed, stopping", page=page, error=str(e))
                break
            if not items:
                break
            yield items
            page += 1
            await asyncio.sleep(self.page_delay)

    async def _location_map(self) -> tuple[dict[str, str], int]:
        """Books warehouse id -> OMS location id for the target warehouses."""
        resolved: dict[str, str] = {}
        unmapped = 0
        for books_id in self.target_location_ids:
            mapping = self.locations.get_by_books_id(books_id)
            if mapping:
                resolved[books_id] = mapping.oms_location_id
                continue
            try:
                resolved[books_id] = await self.locations.resolve_oms_location_id(books_id)
            except LocationMappingMissingError as e:
                unmapped += 1
                logger.error("Target warehouse is not mapped, its stock is skipped", error=str(e))
        return resolved, unmapped

    async def run(self) -> InventorySyncResult:
        result = InventorySyncResult()
        location_map, result.unmapped_locations = await self._location_map()
        if not location_map:
            logger.error("No target warehouse is mapped, nothing to sync")
            return result

        async for page_items in self._pages(result):
            result.oms_skus += len(page_items)
            item_ids = [str(i.get("BarcodeNumber") or "").strip() for i in page_items]
            item_ids = [i for i in item_ids if i]
            if not item_ids:
                continue

            try:
                details = await self.books.get_item_details(item_ids)
                result.books_batches += 1
            except RuntimeError as e:
                result.failed_batches += 1
                logger.error("Books bulk details failed", ids=len(item_ids), error=str(e))
                continue

            updates = [
                StockLevelUpdate(
                    SKU=u.sku.strip(),
                    LocationId=location_map[u.books_location_id],
                    Level=u.quantity,
                )
                for u in stock_by_location(details, self.target_location_ids)
                if u.books_location_id in location_map and u.sku.strip()
            ]
            for start in range(0, len(updates), self.update_batch):
                chunk = updates[start : start + self.update_batch]
                try:
                    await self.oms.set_stock_levels(chunk)
                    result.updated_lines += len(chunk)
                except RuntimeError as e:
                    result.failed_lines += len(chunk)
                    logger.error("OMS stock update failed", lines=len(chunk), error=str(e))

        logger.info("Inventory sync completed", **result.model_dump())
        return result

    async def tick(self) -> InventorySyncResult | None:
        with self.guard.acquire() as acquired:
            if not acquired:
                logger.info("An inventory sync is already in progress")
                return None
            return await self.run()
