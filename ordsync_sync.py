from __future__ import annotations

import asyncio

import structlog

from ordsync_books import BooksClient, BooksItemNotFoundError
from ordsync_db import OrderRepository
from ordsync_models import Order, OrderItem, ResolvedLineItem, SyncCycleResult, SyncStatus
from ordsync_scheduler import CycleGuard
from ordsync_transform import build_contact, build_sales_order

logger = structlog.get_logger()


class OrderSyncError(RuntimeError):
    def __init__(self, order_id: str, message: str):
        super().__init__(message)
        self.order_id = order_id


class OrderSyncPipeline:
    """Pushes stored orders into Books as approved, confirmed sales orders."""

    def __init__(
        self,
        books: BooksClient,
        repo: OrderRepository,
        max_retries: int = 5,
        order_delay: float = 1.0,
        step_delay: float = 0.5,
        reference_prefix: str = "EXT-",
    ):
        self.books = books
        self.repo = repo
        self.max_retries = max_retries
        self.order_delay = order_delay
        self.step_delay = step_delay
        self.reference_prefix = reference_prefix
        self.guard = CycleGuard("sync")

    async def ensure_customer(self, order: Order) -> tuple[str, bool]:
        """Existing contact id by email, or a newly created one. Returns (id, created)."""
        email = order.customer_email
        if email:
            contact_id = await self.books.find_contact_id_by_email(email)
            if contact_id:
                logger.info("Using existing Books contact", contact_id=contact_id, order_id=order.OrderId)
                return contact_id, False
        contact_id = await self.books.create_contact(build_contact(order))
        return contact_id, True

    async def _resolve_line(self, order: Order, item: OrderItem) -> ResolvedLineItem:
        sku = item.sku
        if not sku:
            raise OrderSyncError(order.OrderId, f"Order {order.OrderId} has an item without SKU")
        try:
            books_item = await self.books.get_item_by_sku(sku)
        except BooksItemNotFoundError as e:
            raise OrderSyncError(order.OrderId, f"SKU {sku} not found in Books") from e

        tax_id = books_item.tax_id
        if not tax_id:
            details = await self.books.get_item(books_item.item_id)
            tax_id = details.tax_id
        rate = item.PricePerUnit if item.PricePerUnit is not None else (books_item.rate or 0)
        return ResolvedLineItem(
            item_id=books_item.item_id,
            sku=sku,
            name=item.title or books_item.name,
            rate=rate,
            quantity=max(1, item.Quantity or 1),
            tax_id=tax_id,
        )

    async def resolve_line_items(self, order: Order) -> list[ResolvedLineItem]:
        if not order.Items:
            raise OrderSyncError(order.OrderId, f"Order {order.OrderId} has no items")
        lines = []
        for item in order.Items:
            lines.append(await self._resolve_line(order, item))
        return lines

    async def _advance_status(self, salesorder_id: str) -> None:
        await self.books.approve_sales_order(salesorder_id)
        await asyncio.sleep(self.step_delay)
        await self.books.confirm_sales_order(salesorder_id)

    async def sync_order(self, order: Order) -> str:
        """Run one order through the pipeline; returns the Books sales order id."""
        if order.remote_sales_order_id:
            # Created on an earlier attempt; only the status steps are left
            logger.info(
                "Sales order already exists, advancing status",
                order_id=order.OrderId,
                salesorder_id=order.remote_sales_order_id,
            )
            await self._advance_status(order.remote_sales_order_id)
            return order.remote_sales_order_id

        customer_id, created_new = await self.ensure_customer(order)
        try:
            lines = await self.resolve_line_items(order)
            payload = build_sales_order(order, customer_id, lines, self.reference_prefix)
            await asyncio.sleep(self.step_delay)
            so = await self.books.create_sales_order(payload)
        except Exception:
            if created_new:
                await self._rollback_contact(customer_id)
            raise

        salesorder_id = str(so["salesorder_id"])
        self.repo.set_remote_sales_order_id(order.OrderId, salesorder_id)
        await asyncio.sleep(self.step_delay)
        await self._advance_status(salesorder_id)
        return salesorder_id

    async def _rollback_contact(self, contact_id: str) -> None:
        try:
            await self.books.delete_contact(contact_id)
        except Exception as e:
            logger.warning("Contact rollback failed", contact_id=contact_id, error=str(e))

    async def process_pending_sync(self) -> SyncCycleResult:
        orders = self.repo.find_orders_to_sync(self.max_retries)
        result = SyncCycleResult(pending_orders=len(orders))
        if not orders:
            return result
        logger.debug("Orders to sync", count=len(orders))

        for idx, order in enumerate(orders):
            try:
                salesorder_id = await self.sync_order(order)
            except Exception as e:
                logger.error("Failed to sync order", order_id=order.OrderId, error=str(e))
                self.repo.update_sync_status(order.OrderId, SyncStatus.FAILED, str(e))
                result.failed_orders += 1
            else:
                self.repo.update_sync_status(order.OrderId, SyncStatus.SYNCED)
                result.synced_orders += 1
                logger.info("Order synced", order_id=order.OrderId, salesorder_id=salesorder_id)
            if idx < len(orders) - 1:
                await asyncio.sleep(self.order_delay)

        logger.info("Sync complete", synced=result.synced_orders, failed=result.failed_orders)
        return result

    async def tick(self) -> SyncCycleResult | None:
        with self.guard.acquire() as acquired:
            if not acquired:
                return None
            return await self.process_pending_sync()
