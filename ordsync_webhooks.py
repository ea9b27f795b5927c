from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from ordsync_books import BooksClient, get_item_ids, stock_by_location
from ordsync_db import OrderRepository
from ordsync_locations import LocationMappingMissingError, LocationMappingService
from ordsync_models import (
    ShipmentWebhookPayload,
    StrategyResult,
    WebhookResourcePayload,
    WebhookResponse,
)
from ordsync_oms import OmsClient, SkuNotFoundError

logger = structlog.get_logger()

RESOURCE_TYPES = ("salesorder", "purchasereceive", "inventory_adjustment", "vendor_credit", "creditnote")


class WebhookValidationError(ValueError):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class StockStrategy:
    """Stock reconciliation for one Books resource type.

    Every resource type is handled the same way; only the payload key differs.
    """

    resource_type: str
    target_location_ids: tuple[str, ...]

    async def execute(
        self,
        payload: dict[str, Any],
        books: BooksClient,
        oms: OmsClient,
        locations: LocationMappingService,
    ) -> StrategyResult:
        result = StrategyResult(resource_type=self.resource_type)
        try:
            resource = WebhookResourcePayload.model_validate(payload.get(self.resource_type) or {})
        except ValidationError as e:
            logger.error("Invalid webhook resource", resource_type=self.resource_type, validation_errors=e.errors())
            raise WebhookValidationError(f"Invalid {self.resource_type} payload") from e

        result.line_items = len(resource.line_items)
        if not resource.line_items:
            logger.debug("No line items for resource", resource_type=self.resource_type)
            return result

        logger.info("Stock webhook strategy started", resource_type=self.resource_type, line_items=result.line_items)
        details = await books.get_item_details(get_item_ids(resource.line_items))
        updates = stock_by_location(details, list(self.target_location_ids))
        logger.debug("Stock updates to push", resource_type=self.resource_type, count=len(updates))

        for upd in updates:
            try:
                location_id = await locations.resolve_oms_location_id(
                    upd.books_location_id, upd.books_location_name
                )
                await oms.update_single_item_stock(upd.sku, location_id, upd.quantity)
            except SkuNotFoundError as e:
                result.skipped_skus.append(upd.sku)
                logger.info("SKU unknown to OMS, skipped", sku=upd.sku, error=str(e))
            except (LocationMappingMissingError, RuntimeError) as e:
                result.failed_skus.append(upd.sku)
                logger.warning("Stock update failed", sku=upd.sku, error=str(e))
            else:
                result.successful_skus.append(upd.sku)

        logger.info(
            "Stock webhook strategy complete",
            resource_type=self.resource_type,
            successful=len(result.successful_skus),
            failed=len(result.failed_skus),
            skipped=len(result.skipped_skus),
        )
        if result.failed_skus:
            logger.warning("Failed SKUs", resource_type=self.resource_type, skus=result.failed_skus)
        return result


class StockWebhookService:
    def __init__(
        self,
        books: BooksClient,
        oms: OmsClient,
        locations: LocationMappingService,
        target_location_ids: list[str],
    ):
        self.books = books
        self.oms = oms
        self.locations = locations
        self.strategies = {rt: StockStrategy(rt, tuple(target_location_ids)) for rt in RESOURCE_TYPES}

    async def handle(self, payload: Any) -> WebhookResponse:
        logger.info("Received stock webhook")
        if not isinstance(payload, dict):
            return WebhookResponse(
                status_code=400, success=False, message="Invalid webhook payload", timestamp=_now()
            )

        selected = [self.strategies[k] for k, v in payload.items() if v and k in self.strategies]
        if not selected:
            logger.warning("No known resource types in webhook payload", keys=list(payload))
            return WebhookResponse(message="No processing required", timestamp=_now())

        outcomes = await asyncio.gather(
            *(s.execute(payload, self.books, self.oms, self.locations) for s in selected),
            return_exceptions=True,
        )

        details: list[StrategyResult] = []
        errors: list[str] = []
        invalid: list[str] = []
        for strategy, outcome in zip(selected, outcomes):
            if isinstance(outcome, WebhookValidationError):
                invalid.append(str(outcome))
            elif isinstance(outcome, BaseException):
                errors.append(f"{strategy.resource_type}: {outcome}")
                logger.error(
                    "Stock webhook strategy failed",
                    resource_type=strategy.resource_type,
                    status_code=getattr(outcome, "status_code", None),
                    url=getattr(outcome, "url", None),
                    error=str(outcome),
                )
            else:
                details.append(outcome)

        if invalid:
            return WebhookResponse(
                status_code=400,
                success=False,
                message="Invalid webhook payload",
                error="; ".join(invalid),
                details=details,
                timestamp=_now(),
            )
        if errors:
            return WebhookResponse(
                status_code=500,
                success=False,
                message="Failed to process webhook",
                error="; ".join(errors),
                details=details,
                timestamp=_now(),
            )
        logger.info("All stock webhook strategies processed")
        return WebhookResponse(message="Stock webhooks handled successfully", details=details, timestamp=_now())


def parse_shipment_payload(payload: Any) -> ShipmentWebhookPayload:
    """Accepts {salesorder: {...}} as sent by Books, or the inner object directly."""
    if not isinstance(payload, dict):
        raise WebhookValidationError("Invalid webhook payload")
    inner = payload.get("salesorder") if isinstance(payload.get("salesorder"), dict) else payload
    try:
        return ShipmentWebhookPayload.model_validate(inner)
    except ValidationError as e:
        logger.warning("Invalid shipment payload", validation_errors=e.errors())
        raise WebhookValidationError("Missing salesorder_id") from e


class ShipmentWebhookService:
    def __init__(self, oms: OmsClient, repo: OrderRepository, locations: LocationMappingService):
        self.oms = oms
        self.repo = repo
        self.locations = locations

    async def handle(self, payload: Any) -> WebhookResponse:
        try:
            shipment = parse_shipment_payload(payload)
        except WebhookValidationError as e:
            return WebhookResponse(status_code=400, success=False, message=str(e), timestamp=_now())

        order = self.repo.find_by_remote_sales_order_id(shipment.salesorder_id)
        if order is None:
            logger.warning("Shipment for unknown sales order, skipped", salesorder_id=shipment.salesorder_id)
            return WebhookResponse(message="Sales order not found", timestamp=_now())

        tracking = shipment.packages[0].tracking if shipment.packages else ""
        if not tracking:
            logger.warning("No tracking number in shipment", salesorder_id=shipment.salesorder_id)
            return WebhookResponse(
                status_code=400, success=False, message="No tracking number provided", timestamp=_now()
            )

        logger.info("Updating OMS shipment", order_id=order.OrderId, tracking_number=tracking)
        try:
            await self.oms.set_order_shipping_info(order.OrderId, tracking)
        except RuntimeError as e:
            logger.error("Failed to set tracking", order_id=order.OrderId, error=str(e))
            return WebhookResponse(
                status_code=500, success=False, message="Failed to set tracking", error=str(e), timestamp=_now()
            )
        self.repo.set_tracking_number(order.OrderId, tracking)

        location_id = self.locations.order_location_id(order)
        try:
            processed = await self.oms.process_order(order.OrderId, location_id)
        except RuntimeError as e:
            logger.error("Failed to process order after setting tracking", order_id=order.OrderId, error=str(e))
            return WebhookResponse(
                status_code=500,
                success=False,
                message="Tracking set, but order processing failed",
                error=str(e),
                timestamp=_now(),
            )
        if processed:
            self.repo.mark_processed(order.OrderId)
        logger.info("Order processed in OMS", order_id=order.OrderId, processed=processed)
        return WebhookResponse(message="Order shipped", timestamp=_now())
