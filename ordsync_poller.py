from __future__ import annotations

import structlog

from ordsync_db import OrderRepository
from ordsync_locations import LocationMappingService
from ordsync_models import Order, PollResult
from ordsync_oms import OmsClient
from ordsync_scheduler import CycleGuard

logger = structlog.get_logger()


def is_order_ready(order: Order) -> bool:
    """Skip drafts and empty shells the OMS lists as open."""
    has_items = len(order.Items) > 0
    has_value = (order.TotalsInfo.TotalCharge or 0) > 0
    has_real_status = (order.GeneralInfo.Status or 0) > 0
    has_customer = bool(order.customer_name or order.customer_email)
    return has_items and has_value and has_real_status and has_customer


class OrderPoller:
    def __init__(self, oms: OmsClient, repo: OrderRepository, locations: LocationMappingService):
        self.oms = oms
        self.repo = repo
        self.locations = locations
        self.guard = CycleGuard("poll")

    async def process_open_orders(self) -> PollResult:
        location_id = self.locations.default_oms_location_id()
        open_ids = await self.oms.get_all_open_order_ids(location_id)
        logger.debug("Fetched open order ids", count=len(open_ids), location_id=location_id)

        saved_ids = self.repo.get_saved_order_ids()
        new_ids = [oid for oid in open_ids if oid not in saved_ids]
        result = PollResult(total_open_orders=len(open_ids), new_orders=len(new_ids))
        if not new_ids:
            return result

        details, failed_batches = await self.oms.get_open_order_details(new_ids)
        result.failed_batches = failed_batches

        ready = [o for o in details if is_order_ready(o)]
        result.ready_orders = len(ready)
        result.skipped_empty_orders = len(details) - len(ready)
        if result.skipped_empty_orders:
            logger.debug("Skipped empty or draft orders", count=result.skipped_empty_orders)
        if not ready:
            return result

        result.saved_orders = self.repo.save_orders(ready)
        logger.info("Poll processed open orders", **result.model_dump())
        return result

    async def tick(self) -> PollResult | None:
        """One guarded poll; None when a poll is already running or it failed."""
        with self.guard.acquire() as acquired:
            if not acquired:
                return None
            try:
                result = await self.process_open_orders()
            except RuntimeError as e:
                logger.error(
                    "Poll failed",
                    status_code=getattr(e, "status_code", None),
                    url=getattr(e, "url", None),
                    error=str(e),
                )
                return None
            if result.saved_orders:
                logger.info("Poll completed", saved=result.saved_orders, new=result.new_orders)
            else:
                logger.debug("Poll completed, nothing saved")
            return result
