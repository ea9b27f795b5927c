from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from ordsync_auth import TokenManager, books_token_manager, oms_token_manager
from ordsync_books import BooksClient
from ordsync_db import LocationMappingStore, OrderRepository, TokenCache
from ordsync_http import RateLimiter
from ordsync_inventory import InventorySync
from ordsync_locations import LocationMappingService
from ordsync_oms import OmsClient
from ordsync_poller import OrderPoller
from ordsync_scheduler import Scheduler
from ordsync_settings import SettingsStrict
from ordsync_sync import OrderSyncPipeline
from ordsync_webhooks import ShipmentWebhookService, StockWebhookService


@dataclass
class App:
    settings: SettingsStrict
    http: httpx.AsyncClient
    cache: TokenCache
    orders: OrderRepository
    mappings: LocationMappingStore
    oms_tokens: TokenManager
    books_tokens: TokenManager
    limiter: RateLimiter
    oms: OmsClient
    books: BooksClient
    locations: LocationMappingService
    poller: OrderPoller
    sync: OrderSyncPipeline
    stock_webhooks: StockWebhookService
    shipment_webhooks: ShipmentWebhookService
    inventory: InventorySync

    def build_scheduler(self, with_inventory: bool = False) -> Scheduler:
        s = self.settings
        scheduler = Scheduler()
        scheduler.add_job("poll", s.OMS_POLL_INTERVAL, self.poller.tick)
        scheduler.add_job("sync", s.SYNC_INTERVAL, self.sync.tick)
        if with_inventory:
            scheduler.add_job("inventory", s.INVENTORY_INTERVAL, self.inventory.tick, run_on_start=False)
        return scheduler

    async def aclose(self) -> None:
        await self.http.aclose()


def build_app(settings: SettingsStrict, http: httpx.AsyncClient | None = None, wait: Any = None) -> App:
    """Wire every service from settings. `http` and `wait` are injectable for tests."""
    s = settings
    http = http or httpx.AsyncClient(timeout=s.HTTP_TIMEOUT)
    cache = TokenCache(s.DB_PATH)
    orders = OrderRepository(s.DB_PATH)
    mappings = LocationMappingStore(s.DB_PATH)
    limiter = RateLimiter(s.RATE_LIMIT_RPM, s.RATE_LIMIT_CONCURRENCY)

    oms_tokens = oms_token_manager(s, http, cache)
    books_tokens = books_token_manager(s, http, cache)

    oms = OmsClient(
        s.OMS_API_URL,
        oms_tokens,
        http,
        limiter,
        max_retries=s.OMS_MAX_RETRIES,
        timeout=s.HTTP_TIMEOUT,
        wait=wait,
        batch_size=s.OMS_BATCH_SIZE,
    )
    books = BooksClient(
        s.BOOKS_API_URL,
        books_tokens,
        http,
        limiter,
        max_retries=s.BOOKS_MAX_RETRIES,
        timeout=s.HTTP_TIMEOUT,
        wait=wait,
        organization_id=s.BOOKS_ORGANIZATION_ID,
        item_batch_size=s.BOOKS_ITEM_BATCH_SIZE,
    )
    locations = LocationMappingService(mappings, oms, default_location_id=s.OMS_LOCATION_ID)

    return App(
        settings=s,
        http=http,
        cache=cache,
        orders=orders,
        mappings=mappings,
        oms_tokens=oms_tokens,
        books_tokens=books_tokens,
        limiter=limiter,
        oms=oms,
        books=books,
        locations=locations,
        poller=OrderPoller(oms, orders, locations),
        sync=OrderSyncPipeline(
            books,
            orders,
            max_retries=s.SYNC_MAX_RETRIES,
            order_delay=s.SYNC_ORDER_DELAY,
            step_delay=s.SYNC_STEP_DELAY,
            reference_prefix=s.SALES_ORDER_REFERENCE_PREFIX,
        ),
        stock_webhooks=StockWebhookService(books, oms, locations, s.BOOKS_TARGET_LOCATION_IDS),
        shipment_webhooks=ShipmentWebhookService(oms, orders, locations),
        inventory=InventorySync(
            oms,
            books,
            locations,
            s.BOOKS_TARGET_LOCATION_IDS,
            page_size=s.INVENTORY_PAGE_SIZE,
            update_batch=s.INVENTORY_UPDATE_BATCH,
        ),
    )
