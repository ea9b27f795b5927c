#!/usr/bin/env python3
"""
OMS <-> Books order and stock synchronizer

Features:
- Session/OAuth tokens for both systems, cached in SQLite, refreshed single-flight
- Polls open OMS orders, stores the ready ones once, pushes them to Books
  as approved + confirmed sales orders
- Stock webhooks from Books set OMS stock levels per mapped warehouse
- Shipment webhooks set tracking on the OMS order and process it
- Shared rate limiter, retries and structured logging

Usage:
  export $(grep -v '^#' .env | xargs)  # or rely on python-dotenv
  python ordsync.py verify
  python ordsync.py poll
  python ordsync.py sync
  python ordsync.py reset-retries [ORDER_ID ...]
  python ordsync.py run --with-inventory
  python ordsync.py map-location --books-id 347732000000070863 --oms-id <guid>
  python ordsync.py webhook-stock payload.json
"""

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
import structlog
from pydantic import ValidationError

from ordsync_app import App, build_app
from ordsync_db import LocationMappingStore, OrderRepository
from ordsync_models import LocationMapping, WebhookResponse
from ordsync_settings import missing_required_keys, require_settings

T = TypeVar("T")

# Configure structured logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(message)s",
    handlers=[logging.StreamHandler()],
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)
logger = structlog.get_logger()


# Simple console for output
def print_msg(msg):
    print(msg)


def print_error(msg):
    print(f"ERROR: {msg}")


def print_success(msg):
    print(f"SUCCESS: {msg}")


# ---------- CLI helpers ----------
def ensure_env():
    """Validate required environment variables"""
    missing = missing_required_keys()
    if missing:
        print_error(f"Missing environment variables: {', '.join(missing)}")
        print_msg("Copy env.example to .env and fill in the values")
        raise click.ClickException("Missing required environment variables")
    # Type validation via Pydantic
    try:
        return require_settings()
    except ValidationError as e:
        print_error(f"Invalid environment configuration: {e}")
        raise click.ClickException("Invalid environment configuration") from e


def _set_verbose(verbose: bool) -> None:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def run_with_app(fn: Callable[[App], Awaitable[T]]) -> T:
    """Build the services, run one coroutine against them, close the HTTP client."""
    settings = ensure_env()

    async def main() -> T:
        app = build_app(settings)
        try:
            return await fn(app)
        finally:
            await app.aclose()

    return asyncio.run(main())


def _print_response(resp: WebhookResponse) -> None:
    print(json.dumps(resp.model_dump(), indent=2))
    if resp.success:
        print_success(resp.message)
    else:
        print_error(f"{resp.status_code} {resp.message}")


def _load_json(path: str) -> Any:
    with open(path, encoding="utf-8") as fh:
        try:
            return json.load(fh)
        except json.JSONDecodeError as e:
            raise click.ClickException(f"{path} is not valid JSON: {e}") from e


@click.group()
def cli():
    """OMS <-> Books order and stock synchronizer"""
    pass


@cli.command()
def verify():
    """Check env and authenticate to both systems."""
    print_msg("Verifying setup...")

    try:
        ensure_env()
        print_success("Environment variables OK")
    except click.ClickException:
        return

    async def check(app: App) -> bool:
        try:
            await app.oms_tokens.get_valid_token()
            print_success("OMS authentication OK")
        except RuntimeError as e:
            print_error(f"OMS auth failed: {e}")
            return False
        try:
            await app.books_tokens.get_valid_token()
            print_success("Books authentication OK")
        except RuntimeError as e:
            print_error(f"Books auth failed: {e}")
            return False
        try:
            locations = await app.oms.get_stock_locations()
            print_success(f"OMS API connection OK ({len(locations)} stock locations)")
        except RuntimeError as e:
            print_error(f"OMS API test failed: {e}")
            return False
        return True

    if run_with_app(check):
        print_success("All checks passed! Ready to sync.")


@cli.command()
@click.option("--verbose", is_flag=True, help="verbose logging")
def poll(verbose):
    """Fetch open OMS orders once and store the new, ready ones."""
    _set_verbose(verbose)

    async def go(app: App):
        return await app.poller.process_open_orders()

    try:
        result = run_with_app(go)
    except RuntimeError as e:
        print_error(f"Poll failed: {e}")
        logger.exception("Poll error")
        return

    print_msg("\nPoll Summary:")
    print_msg(f"  Open orders: {result.total_open_orders}")
    print_msg(f"  New: {result.new_orders}")
    print_msg(f"  Ready: {result.ready_orders}")
    print_msg(f"  Skipped (empty/draft): {result.skipped_empty_orders}")
    print_msg(f"  Saved: {result.saved_orders}")
    if result.failed_batches:
        print_error(f"{result.failed_batches} detail batch(es) failed")


@cli.command()
@click.option("--verbose", is_flag=True, help="verbose logging")
def sync(verbose):
    """Push pending (and retryable failed) orders to Books once."""
    _set_verbose(verbose)

    async def go(app: App):
        result = await app.sync.process_pending_sync()
        exhausted = app.orders.find_retry_exhausted(app.settings.SYNC_MAX_RETRIES)
        return result, app.orders.count_by_status(), exhausted

    try:
        result, counts, exhausted = run_with_app(go)
    except RuntimeError as e:
        print_error(f"Sync failed: {e}")
        logger.exception("Sync error")
        return

    print_msg("\nSync Summary:")
    print_msg(f"  To sync: {result.pending_orders}")
    print_msg(f"  Synced: {result.synced_orders}")
    print_msg(f"  Failed: {result.failed_orders}")
    print_msg(f"  Stored by status: {counts}")
    if exhausted:
        print_error(
            f"{len(exhausted)} order(s) reached the retry limit and are no longer synced: "
            f"{', '.join(exhausted)}. Run `ordsync reset-retries` to queue them again"
        )
    if result.failed_orders:
        print_error("Some orders failed; they are retried on the next run")
    else:
        print_success("Sync completed!")


@cli.command()
@click.option("--with-inventory", is_flag=True, help="also run the periodic full inventory sync")
@click.option("--verbose", is_flag=True, help="verbose logging")
def run(with_inventory, verbose):
    """Run the poll and sync loops until interrupted."""
    _set_verbose(verbose)

    async def go(app: App):
        await app.build_scheduler(with_inventory=with_inventory).run_forever()

    try:
        run_with_app(go)
    except KeyboardInterrupt:
        print_msg("Stopped")


@cli.command("inventory-sync")
@click.option("--verbose", is_flag=True, help="verbose logging")
def inventory_sync(verbose):
    """Set every OMS stock level from Books available-for-sale stock."""
    _set_verbose(verbose)

    async def go(app: App):
        return await app.inventory.tick()

    result = run_with_app(go)
    if result is None:
        print_error("A sync is already in progress")
        return
    print_msg("\nInventory Summary:")
    for key, value in result.model_dump().items():
        print_msg(f"  {key}: {value}")
    if result.failed_pages:
        print_error("Stock paging stopped early; the summary is partial")


@cli.command("reset-retries")
@click.argument("order_ids", nargs=-1)
def reset_retries(order_ids):
    """Queue failed orders again by zeroing their retry count (all failed orders by default)."""
    settings = ensure_env()
    repo = OrderRepository(settings.DB_PATH)
    count = repo.reset_retries(order_ids or None)
    print_success(f"Reset retries for {count} failed order(s)")


@cli.command("token-status")
def token_status():
    """Show cached token state for both systems."""

    async def go(app: App):
        return {"oms": app.oms_tokens.get_token_status(), "books": app.books_tokens.get_token_status()}

    for system, status in run_with_app(go).items():
        state = f"valid for {status.expires_in}s" if status.has_token else "no cached token"
        print_msg(f"{system}: {state}")
        if status.auth_data:
            print_msg(json.dumps(status.auth_data, indent=2, default=str))


@cli.command()
def locations():
    """List OMS stock locations and the Books warehouses mapped to them."""

    async def go(app: App):
        return await app.locations.list_with_mappings(), app.mappings.list_all()

    rows, mappings = run_with_app(go)
    for loc, mapped in rows:
        names = ", ".join(f"{m.books_location_name or '?'} ({m.books_location_id})" for m in mapped)
        print_msg(f"{loc.StockLocationId}  {loc.LocationName}  <- {names or 'unmapped'}")
    known = {loc.StockLocationId for loc, _ in rows}
    for m in mappings:
        if m.oms_location_id not in known:
            print_error(f"Mapping {m.books_location_id} points at unknown OMS location {m.oms_location_id}")


@cli.command("map-location")
@click.option("--books-id", required=True, help="Books warehouse (location) id")
@click.option("--books-name", default="", help="Books warehouse name")
@click.option("--oms-id", required=True, help="OMS stock location id")
@click.option("--oms-name", default="", help="OMS stock location name")
def map_location(books_id, books_name, oms_id, oms_name):
    """Create or update the mapping for one Books warehouse."""
    settings = ensure_env()
    try:
        mapping = LocationMapping(
            books_location_id=books_id.strip(),
            books_location_name=books_name,
            oms_location_id=oms_id.strip(),
            oms_location_name=oms_name,
        )
    except ValidationError as e:
        raise click.ClickException(f"Invalid mapping: {e}") from e

    store = LocationMappingStore(settings.DB_PATH)
    store.upsert(mapping)
    confirm = store.get(mapping.books_location_id)
    print_success(f"Mapped {confirm.books_location_id} -> {confirm.oms_location_id}")


@cli.command("webhook-stock")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--verbose", is_flag=True, help="verbose logging")
def webhook_stock(payload_file, verbose):
    """Replay a Books stock webhook payload from a JSON file."""
    _set_verbose(verbose)
    payload = _load_json(payload_file)

    async def go(app: App):
        return await app.stock_webhooks.handle(payload)

    _print_response(run_with_app(go))


@cli.command("webhook-shipment")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--verbose", is_flag=True, help="verbose logging")
def webhook_shipment(payload_file, verbose):
    """Replay a Books shipment webhook payload from a JSON file."""
    _set_verbose(verbose)
    payload = _load_json(payload_file)

    async def go(app: App):
        return await app.shipment_webhooks.handle(payload)

    _print_response(run_with_app(go))


if __name__ == "__main__":
    cli()
