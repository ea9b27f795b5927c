"""
Books warehouse -> OMS stock location mapping.
"""

import asyncio

import httpx
import pytest
from pydantic import ValidationError

from conftest import order_record
from ordsync_locations import (
    LocationMappingMissingError,
    normalize_location_name,
    suggest_by_name,
)
from ordsync_models import LocationMapping, order_from_oms
from ordsync_settings import ZERO_GUID

STOCK_LOCATIONS = "/api/Inventory/GetStockLocations"


def test_normalize_location_name():
    assert normalize_location_name("  Main   Warehouse (Warehouse) ") == "main warehouse"
    assert normalize_location_name("Lager-Süd") == "lagersd"
    assert normalize_location_name(None) == ""


@pytest.mark.parametrize(
    "books_name, expected",
    [
        ("Berlin", "Berlin"),
        ("berlin (warehouse)", "Berlin"),
        ("Ham", "Hamburg Hub"),
        ("hub", "Hamburg Hub"),
        ("Munich", None),
        ("", None),
        (None, None),
    ],
)
def test_suggest_by_name(books_name, expected):
    assert suggest_by_name(books_name, ["Default", "Berlin", "Hamburg Hub"]) == expected


def run_with_locations(make_app, fn, **overrides):
    async def go():
        app = make_app(**overrides)
        try:
            return await fn(app.locations)
        finally:
            await app.aclose()

    return asyncio.run(go())


def test_resolve_uses_stored_mapping(make_app, api):
    async def fn(locations):
        locations.upsert({"books_location_id": "B1", "oms_location_id": "O1"})
        return await locations.resolve_oms_location_id("B1", "Berlin")

    assert run_with_locations(make_app, fn) == "O1"
    assert api.calls_to(STOCK_LOCATIONS) == []


def test_resolve_missing_mapping_raises_and_never_creates_one(make_app, api):
    api.add("POST", STOCK_LOCATIONS, [{"StockLocationId": "O1", "LocationName": "Berlin"}])

    async def fn(locations):
        with pytest.raises(LocationMappingMissingError, match="create mapping for Books"):
            await locations.resolve_oms_location_id("B1", "Berlin")
        return locations.get_by_books_id("B1")

    assert run_with_locations(make_app, fn) is None
    assert len(api.calls_to(STOCK_LOCATIONS)) == 1


def test_resolve_missing_mapping_survives_location_listing_failure(make_app, api):
    api.add("POST", STOCK_LOCATIONS, lambda r: httpx.Response(500, text="down"))

    async def fn(locations):
        with pytest.raises(LocationMappingMissingError):
            await locations.resolve_oms_location_id("B1", "Berlin")

    run_with_locations(make_app, fn)


def test_resolve_without_books_id(make_app):
    async def fn(locations):
        with pytest.raises(LocationMappingMissingError, match="Missing Books location id"):
            await locations.resolve_oms_location_id("", "Berlin")

    run_with_locations(make_app, fn)


def test_upsert_rejects_blank_ids(make_app):
    async def fn(locations):
        with pytest.raises(ValidationError):
            locations.upsert({"books_location_id": "", "oms_location_id": "O1"})

    run_with_locations(make_app, fn)


def test_list_with_mappings(make_app, api):
    api.add(
        "POST",
        STOCK_LOCATIONS,
        [{"StockLocationId": "O1", "LocationName": "Berlin"}, {"StockLocationId": "O2", "LocationName": "Hamburg"}],
    )

    async def fn(locations):
        locations.upsert(LocationMapping(books_location_id="B1", oms_location_id="O1"))
        locations.upsert(LocationMapping(books_location_id="B2", oms_location_id="O1"))
        return await locations.list_with_mappings()

    rows = run_with_locations(make_app, fn)

    assert [(loc.StockLocationId, [m.books_location_id for m in mapped]) for loc, mapped in rows] == [
        ("O1", ["B1", "B2"]),
        ("O2", []),
    ]


def test_order_location_falls_back_to_default(make_app):
    async def fn(locations):
        with_loc = order_from_oms(order_record("o1"))
        without = order_from_oms(order_record("o2", FulfilmentLocationId=" "))
        return locations.order_location_id(with_loc), locations.order_location_id(without)

    assert run_with_locations(make_app, fn) == ("loc-main", ZERO_GUID)
