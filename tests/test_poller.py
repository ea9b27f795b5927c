"""
Open-order polling: readiness filter, idempotent save, batch isolation.
"""

import asyncio
import json
from datetime import date

import httpx
import pytest

from conftest import order_record
from ordsync_models import NULL_DATE, order_from_oms
from ordsync_poller import is_order_ready
from ordsync_transform import format_order_date

IDS_PATH = "/api/OpenOrders/GetOpenOrderIds"
DETAILS_PATH = "/api/OpenOrders/GetOpenOrdersDetails"


def serve_orders(api, records, ids=None, fail_containing=None):
    by_id = {r["OrderId"]: r for r in records}
    api.add("POST", IDS_PATH, {"Data": ids if ids is not None else list(by_id), "TotalPages": 1})

    def details(request):
        wanted = json.loads(request.content)["OrderIds"]
        if fail_containing and fail_containing in wanted:
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json=[by_id[i] for i in wanted if i in by_id])

    api.add("POST", DETAILS_PATH, details)


@pytest.mark.parametrize(
    "overrides, ready",
    [
        ({}, True),
        ({"Items": []}, False),
        ({"TotalsInfo": {"TotalCharge": 0}}, False),
        ({"GeneralInfo": {"Status": 0}}, False),
        ({"CustomerInfo": {"Address": {"FullName": "", "EmailAddress": ""}}}, False),
        ({"CustomerInfo": {"Address": {"FullName": "", "EmailAddress": "x@example.com"}}}, True),
        ({"CustomerInfo": {"Address": {"FullName": "Only Name"}}}, True),
    ],
)
def test_is_order_ready(overrides, ready):
    assert is_order_ready(order_from_oms(order_record("o1", **overrides))) is ready


def test_null_received_date_is_tolerated():
    order = order_from_oms(order_record("o1", GeneralInfo={"ReceivedDate": NULL_DATE}))
    assert order.GeneralInfo.ReceivedDate is None
    assert is_order_ready(order)


@pytest.mark.parametrize("value", ["0001-01-01T00:00:00", "0001-01-01T00:00:00.000Z", "0001-01-01"])
def test_null_date_variants_are_dropped(value):
    order = order_from_oms(order_record("o1", GeneralInfo={"ReceivedDate": value, "DespatchByDate": value}))
    assert order.GeneralInfo.ReceivedDate is None
    assert order.GeneralInfo.DespatchByDate is None
    assert format_order_date(order.GeneralInfo.ReceivedDate, date(2030, 1, 2)) == "2030-01-02"


def test_poll_saves_new_ready_orders_once(make_app, api):
    serve_orders(api, [order_record("o1")])

    async def go():
        app = make_app()
        try:
            first = await app.poller.process_open_orders()
            second = await app.poller.process_open_orders()
            return first, second, app.orders.get("o1")
        finally:
            await app.aclose()

    first, second, stored = asyncio.run(go())

    assert first.total_open_orders == 1
    assert first.new_orders == 1
    assert first.saved_orders == 1
    assert second.new_orders == 0
    assert second.saved_orders == 0
    assert stored is not None
    assert len(api.calls_to(DETAILS_PATH)) == 1


def test_poll_uses_default_location_and_oms_token(make_app, api):
    serve_orders(api, [])

    async def go():
        app = make_app(OMS_LOCATION_ID="loc-42")
        try:
            return await app.poller.process_open_orders()
        finally:
            await app.aclose()

    result = asyncio.run(go())

    assert result.total_open_orders == 0
    req = api.calls_to(IDS_PATH)[0]
    assert req.headers["Authorization"] == "oms-token"
    assert json.loads(req.content)["LocationId"] == "loc-42"


def test_poll_follows_pages(make_app, api):
    pages = {1: {"Data": ["o1", "o2"], "TotalPages": 2}, 2: {"Data": ["o3"], "TotalPages": 2}}
    api.add("POST", IDS_PATH, lambda r: httpx.Response(200, json=pages[json.loads(r.content)["PageNumber"]]))

    async def go():
        app = make_app()
        try:
            return await app.oms.get_all_open_order_ids("loc")
        finally:
            await app.aclose()

    assert asyncio.run(go()) == ["o1", "o2", "o3"]


def test_failed_detail_batch_does_not_block_others(make_app, api):
    # batch size 2: [o1, o2] fails, [o3, o4] succeeds
    serve_orders(api, [order_record(i) for i in ("o1", "o2", "o3", "o4")], fail_containing="o1")

    async def go():
        app = make_app()
        try:
            result = await app.poller.process_open_orders()
            return result, app.orders.get_saved_order_ids()
        finally:
            await app.aclose()

    result, saved = asyncio.run(go())

    assert result.failed_batches == 1
    assert result.saved_orders == 2
    assert saved == {"o3", "o4"}


def test_drafts_are_skipped(make_app, api):
    serve_orders(api, [order_record("o1"), order_record("o2", Items=[]), order_record("o3", GeneralInfo={"Status": 0})])

    async def go():
        app = make_app(OMS_BATCH_SIZE=10)
        try:
            return await app.poller.process_open_orders()
        finally:
            await app.aclose()

    result = asyncio.run(go())

    assert result.ready_orders == 1
    assert result.skipped_empty_orders == 2
    assert result.saved_orders == 1


def test_tick_skips_when_a_poll_is_running(make_app, api):
    serve_orders(api, [])

    async def go():
        app = make_app()
        try:
            with app.poller.guard.acquire():
                return await app.poller.tick()
        finally:
            await app.aclose()

    assert asyncio.run(go()) is None
    assert api.calls_to(IDS_PATH) == []


def test_tick_logs_and_returns_none_on_failure(make_app, api):
    api.add("POST", IDS_PATH, lambda r: httpx.Response(500, text="down"))

    async def go():
        app = make_app()
        try:
            result = await app.poller.tick()
            return result, app.poller.guard.running
        finally:
            await app.aclose()

    result, still_running = asyncio.run(go())

    assert result is None
    assert still_running is False
