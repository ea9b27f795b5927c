"""
Pytest configuration and shared fixtures for the ordsync tests.
"""

import json
import sys
from pathlib import Path

import httpx
import pytest
from tenacity import wait_none

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from ordsync_app import build_app  # noqa: E402
from ordsync_settings import SettingsStrict  # noqa: E402

OMS_AUTH = "https://auth.oms.test/api"
OMS_API = "https://oms.test/api"
BOOKS_AUTH = "https://auth.books.test/oauth/v2/token"
BOOKS_API = "https://books.test/v3"
TARGETS = ["347732000000070863", "347732000000070865"]


class FakeApi:
    """httpx MockTransport handler keyed on (method, url path).

    A route is either a callable taking the request and returning a Response,
    or a plain JSON-able object returned with status 200.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.add("POST", "/api/Auth/AuthorizeByApplication", {"Token": "oms-token", "TTL": 1800})
        self.add("POST", "/oauth/v2/token", {"access_token": "books-token", "expires_in": 3600})

    def add(self, method, path, handler):
        self.routes[(method, path)] = handler

    def __call__(self, request):
        self.calls.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": f"no route for {request.url.path}"})
        if callable(handler):
            return handler(request)
        return httpx.Response(200, json=handler)

    def calls_to(self, path, method=None):
        return [r for r in self.calls if r.url.path == path and (method is None or r.method == method)]

    def bodies(self, path):
        return [json.loads(r.content) for r in self.calls_to(path) if r.content]


@pytest.fixture
def settings(tmp_path):
    return SettingsStrict(
        OMS_API_URL=OMS_API,
        OMS_AUTH_URL=OMS_AUTH,
        OMS_APPLICATION_ID="app-id",
        OMS_APPLICATION_SECRET="app-secret",
        OMS_INSTALLATION_TOKEN="install-token",
        BOOKS_API_URL=BOOKS_API,
        BOOKS_AUTH_URL=BOOKS_AUTH,
        BOOKS_ORGANIZATION_ID="org-1",
        BOOKS_CLIENT_ID="client-id",
        BOOKS_CLIENT_SECRET="client-secret",
        BOOKS_REFRESH_TOKEN="refresh-token",
        DB_PATH=str(tmp_path / "ordsync.sqlite3"),
        OMS_BATCH_SIZE=2,
        OMS_MAX_RETRIES=1,
        BOOKS_MAX_RETRIES=1,
        RATE_LIMIT_RPM=10000,
        RATE_LIMIT_CONCURRENCY=4,
        SYNC_ORDER_DELAY=0,
        SYNC_STEP_DELAY=0,
        BOOKS_TARGET_LOCATION_IDS=TARGETS,
    )


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def make_app(settings, api):
    """Factory: build the app on top of the fake API inside the running loop."""

    def _make(**overrides):
        s = settings.model_copy(update=overrides) if overrides else settings
        http = httpx.AsyncClient(transport=httpx.MockTransport(api))
        return build_app(s, http=http, wait=wait_none())

    return _make


def order_record(order_id, **overrides):
    """A raw OMS open-order record that passes the readiness filter."""
    rec = {
        "OrderId": order_id,
        "NumOrderId": 1000 + len(order_id),
        "Processed": False,
        "FulfilmentLocationId": "loc-main",
        "GeneralInfo": {
            "Status": 1,
            "ReferenceNum": f"REF-{order_id}",
            "ExternalReferenceNum": f"EXT-{order_id}",
            "ReceivedDate": "2024-05-01T10:12:00Z",
            "Source": "SHOP",
            "SubSource": "Shop DE",
        },
        "ShippingInfo": {"PostalServiceName": "Standard", "PostageCost": 4.9},
        "CustomerInfo": {
            "Address": {
                "EmailAddress": "jane@example.com",
                "FullName": "Jane Doe",
                "Address1": "Main St 1",
                "Town": "Berlin",
                "PostCode": "10115",
                "Country": "Germany",
                "PhoneNumber": "+49 30 1234",
            }
        },
        "TotalsInfo": {"TotalCharge": 104.9, "Currency": "eur", "PaymentMethod": "PayPal"},
        "Items": [{"SKU": "SKU-1", "Title": "Phone", "Quantity": 1, "PricePerUnit": 100.0}],
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(rec.get(key), dict):
            rec[key] = {**rec[key], **value}
        else:
            rec[key] = value
    return rec
