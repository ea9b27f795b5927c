from __future__ import annotations

import re

import structlog
from pydantic import ValidationError

from ordsync_db import LocationMappingStore
from ordsync_models import LocationMapping, Order, StockLocation
from ordsync_oms import OmsClient
from ordsync_settings import ZERO_GUID

logger = structlog.get_logger()


class LocationMappingMissingError(LookupError):
    pass


def normalize_location_name(name: str | None) -> str:
    s = (name or "").lower().replace("(warehouse)", "")
    s = re.sub(r"\s+", " ", s)
    s = re.sub(r"[^a-z0-9 ]", "", s)
    return s.strip()


def suggest_by_name(books_name: str | None, oms_names: list[str]) -> str | None:
    """Closest OMS location name: exact normalized match, then prefix, then substring."""
    target = normalize_location_name(books_name)
    if not target:
        return None
    normalized = [(n, normalize_location_name(n)) for n in oms_names]
    for name, norm in normalized:
        if norm == target:
            return name
    for name, norm in normalized:
        if norm.startswith(target):
            return name
    for name, norm in normalized:
        if target in norm:
            return name
    return None


class LocationMappingService:
    """Books warehouse -> OMS stock location. Mappings are only created by an operator."""

    def __init__(self, store: LocationMappingStore, oms: OmsClient, default_location_id: str = ZERO_GUID):
        self.store = store
        self.oms = oms
        self.default_location_id = default_location_id

    def get_by_books_id(self, books_location_id: str) -> LocationMapping | None:
        return self.store.get(books_location_id)

    def upsert(self, mapping: LocationMapping | dict) -> LocationMapping:
        try:
            m = mapping if isinstance(mapping, LocationMapping) else LocationMapping.model_validate(mapping)
        except ValidationError as e:
            logger.error("Invalid location mapping", validation_errors=e.errors())
            raise
        saved = self.store.upsert(m)
        logger.info(
            "Location mapping saved",
            books_location_id=m.books_location_id,
            oms_location_id=m.oms_location_id,
        )
        return saved

    async def resolve_oms_location_id(
        self, books_location_id: str | None, books_location_name: str | None = None
    ) -> str:
        if not books_location_id:
            raise LocationMappingMissingError(
                f'Missing Books location id for "{books_location_name or "unknown"}"'
            )

        mapping = self.store.get(books_location_id)
        if mapping and mapping.oms_location_id:
            return mapping.oms_location_id

        suggestion = None
        try:
            locations = await self.oms.get_stock_locations()
            suggestion = suggest_by_name(books_location_name, [loc.LocationName for loc in locations])
        except Exception as e:
            logger.warning("Could not list OMS stock locations for a suggestion", error=str(e))

        logger.warning(
            "No location mapping for Books warehouse",
            books_location_id=books_location_id,
            books_location_name=books_location_name,
            suggested_oms_location=suggestion or "none",
        )
        raise LocationMappingMissingError(
            f"Location mapping missing: create mapping for Books ({books_location_name} / {books_location_id})"
        )

    async def list_with_mappings(self) -> list[tuple[StockLocation, list[LocationMapping]]]:
        """OMS stock locations next to the Books warehouses mapped onto each."""
        locations = await self.oms.get_stock_locations()
        by_oms: dict[str, list[LocationMapping]] = {}
        for m in self.store.list_all():
            by_oms.setdefault(m.oms_location_id, []).append(m)
        return [(loc, by_oms.get(loc.StockLocationId, [])) for loc in locations]

    def default_oms_location_id(self) -> str:
        return self.default_location_id

    def order_location_id(self, order: Order) -> str:
        return (order.FulfilmentLocationId or "").strip() or self.default_location_id
