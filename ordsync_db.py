from __future__ import annotations

import json
import sqlite3
import time
from collections.abc import Iterable
from typing import Any

from ordsync_models import LOCAL_ORDER_FIELDS, LocationMapping, Order, SyncStatus
from ordsync_settings import get_settings


class TokenCache:
    """Small key/value store with per-key expiry (setex/get/ttl/delete)."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or get_settings().DB_PATH
        self._init_db()

    def _init_db(self) -> None:
        with sqlite3.connect(self.db_path) as cx:
            cx.execute(
                """CREATE TABLE IF NOT EXISTS kv_cache(
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            )"""
            )

    def get(self, key: str) -> str | None:
        with sqlite3.connect(self.db_path) as cx:
            cur = cx.execute(
                "SELECT value FROM kv_cache WHERE key=? AND expires_at>?", (key, time.time())
            )
            r = cur.fetchone()
            return r[0] if r else None

    def ttl(self, key: str) -> int:
        """Seconds left for key, or -2 when missing/expired (redis convention)."""
        with sqlite3.connect(self.db_path) as cx:
            cur = cx.execute("SELECT expires_at FROM kv_cache WHERE key=?", (key,))
            r = cur.fetchone()
        if not r:
            return -2
        left = int(r[0] - time.time())
        return left if left > 0 else -2

    def setex(self, key: str, seconds: int, value: str) -> None:
        with sqlite3.connect(self.db_path) as cx:
            cx.execute(
                "INSERT OR REPLACE INTO kv_cache(key, value, expires_at) VALUES(?,?,?)",
                (key, value, time.time() + seconds),
            )
            cx.commit()

    def delete(self, *keys: str) -> None:
        with sqlite3.connect(self.db_path) as cx:
            cx.executemany("DELETE FROM kv_cache WHERE key=?", [(k,) for k in keys])
            cx.commit()

    def exists(self, key: str) -> bool:
        return self.get(key) is not None


class OrderRepository:
    """Local order store; one row per OMS order id."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or get_settings().DB_PATH
        self._init_db()

    def _init_db(self) -> None:
        with sqlite3.connect(self.db_path) as cx:
            cx.execute(
                """CREATE TABLE IF NOT EXISTS orders(
                order_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                sync_status TEXT NOT NULL DEFAULT 'pending',
                sync_retries INTEGER NOT NULL DEFAULT 0,
                sync_error TEXT,
                remote_sales_order_id TEXT,
                processed INTEGER NOT NULL DEFAULT 0,
                tracking_number TEXT,
                last_synced_at REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )"""
            )
            cx.execute(
                "CREATE INDEX IF NOT EXISTS idx_orders_remote ON orders(remote_sales_order_id)"
            )

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> Order:
        data = json.loads(row["payload"])
        data.update(
            sync_status=row["sync_status"],
            sync_retries=row["sync_retries"],
            sync_error=row["sync_error"],
            remote_sales_order_id=row["remote_sales_order_id"],
            Processed=bool(row["processed"]),
            last_synced_at=row["last_synced_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
        if row["tracking_number"]:
            data.setdefault("ShippingInfo", {})["TrackingNumber"] = row["tracking_number"]
        return Order.model_validate(data)

    def _connect(self) -> sqlite3.Connection:
        cx = sqlite3.connect(self.db_path)
        cx.row_factory = sqlite3.Row
        return cx

    def get_saved_order_ids(self) -> set[str]:
        with sqlite3.connect(self.db_path) as cx:
            return {r[0] for r in cx.execute("SELECT order_id FROM orders")}

    def save_orders(self, orders: Iterable[Order]) -> int:
        """Insert orders that are not stored yet. Returns the number actually inserted."""
        now = time.time()
        rows = []
        for i, o in enumerate(orders):
            payload = o.model_dump(mode="json", exclude=LOCAL_ORDER_FIELDS)
            # Keep arrival order stable inside one batch
            ts = now + i * 1e-6
            rows.append((o.OrderId, json.dumps(payload), SyncStatus.PENDING.value, ts, ts))
        if not rows:
            return 0
        with sqlite3.connect(self.db_path) as cx:
            before = cx.total_changes
            cx.executemany(
                """INSERT OR IGNORE INTO orders(order_id, payload, sync_status, created_at, updated_at)
                VALUES(?,?,?,?,?)""",
                rows,
            )
            cx.commit()
            return cx.total_changes - before

    def get(self, order_id: str) -> Order | None:
        with self._connect() as cx:
            r = cx.execute("SELECT * FROM orders WHERE order_id=?", (order_id,)).fetchone()
            return self._row_to_order(r) if r else None

    def find_orders_to_sync(self, max_retries: int) -> list[Order]:
        with self._connect() as cx:
            cur = cx.execute(
                """SELECT * FROM orders
                WHERE sync_status=? OR (sync_status=? AND sync_retries<?)
                ORDER BY created_at ASC""",
                (SyncStatus.PENDING.value, SyncStatus.FAILED.value, max_retries),
            )
            return [self._row_to_order(r) for r in cur.fetchall()]

    def update_sync_status(
        self, order_id: str, status: SyncStatus, error: str | None = None
    ) -> None:
        now = time.time()
        with sqlite3.connect(self.db_path) as cx:
            if status == SyncStatus.FAILED:
                cx.execute(
                    """UPDATE orders SET sync_status=?, sync_error=?,
                    sync_retries=sync_retries+1, updated_at=? WHERE order_id=?""",
                    (status.value, error, now, order_id),
                )
            else:
                cx.execute(
                    """UPDATE orders SET sync_status=?, sync_error=NULL,
                    last_synced_at=?, updated_at=? WHERE order_id=?""",
                    (status.value, now, now, order_id),
                )
            cx.commit()

    def set_remote_sales_order_id(self, order_id: str, sales_order_id: str) -> None:
        with sqlite3.connect(self.db_path) as cx:
            cx.execute(
                "UPDATE orders SET remote_sales_order_id=?, updated_at=? WHERE order_id=?",
                (sales_order_id, time.time(), order_id),
            )
            cx.commit()

    def find_by_remote_sales_order_id(self, sales_order_id: str) -> Order | None:
        with self._connect() as cx:
            r = cx.execute(
                "SELECT * FROM orders WHERE remote_sales_order_id=?", (sales_order_id,)
            ).fetchone()
            return self._row_to_order(r) if r else None

    def set_tracking_number(self, order_id: str, tracking_number: str) -> None:
        with sqlite3.connect(self.db_path) as cx:
            cx.execute(
                "UPDATE orders SET tracking_number=?, updated_at=? WHERE order_id=?",
                (tracking_number, time.time(), order_id),
            )
            cx.commit()

    def mark_processed(self, order_id: str) -> None:
        with sqlite3.connect(self.db_path) as cx:
            cx.execute(
                "UPDATE orders SET processed=1, updated_at=? WHERE order_id=?",
                (time.time(), order_id),
            )
            cx.commit()

    def count_by_status(self) -> dict[str, int]:
        with sqlite3.connect(self.db_path) as cx:
            cur = cx.execute("SELECT sync_status, COUNT(*) FROM orders GROUP BY sync_status")
            return {status: n for status, n in cur.fetchall()}

    def find_retry_exhausted(self, max_retries: int) -> list[str]:
        """Failed orders that reached the retry cap and are no longer picked up."""
        with sqlite3.connect(self.db_path) as cx:
            cur = cx.execute(
                """SELECT order_id FROM orders WHERE sync_status=? AND sync_retries>=?
                ORDER BY created_at ASC""",
                (SyncStatus.FAILED.value, max_retries),
            )
            return [r[0] for r in cur.fetchall()]

    def reset_retries(self, order_ids: Iterable[str] | None = None) -> int:
        """Zero the retry counter of failed orders (all of them when no ids are given)."""
        query = "UPDATE orders SET sync_retries=0, updated_at=? WHERE sync_status=?"
        params: list[Any] = [time.time(), SyncStatus.FAILED.value]
        if order_ids is not None:
            ids = list(order_ids)
            if not ids:
                return 0
            query += f" AND order_id IN ({','.join('?' * len(ids))})"
            params.extend(ids)
        with sqlite3.connect(self.db_path) as cx:
            cur = cx.execute(query, params)
            cx.commit()
            return cur.rowcount


class LocationMappingStore:
    """Books warehouse id -> OMS stock location id."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or get_settings().DB_PATH
        self._init_db()

    def _init_db(self) -> None:
        with sqlite3.connect(self.db_path) as cx:
            cx.execute(
                """CREATE TABLE IF NOT EXISTS location_map(
                books_location_id TEXT PRIMARY KEY,
                books_location_name TEXT NOT NULL DEFAULT '',
                oms_location_id TEXT NOT NULL,
                oms_location_name TEXT NOT NULL DEFAULT '',
                updated_at REAL NOT NULL
            )"""
            )

    def get(self, books_location_id: str) -> LocationMapping | None:
        with sqlite3.connect(self.db_path) as cx:
            cur = cx.execute(
                """SELECT books_location_id, books_location_name, oms_location_id,
                oms_location_name, updated_at FROM location_map WHERE books_location_id=?""",
                (books_location_id,),
            )
            r = cur.fetchone()
        if not r:
            return None
        return LocationMapping(
            books_location_id=r[0],
            books_location_name=r[1],
            oms_location_id=r[2],
            oms_location_name=r[3],
            updated_at=r[4],
        )

    def upsert(self, mapping: LocationMapping) -> LocationMapping:
        now = time.time()
        with sqlite3.connect(self.db_path) as cx:
            cx.execute(
                """INSERT INTO location_map(books_location_id, books_location_name,
                oms_location_id, oms_location_name, updated_at) VALUES(?,?,?,?,?)
                ON CONFLICT(books_location_id) DO UPDATE SET
                books_location_name=excluded.books_location_name,
                oms_location_id=excluded.oms_location_id,
                oms_location_name=excluded.oms_location_name,
                updated_at=excluded.updated_at""",
                (
                    mapping.books_location_id,
                    mapping.books_location_name,
                    mapping.oms_location_id,
                    mapping.oms_location_name,
                    now,
                ),
            )
            cx.commit()
        return mapping.model_copy(update={"updated_at": now})

    def list_all(self) -> list[LocationMapping]:
        with sqlite3.connect(self.db_path) as cx:
            cur = cx.execute(
                """SELECT books_location_id, books_location_name, oms_location_id,
                oms_location_name, updated_at FROM location_map ORDER BY books_location_id"""
            )
            rows = cur.fetchall()
        return [
            LocationMapping(
                books_location_id=r[0],
                books_location_name=r[1],
                oms_location_id=r[2],
                oms_location_name=r[3],
                updated_at=r[4],
            )
            for r in rows
        ]
