"""SQLite persistence for tasks, products, watchlists, accounts and history."""
import logging
import uuid
from pathlib import Path
from typing import Any, Iterable, Optional, Type, TypeVar

import aiosqlite
import orjson
from pydantic import BaseModel

from lunarbot.config import DB_PATH
from lunarbot.models import (
    CheckoutProfile,
    Product,
    ProductAlert,
    Proxy,
    PurchaseRecord,
    StoreAccount,
    Task,
    TaskStatus,
    WatchlistItem,
    WatchlistStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        product_id TEXT NOT NULL,
        store_account_id TEXT NOT NULL,
        proxy_id TEXT,
        checkout_profile_id TEXT,
        watchlist_item_id TEXT,
        priority INTEGER NOT NULL DEFAULT 1,
        quantity INTEGER NOT NULL DEFAULT 1,
        max_price REAL,
        complete_checkout INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL,
        error_message TEXT,
        result TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP,
        started_at TIMESTAMP,
        completed_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        store_type TEXT NOT NULL,
        name TEXT NOT NULL,
        url TEXT NOT NULL,
        sku TEXT,
        current_price REAL,
        is_available INTEGER NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1,
        last_checked TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS watchlist_items (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        product_id TEXT NOT NULL,
        max_price REAL,
        quantity INTEGER NOT NULL DEFAULT 1,
        auto_purchase INTEGER NOT NULL DEFAULT 0,
        alert_on_stock INTEGER NOT NULL DEFAULT 1,
        alert_on_price_drop INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL,
        last_attempt_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_watchlist_product ON watchlist_items(product_id)",
    """
    CREATE TABLE IF NOT EXISTS store_accounts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        store_type TEXT NOT NULL,
        encrypted_username TEXT NOT NULL,
        encrypted_password TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS proxies (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        host TEXT NOT NULL,
        port INTEGER NOT NULL,
        username TEXT,
        password TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS checkout_profiles (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        info TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS purchase_history (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        product_id TEXT NOT NULL,
        order_reference TEXT,
        price_paid REAL,
        quantity INTEGER NOT NULL DEFAULT 1,
        purchased_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_alerts (
        id TEXT PRIMARY KEY,
        product_id TEXT NOT NULL,
        alert_type TEXT NOT NULL,
        old_value TEXT,
        new_value TEXT,
        message TEXT NOT NULL,
        created_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS price_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        product_id TEXT NOT NULL,
        price REAL NOT NULL,
        recorded_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_price_history_product ON price_history(product_id)",
]

# Columns holding JSON documents
JSON_COLUMNS = {
    "tasks": {"result"},
    "checkout_profiles": {"info"},
    "product_alerts": {"old_value", "new_value"},
}

# Which statuses a task may move out of, per target status
TASK_TRANSITIONS: dict[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.RUNNING: (TaskStatus.QUEUED, TaskStatus.RUNNING),
    TaskStatus.COMPLETED: (TaskStatus.RUNNING,),
    TaskStatus.FAILED: (TaskStatus.QUEUED, TaskStatus.RUNNING),
    TaskStatus.CANCELLED: (TaskStatus.QUEUED, TaskStatus.RUNNING),
}


def new_id() -> str:
    return str(uuid.uuid4())


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


class Database:
    """SQLite store. Each call opens its own connection."""

    def __init__(self, db_path: Path = DB_PATH):
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        async with aiosqlite.connect(self.db_path) as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Generic helpers

    def _to_row(self, table: str, record: BaseModel) -> dict[str, Any]:
        row = record.model_dump(mode="json")
        for column in JSON_COLUMNS.get(table, ()):
            row[column] = orjson.dumps(row.get(column)).decode()
        return row

    def _from_row(self, table: str, model: Type[M], row: aiosqlite.Row) -> M:
        data = dict(row)
        for column in JSON_COLUMNS.get(table, ()):
            if data.get(column) is not None:
                data[column] = orjson.loads(data[column])
        return model.model_validate(data)

    async def _upsert(self, table: str, record: BaseModel) -> None:
        row = self._to_row(table, record)
        columns = ", ".join(row)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"INSERT OR REPLACE INTO {table} ({columns}) VALUES ({_placeholders(row)})",
                tuple(row.values()),
            )
            await db.commit()

    async def _fetch_one(self, table: str, model: Type[M], where: str, params: tuple) -> Optional[M]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(f"SELECT * FROM {table} WHERE {where}", params)
            row = await cursor.fetchone()
        return self._from_row(table, model, row) if row is not None else None

    async def _fetch_all(
        self, table: str, model: Type[M], where: str = "1=1", params: tuple = (), order: str = ""
    ) -> list[M]:
        sql = f"SELECT * FROM {table} WHERE {where}"
        if order:
            sql += f" ORDER BY {order}"
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [self._from_row(table, model, row) for row in rows]

    async def _update(self, sql: str, params: tuple) -> bool:
        """Run an UPDATE and report whether a row changed."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount > 0

    # Tasks

    async def save_task(self, task: Task) -> Task:
        await self._upsert("tasks", task)
        return task

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self._fetch_one("tasks", Task, "id = ?", (task_id,))

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> list[Task]:
        if status is None:
            return await self._fetch_all("tasks", Task, order="created_at")
        return await self._fetch_all("tasks", Task, "status = ?", (status.value,), order="created_at")

    async def transition_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        error_message: Optional[str] = None,
        result: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Move a task to ``status`` if its current status allows it.

        Entering ``running`` stamps started_at and counts an attempt. Entering a
        terminal status stamps completed_at. Returns False when the task is
        missing or already in a status that cannot move to ``status``.
        """
        allowed = TASK_TRANSITIONS[status]
        now = utcnow().isoformat()
        where = f"id = ? AND status IN ({_placeholders(allowed)})"
        where_params = (task_id, *[s.value for s in allowed])

        if status == TaskStatus.RUNNING:
            changed = await self._update(
                f"UPDATE tasks SET status = ?, started_at = ?, attempts = attempts + 1 WHERE {where}",
                (status.value, now, *where_params),
            )
        else:
            changed = await self._update(
                f"""
                UPDATE tasks
                SET status = ?, completed_at = ?, error_message = ?,
                    result = COALESCE(?, result)
                WHERE {where}
                """,
                (
                    status.value,
                    now,
                    error_message,
                    orjson.dumps(result).decode() if result is not None else None,
                    *where_params,
                ),
            )
        if not changed:
            logger.debug(f"Task {task_id} transition to {status.value} refused")
        return changed

    async def task_stats(self) -> dict[str, int]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status")
            return {row[0]: row[1] for row in await cursor.fetchall()}

    # Products and snapshots

    async def save_product(self, product: Product) -> Product:
        await self._upsert("products", product)
        return product

    async def get_product(self, product_id: str) -> Optional[Product]:
        return await self._fetch_one("products", Product, "id = ?", (product_id,))

    async def list_active_products(self) -> list[Product]:
        return await self._fetch_all("products", Product, "is_active = 1", order="id")

    async def update_product_snapshot(
        self,
        product_id: str,
        name: str,
        price: Optional[float],
        is_available: bool,
    ) -> bool:
        """Overwrite the stored snapshot. A missing price keeps the previous one."""
        return await self._update(
            """
            UPDATE products
            SET name = ?, current_price = COALESCE(?, current_price),
                is_available = ?, last_checked = ?
            WHERE id = ?
            """,
            (name, price, int(is_available), utcnow().isoformat(), product_id),
        )

    async def add_price_point(self, product_id: str, price: float) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO price_history (product_id, price, recorded_at) VALUES (?, ?, ?)",
                (product_id, price, utcnow().isoformat()),
            )
            await db.commit()

    async def get_price_history(self, product_id: str, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT product_id, price, recorded_at FROM price_history
                WHERE product_id = ? ORDER BY id DESC LIMIT ?
                """,
                (product_id, limit),
            )
            return [dict(row) for row in await cursor.fetchall()]

    async def add_alert(self, alert: ProductAlert) -> ProductAlert:
        await self._upsert("product_alerts", alert)
        return alert

    async def list_alerts(self, product_id: Optional[str] = None) -> list[ProductAlert]:
        if product_id is None:
            return await self._fetch_all("product_alerts", ProductAlert, order="created_at")
        return await self._fetch_all(
            "product_alerts", ProductAlert, "product_id = ?", (product_id,), order="created_at"
        )

    # Watchlist

    async def save_watchlist_item(self, item: WatchlistItem) -> WatchlistItem:
        await self._upsert("watchlist_items", item)
        return item

    async def get_watchlist_item(self, item_id: str) -> Optional[WatchlistItem]:
        return await self._fetch_one("watchlist_items", WatchlistItem, "id = ?", (item_id,))

    async def list_watchlist_for_product(self, product_id: str) -> list[WatchlistItem]:
        return await self._fetch_all(
            "watchlist_items", WatchlistItem, "product_id = ?", (product_id,), order="id"
        )

    async def list_watchlist_items(self, status: Optional[WatchlistStatus] = None) -> list[WatchlistItem]:
        if status is None:
            return await self._fetch_all("watchlist_items", WatchlistItem, order="id")
        return await self._fetch_all(
            "watchlist_items", WatchlistItem, "status = ?", (status.value,), order="id"
        )

    async def transition_watchlist_status(
        self,
        item_id: str,
        expected: WatchlistStatus | tuple[WatchlistStatus, ...],
        status: WatchlistStatus,
        touch_attempt: bool = False,
    ) -> bool:
        """Compare-and-set: change status only if it currently is ``expected``."""
        expected = expected if isinstance(expected, tuple) else (expected,)
        assignments = "status = ?"
        params: list[Any] = [status.value]
        if touch_attempt:
            assignments += ", last_attempt_at = ?"
            params.append(utcnow().isoformat())
        params.append(item_id)
        params.extend(s.value for s in expected)
        return await self._update(
            f"UPDATE watchlist_items SET {assignments} WHERE id = ? AND status IN ({_placeholders(expected)})",
            tuple(params),
        )

    async def update_watchlist_settings(
        self,
        item_id: str,
        auto_purchase: bool,
        max_price: Optional[float],
        quantity: int,
    ) -> bool:
        return await self._update(
            "UPDATE watchlist_items SET auto_purchase = ?, max_price = ?, quantity = ? WHERE id = ?",
            (int(auto_purchase), max_price, quantity, item_id),
        )

    # Accounts, proxies, checkout profiles

    async def save_store_account(self, account: StoreAccount) -> StoreAccount:
        await self._upsert("store_accounts", account)
        return account

    async def get_store_account(self, account_id: str) -> Optional[StoreAccount]:
        return await self._fetch_one("store_accounts", StoreAccount, "id = ?", (account_id,))

    async def find_active_store_account(self, user_id: str, store_type: str) -> Optional[StoreAccount]:
        return await self._fetch_one(
            "store_accounts",
            StoreAccount,
            "user_id = ? AND lower(store_type) = lower(?) AND is_active = 1 LIMIT 1",
            (user_id, store_type),
        )

    async def save_proxy(self, proxy: Proxy) -> Proxy:
        await self._upsert("proxies", proxy)
        return proxy

    async def get_proxy(self, proxy_id: str) -> Optional[Proxy]:
        return await self._fetch_one("proxies", Proxy, "id = ?", (proxy_id,))

    async def save_checkout_profile(self, profile: CheckoutProfile) -> CheckoutProfile:
        await self._upsert("checkout_profiles", profile)
        return profile

    async def get_checkout_profile(self, profile_id: str) -> Optional[CheckoutProfile]:
        return await self._fetch_one("checkout_profiles", CheckoutProfile, "id = ?", (profile_id,))

    async def find_checkout_profile(self, user_id: str) -> Optional[CheckoutProfile]:
        return await self._fetch_one(
            "checkout_profiles", CheckoutProfile, "user_id = ? ORDER BY id LIMIT 1", (user_id,)
        )

    # Purchase history (append-only)

    async def add_purchase_record(self, record: PurchaseRecord) -> PurchaseRecord:
        row = self._to_row("purchase_history", record)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"INSERT INTO purchase_history ({', '.join(row)}) VALUES ({_placeholders(row)})",
                tuple(row.values()),
            )
            await db.commit()
        return record

    async def list_purchase_history(self, user_id: Optional[str] = None) -> list[PurchaseRecord]:
        if user_id is None:
            return await self._fetch_all("purchase_history", PurchaseRecord, order="purchased_at")
        return await self._fetch_all(
            "purchase_history", PurchaseRecord, "user_id = ?", (user_id,), order="purchased_at"
        )
