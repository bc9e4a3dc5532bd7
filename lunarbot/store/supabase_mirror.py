"""Optional Supabase mirror for purchase history and product alerts."""
import asyncio
import logging
from typing import Any, Optional

from pydantic import BaseModel
from supabase import Client, create_client
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from lunarbot.config import config
from lunarbot.parse.redact import redact_json
from lunarbot.store.spool import SpoolManager

logger = logging.getLogger(__name__)

PURCHASE_HISTORY_TABLE = "purchase_history"
PRODUCT_ALERTS_TABLE = "product_alerts"


class SupabaseMirror:
    """Upserts rows to Supabase; rows that cannot be written are spooled to disk."""

    def __init__(self, spool: Optional[SpoolManager] = None, client: Optional[Client] = None):
        if client is None:
            if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE:
                raise ValueError("Supabase configuration missing")
            client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE)
        self.client = client
        self.spool = spool or SpoolManager()

    @classmethod
    def from_config(cls, spool: Optional[SpoolManager] = None) -> Optional["SupabaseMirror"]:
        """None when the mirror is not configured."""
        if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE:
            return None
        try:
            return cls(spool=spool)
        except Exception as e:
            logger.warning(f"Supabase mirror initialization failed: {e}")
            return None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((Exception,)),
        reraise=True,
    )
    def _upsert_sync(self, table: str, row: dict[str, Any]) -> None:
        """Synchronous upsert (called from thread pool)."""
        self.client.table(table).upsert(row, on_conflict="id").execute()

    async def upsert(self, table: str, record: BaseModel | dict[str, Any]) -> bool:
        """Mirror one row. Returns False and spools the row when Supabase rejects it."""
        row = record.model_dump(mode="json") if isinstance(record, BaseModel) else record
        row = redact_json(row)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._upsert_sync, table, row)
            logger.debug(f"Mirrored {table} row {row.get('id')}")
            return True
        except Exception as e:
            logger.error(f"Supabase upsert to {table} failed, spooling: {e}")
            await self.spool.write_row(table, row)
            return False

    async def record_purchase(self, record: BaseModel) -> bool:
        return await self.upsert(PURCHASE_HISTORY_TABLE, record)

    async def record_alert(self, alert: BaseModel) -> bool:
        return await self.upsert(PRODUCT_ALERTS_TABLE, alert)

    async def replay_spool(self) -> int:
        """Re-send spooled rows. A table's spool is deleted only when every row went through."""
        sent = 0
        loop = asyncio.get_running_loop()
        for table in list(self.spool.list_spooled_tables()):
            rows = await self.spool.read_rows(table)
            try:
                for row in rows:
                    await loop.run_in_executor(None, self._upsert_sync, table, row)
                    sent += 1
            except Exception as e:
                logger.warning(f"Spool replay for {table} stopped: {e}")
                continue
            await self.spool.delete_table(table)
            logger.info(f"Replayed {len(rows)} spooled rows into {table}")
        return sent

    async def test_connection(self) -> bool:
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                lambda: self.client.table(PURCHASE_HISTORY_TABLE).select("id").limit(1).execute(),
            )
            logger.info("Supabase connection successful")
            return True
        except Exception as e:
            logger.error(f"Supabase connection test failed: {e}")
            return False
