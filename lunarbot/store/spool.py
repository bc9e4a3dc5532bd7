"""Disk spool for buffering mirror writes when Supabase is unavailable."""
import logging
from pathlib import Path
from typing import Any, Iterator

import aiofiles
import orjson

from lunarbot.config import SPOOL_DIR

logger = logging.getLogger(__name__)


class SpoolManager:
    """JSONL spool files, one per destination table."""

    def __init__(self, spool_dir: Path = SPOOL_DIR):
        self.spool_dir = spool_dir
        self.spool_dir.mkdir(parents=True, exist_ok=True)

    def _get_spool_file(self, table: str) -> Path:
        return self.spool_dir / f"{table}.jsonl"

    async def write_row(self, table: str, row: dict[str, Any]) -> None:
        """Append a row to the table's spool file."""
        async with aiofiles.open(self._get_spool_file(table), "ab") as f:
            await f.write(orjson.dumps(row) + b"\n")

    async def read_rows(self, table: str) -> list[dict[str, Any]]:
        spool_file = self._get_spool_file(table)
        if not spool_file.exists():
            return []

        rows = []
        async with aiofiles.open(spool_file, "rb") as f:
            async for line in f:
                if not line.strip():
                    continue
                try:
                    rows.append(orjson.loads(line))
                except orjson.JSONDecodeError as e:
                    logger.warning(f"Skipping corrupt spool line in {spool_file.name}: {e}")
        return rows

    async def delete_table(self, table: str) -> None:
        """Delete a spool file after successful replay."""
        spool_file = self._get_spool_file(table)
        if spool_file.exists():
            spool_file.unlink()

    def list_spooled_tables(self) -> Iterator[str]:
        return (path.stem for path in self.spool_dir.glob("*.jsonl"))
