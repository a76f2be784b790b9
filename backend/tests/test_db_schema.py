from __future__ import annotations

import sys
import unittest
from pathlib import Path
from typing import cast

from typing_extensions import override

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeMeta
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from backend.app import models  # noqa: F401
from backend.app.database import Base as _Base  # pyright: ignore[reportAny]
from backend.app.database import _ensure_schema

Base = cast(DeclarativeMeta, _Base)


class DBSchemaIndexTests(unittest.IsolatedAsyncioTestCase):
    engine: AsyncEngine | None = None

    @override
    async def asyncSetUp(self):
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        self.engine = engine

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @override
    async def asyncTearDown(self):
        if self.engine is not None:
            await self.engine.dispose()

    async def _indexes(self, table: str) -> set[str]:
        assert self.engine is not None
        async with self.engine.connect() as conn:
            result = await conn.execute(text(f"PRAGMA index_list({table})"))
            return {row[1] for row in result.fetchall()}

    async def test_ensure_schema_adds_indexes_and_is_idempotent(self):
        assert self.engine is not None
        async with self.engine.begin() as conn:
            await _ensure_schema(conn)

        self.assertTrue(
            {"idx_sync_logs_started_at_desc", "idx_sync_logs_account_started_desc"}
            <= await self._indexes("sync_logs")
        )
        self.assertIn("idx_conversations_account_last_msg", await self._indexes("conversations"))
        self.assertIn("idx_messages_conversation_ts", await self._indexes("messages"))

        async with self.engine.begin() as conn:
            await _ensure_schema(conn)

    async def test_dedup_constraints_are_created_with_tables(self):
        assert self.engine is not None
        async with self.engine.connect() as conn:
            result = await conn.execute(text("PRAGMA index_list(messages)"))
            unique = [row for row in result.fetchall() if row[2]]
        # (account_id, external_message_id) 唯一键
        self.assertTrue(unique)


if __name__ == "__main__":
    unittest.main()
