from __future__ import annotations

import asyncio
import logging
from typing import Any

from .. import database
from .sync import SyncService

logger = logging.getLogger(__name__)

# 运行中的批量同步任务（进程内防重）。注意：进程重启后不会保留。
_batch_task: asyncio.Task | None = None
# 单账号后台同步任务：事件循环只持有弱引用，这里保留强引用直到任务结束。
_account_tasks: set[asyncio.Task] = set()


async def _run_account_sync(account_id: int) -> None:
    async with database.AsyncSessionLocal() as session:
        service = SyncService(session)
        try:
            await service.sync_account(account_id)
        except Exception:
            # sync_account 内部会写入失败日志；这里吞掉异常避免后台任务把服务器日志刷爆。
            return


def schedule_account_sync(account_id: int) -> dict[str, Any]:
    """在后台触发一次账号同步。"""
    task = asyncio.create_task(_run_account_sync(account_id))
    _account_tasks.add(task)
    task.add_done_callback(_account_tasks.discard)
    return {"scheduled": True, "account_id": account_id}


async def run_batch_sync() -> list[dict[str, Any]]:
    async with database.AsyncSessionLocal() as session:
        return await SyncService(session).sync_all_accounts()


def schedule_batch_sync() -> dict[str, Any]:
    """在后台触发一次全部账号同步；已有批量任务在跑时不重复启动。"""
    global _batch_task
    if _batch_task is not None and not _batch_task.done():
        return {"scheduled": False, "already_running": True}

    task = asyncio.create_task(run_batch_sync())
    _batch_task = task

    def _on_done(t: asyncio.Task) -> None:
        global _batch_task
        try:
            t.result()
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("[SYNC] Background batch sync crashed")
        finally:
            if _batch_task is t:
                _batch_task = None

    task.add_done_callback(_on_done)
    return {"scheduled": True, "already_running": False}
