"""Inbox synchronization API"""
from datetime import timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import SyncLog
from ..schemas import SyncLogResponse, SyncResultResponse
from ..services import SyncService, schedule_batch_sync

router = APIRouter(prefix="/sync", tags=["sync"])


def _with_utc(logs):
    # SQLite 返回 naive datetime（实际是 UTC），这里补齐时区信息
    for log in logs:
        if log.started_at and log.started_at.tzinfo is None:
            log.started_at = log.started_at.replace(tzinfo=timezone.utc)
        if log.completed_at and log.completed_at.tzinfo is None:
            log.completed_at = log.completed_at.replace(tzinfo=timezone.utc)
    return logs


@router.post("/trigger/{account_id}", response_model=SyncResultResponse)
async def trigger_sync(
    account_id: int,
    db: AsyncSession = Depends(get_db)
):
    """手动触发账号私信同步（同步执行，返回本次结果）。

    抓取类错误由 main.py 的 ScraperError handler 统一映射状态码。
    """
    return await SyncService(db).sync_account(account_id)


@router.post("/trigger-all")
async def trigger_sync_all():
    """在后台同步全部启用账号（立即返回）"""
    return schedule_batch_sync()


@router.get("/logs", response_model=list[SyncLogResponse])
async def get_sync_logs(
    account_id: int | None = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_db)
):
    """获取同步历史记录"""
    query = select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
    if account_id is not None:
        query = query.where(SyncLog.account_id == account_id)

    result = await db.execute(query)
    return _with_utc(result.scalars().all())


@router.get("/logs/latest", response_model=list[SyncLogResponse])
async def get_latest_sync_logs(
    account_id: int | None = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
):
    """获取每个账号“最新一条”同步日志（用于前端同步指示器，减少轮询数据量）。

    说明：
    - 与 `/sync/logs` 不同：这里的 `limit` 代表“最多返回多少个账号的最新记录”，
      而不是“返回多少条历史记录”。
    - 查询实现使用窗口函数 row_number()，兼容 PostgreSQL / SQLite。
    """
    rn = func.row_number().over(
        partition_by=SyncLog.account_id,
        order_by=(SyncLog.started_at.desc(), SyncLog.id.desc()),
    ).label("rn")

    base = select(SyncLog.id.label("id"), rn)
    if account_id is not None:
        base = base.where(SyncLog.account_id == account_id)

    subq = base.subquery()
    query = (
        select(SyncLog)
        .join(subq, SyncLog.id == subq.c.id)
        .where(subq.c.rn == 1)
        .order_by(SyncLog.started_at.desc())
        .limit(limit)
    )

    result = await db.execute(query)
    return _with_utc(result.scalars().all())
