"""Scheduler for automatic inbox synchronization"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from .config import settings
from .database import AsyncSessionLocal
from .services import SyncService

logger = logging.getLogger(__name__)


class InboxSyncScheduler:
    """私信同步定时任务调度器"""

    def __init__(self):
        # 关键约束：
        # - max_instances=1：避免同步任务重入（上一次未完成时不并发启动下一次）
        # - coalesce=True：如果发生 misfire，则合并为一次执行（避免堆积）
        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )

    async def sync_all_accounts(self):
        """同步所有启用账号的私信"""
        logger.info("[SYNC] Starting automatic sync for all accounts...")

        async with AsyncSessionLocal() as db:
            try:
                results = await SyncService(db).sync_all_accounts()
                if not results:
                    logger.info("[SYNC] No active accounts found")
                    return

                for item in results:
                    if item["status"] == "success":
                        logger.info(
                            "[SYNC] Account %s synced: conversations=%s messages=%s",
                            item["account_name"],
                            item["conversations"],
                            item["messages"],
                        )
                    else:
                        logger.warning(
                            "[SYNC] Account %s failed: %s",
                            item["account_name"],
                            item["error"],
                        )

                logger.info("[SYNC] Automatic sync completed")

            except Exception as e:
                logger.exception("[SYNC] Sync error: %s", e)

    def start(self):
        """启动定时任务"""
        interval_minutes = int(getattr(settings, "sync_interval_minutes", 20) or 20)
        if interval_minutes <= 0:
            interval_minutes = 20

        if getattr(self.scheduler, "running", False):
            logger.info("[SCHEDULER] Scheduler already running")
            return

        self.scheduler.add_job(
            self.sync_all_accounts,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id='sync_all_accounts',
            name=f'Sync all inboxes every {interval_minutes} minutes',
            replace_existing=True
        )

        self.scheduler.start()
        logger.info("[SCHEDULER] Scheduler started: sync every %s minutes", interval_minutes)

    def shutdown(self):
        """关闭定时任务"""
        if not getattr(self.scheduler, "running", False):
            return
        self.scheduler.shutdown(wait=False)
        logger.info("[SCHEDULER] Scheduler stopped")


# 全局调度器实例
scheduler = InboxSyncScheduler()
