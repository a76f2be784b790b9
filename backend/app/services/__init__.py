from .sync import SyncService
from .background import schedule_account_sync, schedule_batch_sync
from .browser import BrowserSession, SessionState

__all__ = ["SyncService", "schedule_account_sync", "schedule_batch_sync", "BrowserSession", "SessionState"]
