from pydantic import BaseModel
from datetime import datetime


class SyncLogResponse(BaseModel):
    """同步日志响应模型"""
    id: int
    account_id: int
    started_at: datetime
    completed_at: datetime | None = None
    status: str
    conversations_seen: int | None = None
    messages_synced: int | None = None
    error_message: str | None = None

    class Config:
        from_attributes = True


class SyncResultResponse(BaseModel):
    """单账号同步结果"""
    status: str
    conversations_seen: int
    messages_synced: int
    sync_log_id: int

