from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey
from ..database import Base


class SyncLog(Base):
    """同步日志表 - 每次同步尝试一条记录

    生命周期：开始时写入 status='running'，结束时恰好更新一次为 'success' 或 'error'。
    """
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), index=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    status = Column(String(20), nullable=False, default="running")  # 'running', 'success', 'error'
    conversations_seen = Column(Integer, default=0)
    messages_synced = Column(Integer, default=0)
    error_message = Column(Text)
