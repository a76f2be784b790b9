from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from ..database import Base


class Conversation(Base):
    """会话表 - 与某个对方用户的一条私信线程

    去重键：(account_id, partner_name)。同一个对方在多次抓取中只对应一行。
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("account_id", "partner_name", name="uq_conversations_account_partner"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    partner_name = Column(String(255), nullable=False)
    last_message_preview = Column(Text)
    last_message_at = Column(DateTime(timezone=True))
    unread_count = Column(Integer, default=0)
    listing_title = Column(String(500))
    listing_url = Column(Text)
    # 站点上的会话地址（相对路径或绝对 URL），用于打开会话/回复
    thread_url = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
