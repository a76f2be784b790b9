from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from ..database import Base


class Message(Base):
    """消息表 - 会话中的单条私信

    去重键：(account_id, external_message_id)，重复抓取同一会话不会产生重复行。
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("account_id", "external_message_id", name="uq_messages_account_external_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    conversation_id = Column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender = Column(String(255), nullable=False)
    recipient = Column(String(255), nullable=False)
    subject = Column(String(500))
    body = Column(Text, nullable=False, default="")
    timestamp = Column(DateTime(timezone=True), nullable=False)
    is_read = Column(Boolean, default=True)
    external_message_id = Column(String(255), nullable=False)
    attachment_url = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
