from datetime import datetime

from pydantic import BaseModel, Field


class ReplyRequest(BaseModel):
    """在已同步的会话里回复一条消息"""

    conversation_id: int
    body: str = Field(min_length=1, max_length=4000)


class MessageResponse(BaseModel):
    id: int
    account_id: int
    conversation_id: int
    sender: str
    recipient: str
    body: str
    timestamp: datetime
    is_read: bool
    external_message_id: str
    attachment_url: str | None = None

    class Config:
        from_attributes = True
