"""私信回复 API"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas import MessageResponse, ReplyRequest
from ..services import SyncService

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/reply", response_model=MessageResponse)
async def reply_to_conversation(
    body: ReplyRequest,
    db: AsyncSession = Depends(get_db),
):
    """登录对应账号，在会话中发送回复，并保存发出的消息"""
    return await SyncService(db).send_reply(body.conversation_id, body.body)
