from .account import AccountCreate, AccountResponse
from .message import MessageResponse, ReplyRequest
from .sync import SyncLogResponse, SyncResultResponse

__all__ = [
    "AccountCreate",
    "AccountResponse",
    "MessageResponse",
    "ReplyRequest",
    "SyncLogResponse",
    "SyncResultResponse",
]
