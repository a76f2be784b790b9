from .account import Account
from .conversation import Conversation
from .message import Message
from .sync_log import SyncLog

__all__ = [
    "Account",
    "Conversation",
    "Message",
    "SyncLog",
]
