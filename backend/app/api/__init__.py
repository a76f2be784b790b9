from .accounts import router as accounts_router
from .messages import router as messages_router
from .sync import router as sync_router

__all__ = [
    "accounts_router",
    "messages_router",
    "sync_router",
]
