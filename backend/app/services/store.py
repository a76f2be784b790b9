"""收件箱持久化（账号 / 会话 / 消息 / 同步日志）

同步编排层只通过这里读写数据库：
- 会话按 (account_id, partner_name) 去重
- 消息按 (account_id, external_message_id) 去重
- 所有写入只 flush 不 commit；提交粒度由调用方（sync.py）决定

时间统一以“无时区的 UTC”落库（SQLite 本身不保存时区信息）。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, cast

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Account, Conversation, Message, SyncLog
from ..utils.errors import AccountNotFound
from .parser import ConversationSummary, MessageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountCredentials:
    email: str
    password_ciphertext: str


def to_utc_naive(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InboxStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_account_by_id(self, account_id: int) -> Account:
        account = await self.db.get(Account, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def get_active_accounts(self) -> list[Account]:
        result = await self.db.execute(
            select(Account).where(Account.is_active.is_(True)).order_by(Account.id.asc())
        )
        return list(result.scalars().all())

    async def get_account_credentials(self, account_id: int) -> AccountCredentials:
        """返回账号邮箱 + 密码密文（解密只发生在 utils/crypto.py）。"""
        account = await self.get_account_by_id(account_id)
        return AccountCredentials(
            email=str(account.email or ""),
            password_ciphertext=str(account.encrypted_password or ""),
        )

    async def get_conversation_by_id(self, conversation_id: int) -> Conversation | None:
        return await self.db.get(Conversation, conversation_id)

    async def upsert_conversation(self, account_id: int, summary: ConversationSummary) -> Conversation:
        """按 (account_id, partner_name) 更新或插入会话。"""
        result = await self.db.execute(
            select(Conversation).where(
                Conversation.account_id == account_id,
                Conversation.partner_name == summary.partner_name,
            )
        )
        conversation = result.scalar_one_or_none()

        fields: dict[str, Any] = {
            "last_message_preview": summary.preview,
            "last_message_at": to_utc_naive(summary.last_message_at),
            "unread_count": int(summary.unread_count or 0),
            "listing_title": summary.listing_title,
            "listing_url": summary.listing_url,
            "thread_url": summary.thread_locator,
        }

        if conversation is not None:
            conversation_any: Any = cast(Any, conversation)
            for key, value in fields.items():
                setattr(conversation_any, key, value)
        else:
            conversation = Conversation(
                account_id=account_id,
                partner_name=summary.partner_name,
                **fields,
            )
            self.db.add(conversation)

        await self.db.flush()
        return conversation

    async def upsert_message(
        self,
        account_id: int,
        conversation_id: int,
        record: MessageRecord,
    ) -> tuple[Message, bool]:
        """按 (account_id, external_message_id) 更新或插入消息；返回 (消息, 是否新建)。"""
        result = await self.db.execute(
            select(Message).where(
                Message.account_id == account_id,
                Message.external_message_id == record.external_message_id,
            )
        )
        message = result.scalar_one_or_none()

        fields: dict[str, Any] = {
            "conversation_id": conversation_id,
            "sender": record.sender,
            "recipient": record.recipient,
            "subject": record.subject,
            "body": record.body,
            "timestamp": to_utc_naive(record.timestamp),
            "is_read": bool(record.is_read),
            "attachment_url": record.attachment_url,
        }

        created = message is None
        if message is not None:
            message_any: Any = cast(Any, message)
            for key, value in fields.items():
                setattr(message_any, key, value)
        else:
            message = Message(
                account_id=account_id,
                external_message_id=record.external_message_id,
                **fields,
            )
            self.db.add(message)

        await self.db.flush()
        return message, created

    async def create_sync_log(self, account_id: int, started_at: datetime | None = None) -> int:
        """写入一条 running 状态的同步日志，返回其 id。"""
        log = SyncLog(
            account_id=account_id,
            started_at=to_utc_naive(started_at) or utc_now(),
            status="running",
            conversations_seen=0,
            messages_synced=0,
            error_message=None,
        )
        self.db.add(log)
        await self.db.flush()
        return int(cast(Any, log).id)

    async def update_sync_log(
        self,
        log_id: int,
        *,
        status: str,
        messages_synced: int,
        conversations_seen: int = 0,
        error_message: str | None = None,
    ) -> None:
        """把同步日志更新为终态（success / error）。"""
        await self.db.execute(
            update(SyncLog)
            .where(SyncLog.id == log_id)
            .values(
                status=status,
                completed_at=utc_now(),
                messages_synced=int(messages_synced or 0),
                conversations_seen=int(conversations_seen or 0),
                error_message=error_message,
            )
        )

    async def update_last_synced_at(self, account_id: int, when: datetime | None = None) -> None:
        await self.db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(last_synced_at=to_utc_naive(when) or utc_now())
        )
