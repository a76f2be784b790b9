"""收件箱同步编排

一次同步（单账号）：

    写 running 日志 → 解密凭据 → 打开浏览器 → 登录 → 列出会话
    → 逐个会话：更新/插入会话 → 抓取消息 → 逐条更新/插入 → 提交
    → 日志置为 success，更新 last_synced_at

约束：
- 登录/列会话阶段的失败（含凭据无法解密）会中止整个账号的同步，日志置为 error 并重新抛出。
- 单个会话失败只记录日志并跳过，不影响其余会话；日志仍以 success 结束。
- 浏览器会话在任何退出路径上都会被关闭。
- 同一账号同一时刻只会有一次同步/回复在跑（进程内锁）。
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar, cast

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models import Message
from ..utils.crypto import CredentialCipher, get_credential_cipher
from ..utils.errors import ConversationNotFound, NavigationTimeout, describe_sync_error
from .browser import BrowserSession
from .parser import UNKNOWN_NAME, ConversationSummary, MessageRecord
from .retry import call_with_retry
from .store import AccountCredentials, InboxStore, to_utc_naive

T = TypeVar("T")

_ACCOUNT_SYNC_LOCKS: dict[int, asyncio.Lock] = {}
logger = logging.getLogger(__name__)


def _account_lock(account_id: int) -> asyncio.Lock:
    lock = _ACCOUNT_SYNC_LOCKS.get(account_id)
    if lock is None:
        lock = asyncio.Lock()
        _ACCOUNT_SYNC_LOCKS[account_id] = lock
    return lock


@dataclass
class _SyncProgress:
    conversations_seen: int = 0
    messages_synced: int = 0


class SyncService:
    """收件箱同步服务"""

    def __init__(
        self,
        db: AsyncSession,
        *,
        session_factory: Callable[[], BrowserSession] | None = None,
        cipher: CredentialCipher | None = None,
        conversation_delay_seconds: float | None = None,
        account_delay_seconds: float | None = None,
        attempt_timeout_seconds: float | None = None,
    ):
        self.db = db
        self.store = InboxStore(db)
        self._session_factory = session_factory or BrowserSession
        self._cipher = cipher
        self._conversation_delay = float(
            settings.conversation_delay_seconds if conversation_delay_seconds is None else conversation_delay_seconds
        )
        self._account_delay = float(
            settings.account_delay_seconds if account_delay_seconds is None else account_delay_seconds
        )
        self._attempt_timeout = float(
            settings.sync_attempt_timeout_seconds if attempt_timeout_seconds is None else attempt_timeout_seconds
        )

    def _decrypt(self, ciphertext: str) -> str:
        cipher = self._cipher or get_credential_cipher()
        return cipher.decrypt(ciphertext)

    async def _with_retry(self, fn: Callable[[], Awaitable[T]], *, label: str) -> T:
        # 只重试页面加载超时；元素缺失/登录失败/解析失败重试也不会成功
        return await call_with_retry(
            fn,
            retry_on=(NavigationTimeout,),
            max_attempts=int(settings.scrape_max_attempts or 1),
            backoff_seconds=float(settings.scrape_retry_backoff_seconds or 0),
            max_backoff_seconds=float(settings.scrape_retry_max_backoff_seconds or 0),
            jitter_ratio=float(settings.scrape_retry_jitter_ratio or 0),
            label=label,
        )

    async def sync_account(self, account_id: int) -> dict[str, Any]:
        """同步单个账号的私信。

        返回 {"status", "conversations_seen", "messages_synced", "sync_log_id"}；
        不可恢复的失败（登录失败、凭据无法解密、收件箱打不开等）会在写完 error 日志后重新抛出。
        """
        async with _account_lock(account_id):
            account = await self.store.get_account_by_id(account_id)
            email = str(account.email or "")
            ciphertext = str(account.encrypted_password or "")

            # 先提交 running 日志，再做任何网络操作
            sync_log_id = await self.store.create_sync_log(account_id)
            await self.db.commit()
            logger.info("[SYNC] Start account_id=%s sync_log_id=%s", account_id, sync_log_id)

            progress = _SyncProgress()
            try:
                timeout_ctx = asyncio.timeout(self._attempt_timeout) if self._attempt_timeout > 0 else nullcontext()
                async with timeout_ctx:
                    await self._run_attempt(account_id, email, ciphertext, progress)
            except Exception as e:
                msg = describe_sync_error(e)
                logger.warning("[SYNC] Failed account_id=%s sync_log_id=%s: %s", account_id, sync_log_id, msg)
                await self.db.rollback()
                await self.store.update_sync_log(
                    sync_log_id,
                    status="error",
                    messages_synced=progress.messages_synced,
                    conversations_seen=progress.conversations_seen,
                    error_message=msg,
                )
                await self.db.commit()
                raise

            await self.store.update_sync_log(
                sync_log_id,
                status="success",
                messages_synced=progress.messages_synced,
                conversations_seen=progress.conversations_seen,
                error_message=None,
            )
            await self.store.update_last_synced_at(account_id)
            await self.db.commit()

            logger.info(
                "[SYNC] Done account_id=%s conversations=%s messages=%s",
                account_id,
                progress.conversations_seen,
                progress.messages_synced,
            )
            return {
                "status": "success",
                "conversations_seen": progress.conversations_seen,
                "messages_synced": progress.messages_synced,
                "sync_log_id": sync_log_id,
            }

    async def _run_attempt(
        self,
        account_id: int,
        email: str,
        ciphertext: str,
        progress: _SyncProgress,
    ) -> None:
        # 解密失败时不启动浏览器
        password = self._decrypt(ciphertext)

        async with self._session_factory() as session:
            await session.login(email, password)
            conversations = await self._with_retry(session.list_conversations, label="inbox")
            progress.conversations_seen = len(conversations)

            for index, summary in enumerate(conversations):
                if index > 0 and self._conversation_delay > 0:
                    await asyncio.sleep(self._conversation_delay)
                try:
                    synced = await self._sync_conversation(session, account_id, email, summary)
                except Exception:
                    await self.db.rollback()
                    logger.exception(
                        "[SYNC] Conversation failed account_id=%s partner=%s, skipped",
                        account_id,
                        summary.partner_name,
                    )
                    continue
                progress.messages_synced += synced

    async def _sync_conversation(
        self,
        session: BrowserSession,
        account_id: int,
        email: str,
        summary: ConversationSummary,
    ) -> int:
        conversation = await self.store.upsert_conversation(account_id, summary)
        await self.db.commit()
        conversation_id = int(conversation.id)

        messages = await self._with_retry(
            lambda: session.list_messages(
                summary.thread_locator,
                email,
                partner_name=summary.partner_name,
            ),
            label=f"thread:{summary.partner_name}",
        )

        synced = 0
        for record in messages:
            await self.store.upsert_message(account_id, conversation_id, record)
            synced += 1
        await self.db.commit()
        return synced

    async def sync_all_accounts(self) -> list[dict[str, Any]]:
        """依次同步所有启用账号；单个账号失败不影响后续账号。"""
        accounts = await self.store.get_active_accounts()
        targets = [(int(a.id), str(a.display_name or a.email or a.id)) for a in accounts]
        logger.info("[SYNC] Batch start accounts=%s", len(targets))

        results: list[dict[str, Any]] = []
        for index, (account_id, account_name) in enumerate(targets):
            if index > 0 and self._account_delay > 0:
                await asyncio.sleep(self._account_delay)
            try:
                result = await self.sync_account(account_id)
            except Exception as e:
                results.append(
                    {
                        "account_id": account_id,
                        "account_name": account_name,
                        "status": "error",
                        "conversations": 0,
                        "messages": 0,
                        "error": describe_sync_error(e),
                    }
                )
                continue

            results.append(
                {
                    "account_id": account_id,
                    "account_name": account_name,
                    "status": "success",
                    "conversations": result["conversations_seen"],
                    "messages": result["messages_synced"],
                    "error": None,
                }
            )

        failed = sum(1 for r in results if r["status"] == "error")
        logger.info("[SYNC] Batch done accounts=%s failed=%s", len(results), failed)
        return results

    async def deliver_reply(
        self,
        thread_locator: str,
        body: str,
        credentials: AccountCredentials,
        *,
        partner_name: str | None = None,
    ) -> MessageRecord:
        """登录一次并在会话中发送回复；返回待落库的消息记录（不写数据库）。"""
        password = self._decrypt(credentials.password_ciphertext)

        async with self._session_factory() as session:
            await session.login(credentials.email, password)
            await session.send_message(thread_locator, body)
            sent_at = session.now()

        return MessageRecord(
            sender=credentials.email,
            recipient=(partner_name or "").strip() or UNKNOWN_NAME,
            body=body,
            timestamp=sent_at,
            external_message_id=f"sent-{uuid.uuid4().hex}",
            is_read=True,
            is_from_us=True,
        )

    async def send_reply(self, conversation_id: int, body: str) -> Message:
        """按会话 id 发送回复，并把发出的消息写入数据库。"""
        conversation = await self.store.get_conversation_by_id(conversation_id)
        if conversation is None or not conversation.thread_url:
            raise ConversationNotFound(conversation_id)

        account_id = int(conversation.account_id)
        partner_name = str(conversation.partner_name or "")
        thread_locator = str(conversation.thread_url)

        async with _account_lock(account_id):
            credentials = await self.store.get_account_credentials(account_id)
            record = await self.deliver_reply(
                thread_locator,
                body,
                credentials,
                partner_name=partner_name,
            )

            message, _ = await self.store.upsert_message(account_id, conversation_id, record)
            conversation_any: Any = cast(Any, conversation)
            setattr(conversation_any, "last_message_preview", record.body)
            setattr(conversation_any, "last_message_at", to_utc_naive(record.timestamp))
            await self.db.commit()

        logger.info("[REPLY] Sent account_id=%s conversation_id=%s", account_id, conversation_id)
        return message
