"""页面 HTML 快照 → 结构化记录

纯函数：输入 (HTML, 选择器表, now)，输出会话摘要/消息记录；不做任何网络或浏览器操作。
单个条目解析失败只记录日志并跳过，不影响其余条目。
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime

from bs4 import BeautifulSoup, Tag

from ..utils.errors import ExtractionError
from .selectors import SelectorTable
from .timestamps import normalize_timestamp

logger = logging.getLogger(__name__)

_LEADING_INT_RE = re.compile(r"^\s*(\d+)")
UNKNOWN_NAME = "Unknown"


@dataclass(frozen=True, slots=True)
class ConversationSummary:
    partner_name: str
    preview: str
    last_message_at: datetime
    unread_count: int
    thread_locator: str
    listing_title: str | None = None
    listing_url: str | None = None


@dataclass(frozen=True, slots=True)
class MessageRecord:
    sender: str
    recipient: str
    body: str
    timestamp: datetime
    external_message_id: str
    is_read: bool = True
    is_from_us: bool = False
    attachment_url: str | None = None
    subject: str | None = None


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def _first(node: Tag, table: SelectorTable, name: str) -> Tag | None:
    for candidate in table.candidates(name):
        found = node.select_one(candidate)
        if found is not None:
            return found
    return None


def _text(node: Tag, table: SelectorTable, name: str) -> str:
    found = _first(node, table, name)
    if found is None:
        return ""
    return " ".join(found.get_text(" ", strip=True).split())


def _attr(node: Tag, table: SelectorTable, name: str, attribute: str) -> str | None:
    found = _first(node, table, name)
    if found is None:
        return None
    value = found.get(attribute)
    if isinstance(value, list):
        value = " ".join(value)
    value = (value or "").strip()
    return value or None


def _has_class(node: Tag, class_name: str) -> bool:
    return class_name in (node.get("class") or [])


def parse_unread_count(text: str | None) -> int:
    """按 parseInt 的习惯取开头的整数（"3 neue" → 3），解析失败为 0。"""
    m = _LEADING_INT_RE.match(text or "")
    return int(m.group(1)) if m else 0


def extract_conversations(html: str, table: SelectorTable, now: datetime) -> list[ConversationSummary]:
    """解析收件箱页面：每一行会话 → ConversationSummary（没有会话地址的行直接跳过）。"""
    soup = _soup(html)
    rows = soup.select(table.css("conversation_row"))

    conversations: list[ConversationSummary] = []
    for index, row in enumerate(rows):
        try:
            locator = _attr(row, table, "conversation_link", "href")
            if not locator:
                raise ExtractionError(f"第 {index} 行会话缺少会话地址")

            conversations.append(
                ConversationSummary(
                    partner_name=_text(row, table, "partner_name") or UNKNOWN_NAME,
                    preview=_text(row, table, "message_preview"),
                    last_message_at=normalize_timestamp(_text(row, table, "conversation_timestamp"), now),
                    unread_count=parse_unread_count(_text(row, table, "unread_badge")),
                    thread_locator=locator,
                    listing_title=_text(row, table, "listing_title") or None,
                    listing_url=_attr(row, table, "listing_link", "href"),
                )
            )
        except Exception as e:
            logger.warning("[PARSER] Skip conversation row index=%s: %s", index, e)

    return conversations


def synthesize_message_id(timestamp: datetime, index: int, thread_locator: str | None = None) -> str:
    """站点不给 id 时的兜底去重键：由（会话地址, 分钟精度的时间, 页面内位置）决定。

    去重键是账号范围的，不带会话地址时两个会话里同一天、同位置的消息会撞 id。
    """
    stamp = timestamp.replace(second=0, microsecond=0).isoformat()
    if not thread_locator:
        return f"msg-{stamp}-{index}"
    scope = hashlib.sha1(thread_locator.encode("utf-8")).hexdigest()[:10]
    return f"msg-{scope}-{stamp}-{index}"


def _guess_counterpart(items: list[Tag], table: SelectorTable, account_email: str) -> str:
    for item in items:
        sender = _text(item, table, "message_sender")
        if sender and sender != account_email and not _has_class(item, table.sent_marker_class):
            return sender
    return UNKNOWN_NAME


def extract_messages(
    html: str,
    table: SelectorTable,
    account_email: str,
    now: datetime,
    *,
    partner_name: str | None = None,
    thread_locator: str | None = None,
) -> list[MessageRecord]:
    """解析会话页面：每个消息气泡 → MessageRecord（按页面顺序）。

    - 方向：发送者等于账号邮箱，或气泡带“已发送”标记 → 我方发出
    - recipient：我方发出时为对方；对方发来时为账号邮箱
    - external_message_id：优先取 data-message-id，否则由（会话地址, 时间, 位置）合成
    """
    soup = _soup(html)
    items = soup.select(table.css("message_item"))
    counterpart = (partner_name or "").strip() or _guess_counterpart(items, table, account_email)

    messages: list[MessageRecord] = []
    for index, item in enumerate(items):
        try:
            sender_text = _text(item, table, "message_sender") or UNKNOWN_NAME
            is_from_us = sender_text == account_email or _has_class(item, table.sent_marker_class)

            body = _text(item, table, "message_body")
            attachment_url = _attr(item, table, "attachment_link", "href")
            if not body and not attachment_url:
                raise ExtractionError(f"第 {index} 条消息没有正文也没有附件")

            timestamp = normalize_timestamp(_text(item, table, "message_timestamp"), now)

            raw_id = item.get(table.message_id_attribute)
            external_id = (raw_id or "").strip() if isinstance(raw_id, str) else ""
            if not external_id:
                external_id = synthesize_message_id(timestamp, index, thread_locator)

            messages.append(
                MessageRecord(
                    sender=account_email if is_from_us else sender_text,
                    recipient=counterpart if is_from_us else account_email,
                    body=body,
                    timestamp=timestamp,
                    external_message_id=external_id,
                    is_read=not _has_class(item, table.unread_marker_class),
                    is_from_us=is_from_us,
                    attachment_url=attachment_url,
                )
            )
        except Exception as e:
            logger.warning("[PARSER] Skip message item index=%s: %s", index, e)

    return messages
