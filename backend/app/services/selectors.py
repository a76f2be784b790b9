"""站点选择器表（版本化）

说明：
- 逻辑元素名 → 有序的候选 CSS 选择器列表（第一个是主选择器，后面是备选）。
- 抓取逻辑只认逻辑名；站点改版时只需要新增/修改一张表并切换 SELECTOR_TABLE_VERSION。
- 同一套 CSS 选择器既用于 Playwright 的在线页面，也用于 parser 对 HTML 快照的离线解析。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import urljoin

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config import settings
from ..utils.errors import ElementNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectorTable:
    version: str
    base_url: str
    login_path: str
    inbox_path: str
    selectors: Mapping[str, tuple[str, ...]]
    # 不是“元素”而是“元素上的标记”：用于判断消息方向/已读状态
    sent_marker_class: str = "message-sent"
    unread_marker_class: str = "unread"
    message_id_attribute: str = "data-message-id"
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        frozen: dict[str, tuple[str, ...]] = {}
        for name, candidates in self.selectors.items():
            items = tuple(c.strip() for c in candidates if c and c.strip())
            if not items:
                raise ValueError(f"选择器表 {self.version}: {name} 没有任何候选选择器")
            frozen[name] = items
        object.__setattr__(self, "selectors", MappingProxyType(frozen))

    def candidates(self, name: str) -> tuple[str, ...]:
        try:
            return self.selectors[name]
        except KeyError:
            raise KeyError(f"选择器表 {self.version} 未定义逻辑元素: {name}") from None

    def css(self, name: str) -> str:
        """把候选列表合并成一个 selector group（任意一个命中即可，结果按文档顺序）。"""
        return ", ".join(self.candidates(name))

    def with_base_url(self, base_url: str | None) -> "SelectorTable":
        base = (base_url or "").strip().rstrip("/")
        if not base or base == self.base_url:
            return self
        return SelectorTable(
            version=self.version,
            base_url=base,
            login_path=self.login_path,
            inbox_path=self.inbox_path,
            selectors=dict(self.selectors),
            sent_marker_class=self.sent_marker_class,
            unread_marker_class=self.unread_marker_class,
            message_id_attribute=self.message_id_attribute,
            extra=self.extra,
        )

    def absolute_url(self, locator: str) -> str:
        """会话地址可能是相对路径：统一补全为绝对 URL。"""
        value = (locator or "").strip()
        if value.startswith(("http://", "https://")):
            return value
        return urljoin(f"{self.base_url}/", value.lstrip("/"))

    @property
    def login_url(self) -> str:
        return self.absolute_url(self.login_path)

    @property
    def inbox_url(self) -> str:
        return self.absolute_url(self.inbox_path)


KLEINANZEIGEN_2026_02 = SelectorTable(
    version="2026-02",
    base_url="https://www.kleinanzeigen.de",
    login_path="/m-einloggen.html",
    inbox_path="/m-nachrichten.html",
    selectors={
        # 登录页
        "login_email": ("#login-email", 'input[name="email"]'),
        "login_password": ("#login-password", 'input[name="password"]'),
        "login_submit": ("#login-submit", 'button[type="submit"]'),
        "login_error": (".messagebox--error",),
        # 登录成功后才会出现的元素（退出链接 / 用户菜单）
        "login_marker": ('a[href*="logout"]', ".user-menu"),
        # 收件箱
        "conversation_row": (".conversation-item", '[data-testid="conversation-item"]'),
        "conversation_link": ("a.conversation-link", "a[href]"),
        "partner_name": (".conversation-partner-name",),
        "message_preview": (".conversation-last-message",),
        "conversation_timestamp": (".conversation-timestamp",),
        "unread_badge": (".unread-badge",),
        "listing_title": (".conversation-listing-title",),
        "listing_link": (".conversation-listing-link",),
        # 会话详情
        "message_item": (".message-item", '[data-testid="message"]'),
        "message_sender": (".message-sender",),
        "message_body": (".message-body",),
        "message_timestamp": (".message-timestamp",),
        "attachment_link": (".message-attachment",),
        "reply_textarea": ("#reply-message", 'textarea[name="message"]'),
        "send_button": ("#send-message-button",),
    },
)

SELECTOR_TABLES: Mapping[str, SelectorTable] = MappingProxyType(
    {
        KLEINANZEIGEN_2026_02.version: KLEINANZEIGEN_2026_02,
    }
)


def get_selector_table(version: str | None = None, *, base_url: str | None = None) -> SelectorTable:
    """按版本取选择器表；未知版本直接报错（避免静默用错表）。"""
    key = (version or settings.selector_table_version or "").strip()
    table = SELECTOR_TABLES.get(key)
    if table is None:
        raise KeyError(f"未知的选择器表版本: {key!r}（可选: {', '.join(SELECTOR_TABLES)}）")
    return table.with_base_url(base_url if base_url is not None else settings.site_base_url)


async def resolve_element(page: Any, table: SelectorTable, name: str, *, timeout_ms: int) -> Any:
    """在线页面上解析逻辑元素：返回第一个命中的候选选择器对应的元素。

    先在超时上限内等待“任意一个候选出现”，再按候选顺序取第一个存在的元素，
    保证主选择器优先于备选选择器。都不存在时抛出 ElementNotFound。
    """
    try:
        await page.wait_for_selector(table.css(name), timeout=timeout_ms)
    except PlaywrightTimeoutError as e:
        raise ElementNotFound(name, f"{timeout_ms}ms 内未出现") from e
    except PlaywrightError as e:
        raise ElementNotFound(name, str(e)) from e

    for candidate in table.candidates(name):
        try:
            handle = await page.query_selector(candidate)
        except PlaywrightError:
            logger.debug("[SELECTORS] query failed name=%s selector=%s", name, candidate, exc_info=True)
            continue
        if handle is not None:
            return handle

    raise ElementNotFound(name)
