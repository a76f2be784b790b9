"""浏览器会话（Playwright）

一个 BrowserSession = 一个浏览器进程 + 一个页面，状态机：

    UNINITIALIZED → INITIALIZED → AUTHENTICATED → CLOSED
    任意状态遇到不可恢复错误 → FAILED（close() 之后仍为 CLOSED）

不可恢复：登录失败、浏览器启动失败、页面/浏览器已被关闭。
单次导航超时、元素缺失只让本次调用失败，会话仍是 AUTHENTICATED，编排层可以在同一会话里重试或跳过该会话。

约定：
- 所有导航/等待都有明确的超时；超时即失败，以类型化异常抛给调用方（见 utils/errors.py）。
- 会话内部从不重试；重试策略属于编排层。
- 推荐用 `async with BrowserSession(...) as session:`，保证任何退出路径都会 close()。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from ..config import settings
from ..utils.errors import (
    ElementNotFound,
    LoginFailed,
    NavigationFailed,
    NavigationTimeout,
    ScraperError,
    SendFailed,
    SessionStateError,
    safe_str,
)
from .parser import ConversationSummary, MessageRecord, extract_conversations, extract_messages
from .selectors import SelectorTable, get_selector_table, resolve_element

logger = logging.getLogger(__name__)

_LAUNCH_ARGS = [
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-accelerated-2d-canvas",
    "--disable-blink-features=AutomationControlled",
    "--no-first-run",
    "--no-default-browser-check",
]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(frozen=True)
class BrowserOptions:
    headless: bool = True
    user_agent: str = ""
    viewport_width: int = 1920
    viewport_height: int = 1080
    locale: str = "de-DE"
    blocked_resource_types: frozenset[str] = frozenset({"image", "stylesheet", "font", "media"})
    navigation_timeout_ms: int = 30_000
    element_timeout_ms: int = 10_000
    login_marker_timeout_ms: int = 10_000
    login_type_delay_ms: int = 100
    reply_type_delay_ms: int = 50
    send_settle_seconds: float = 2.0
    site_timezone: str = "Europe/Berlin"

    @classmethod
    def from_settings(cls) -> "BrowserOptions":
        return cls(
            headless=bool(settings.browser_headless),
            user_agent=settings.browser_user_agent,
            viewport_width=int(settings.browser_viewport_width),
            viewport_height=int(settings.browser_viewport_height),
            locale=settings.browser_locale,
            blocked_resource_types=settings.blocked_resource_types,
            navigation_timeout_ms=int(settings.navigation_timeout_ms),
            element_timeout_ms=int(settings.element_timeout_ms),
            login_marker_timeout_ms=int(settings.login_marker_timeout_ms),
            login_type_delay_ms=int(settings.login_type_delay_ms),
            reply_type_delay_ms=int(settings.reply_type_delay_ms),
            send_settle_seconds=float(settings.send_settle_seconds),
            site_timezone=settings.site_timezone,
        )


def _load_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("[BROWSER] Unknown timezone %r, falling back to UTC", name)
        return timezone.utc


class BrowserSession:
    def __init__(
        self,
        *,
        options: BrowserOptions | None = None,
        table: SelectorTable | None = None,
        playwright_factory: Callable[[], Any] = async_playwright,
    ):
        self.options = options or BrowserOptions.from_settings()
        self.table = table or get_selector_table()
        self._playwright_factory = playwright_factory
        self._tz = _load_timezone(self.options.site_timezone)

        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None
        self._state = SessionState.UNINITIALIZED

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def current_url(self) -> str:
        return str(getattr(self._page, "url", "") or "")

    def now(self) -> datetime:
        """时间归一化的参照点：站点时区下的当前时间。

        页面时间只有分钟精度，参照点也截到分钟：同一分钟内重复抓取得到相同的时间（以及合成 id）。
        """
        return datetime.now(self._tz).replace(second=0, microsecond=0)

    async def __aenter__(self) -> "BrowserSession":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require(self, *allowed: SessionState) -> None:
        if self._state not in allowed or self._page is None:
            expected = "/".join(s.value for s in allowed)
            raise SessionStateError(f"浏览器会话状态为 {self._state.value}，需要 {expected}")

    async def initialize(self) -> None:
        """启动浏览器 + 页面，并安装资源拦截（图片/样式/字体/媒体直接 abort）。"""
        if self._state in (SessionState.INITIALIZED, SessionState.AUTHENTICATED):
            logger.debug("[BROWSER] Already initialized")
            return
        if self._state is not SessionState.UNINITIALIZED:
            raise SessionStateError(f"浏览器会话已是 {self._state.value}，不能再次初始化")

        try:
            self._playwright = await self._playwright_factory().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.options.headless,
                args=list(_LAUNCH_ARGS),
            )
            self._context = await self._browser.new_context(
                viewport={
                    "width": self.options.viewport_width,
                    "height": self.options.viewport_height,
                },
                user_agent=self.options.user_agent or None,
                locale=self.options.locale or None,
            )
            self._page = await self._context.new_page()
            await self._page.route("**/*", self._filter_request)
        except Exception as e:
            await self._release()
            self._state = SessionState.FAILED
            raise ScraperError(f"浏览器启动失败: {safe_str(e)}") from e

        self._state = SessionState.INITIALIZED
        logger.info("[BROWSER] Browser initialized (headless=%s)", self.options.headless)

    async def _filter_request(self, route: Any) -> None:
        if route.request.resource_type in self.options.blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    def _fail_if_page_gone(self) -> None:
        page = self._page
        if page is None or page.is_closed():
            self._state = SessionState.FAILED

    async def _goto(self, url: str) -> None:
        timeout_ms = self.options.navigation_timeout_ms
        try:
            await self._page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(url, timeout_ms) from e
        except PlaywrightError as e:
            self._fail_if_page_gone()
            raise NavigationFailed(url, safe_str(e)) from e

    async def _wait_until_settled(self) -> None:
        timeout_ms = self.options.navigation_timeout_ms
        try:
            await self._page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(self.current_url, timeout_ms) from e

    async def _snapshot(self) -> str:
        try:
            return await self._page.content()
        except PlaywrightError as e:
            self._fail_if_page_gone()
            raise NavigationFailed(self.current_url, f"读取页面内容失败: {safe_str(e)}") from e

    def _is_current(self, url: str) -> bool:
        current = self.current_url.split("#", 1)[0].rstrip("/")
        return bool(current) and current == url.split("#", 1)[0].rstrip("/")

    async def _open_thread(self, locator: str) -> str:
        url = self.table.absolute_url(locator)
        if not self._is_current(url):
            await self._goto(url)
        return url

    async def login(self, email: str, password: str) -> None:
        """登录站点。密码只在本方法内使用，不记录、不保存。"""
        self._require(SessionState.INITIALIZED, SessionState.AUTHENTICATED)
        logger.info("[BROWSER] Logging in email=%s", email)

        page = self._page
        timeout_ms = self.options.element_timeout_ms
        try:
            await self._goto(self.table.login_url)

            email_input = await resolve_element(page, self.table, "login_email", timeout_ms=timeout_ms)
            await email_input.type(email, delay=self.options.login_type_delay_ms)

            password_input = await resolve_element(page, self.table, "login_password", timeout_ms=timeout_ms)
            await password_input.type(password, delay=self.options.login_type_delay_ms)

            submit = await resolve_element(page, self.table, "login_submit", timeout_ms=timeout_ms)
            await submit.click()
            await self._wait_until_settled()

            error_el = await page.query_selector(self.table.css("login_error"))
            if error_el is not None:
                error_text = " ".join(((await error_el.inner_text()) or "").split())
                raise LoginFailed(error_text or "站点提示登录错误")

            try:
                await page.wait_for_selector(
                    self.table.css("login_marker"),
                    timeout=self.options.login_marker_timeout_ms,
                )
            except PlaywrightTimeoutError as e:
                raise LoginFailed("提交后未检测到登录状态") from e
        except ScraperError:
            self._state = SessionState.FAILED
            raise
        except PlaywrightError as e:
            self._state = SessionState.FAILED
            raise LoginFailed(safe_str(e)) from e

        self._state = SessionState.AUTHENTICATED
        logger.info("[BROWSER] Login successful email=%s", email)

    async def list_conversations(self) -> list[ConversationSummary]:
        """打开收件箱并解析会话列表；超时内没有任何会话行视为空收件箱。"""
        self._require(SessionState.AUTHENTICATED)
        inbox_url = self.table.inbox_url
        await self._goto(inbox_url)

        try:
            await self._page.wait_for_selector(
                self.table.css("conversation_row"),
                timeout=self.options.element_timeout_ms,
            )
        except PlaywrightTimeoutError:
            logger.info("[BROWSER] No conversation rows within %sms, inbox is empty", self.options.element_timeout_ms)
            return []
        except PlaywrightError as e:
            self._fail_if_page_gone()
            raise NavigationFailed(inbox_url, safe_str(e)) from e

        conversations = extract_conversations(await self._snapshot(), self.table, self.now())
        logger.info("[BROWSER] Fetched %s conversations", len(conversations))
        return conversations

    async def list_messages(
        self,
        thread_locator: str,
        account_email: str,
        *,
        partner_name: str | None = None,
    ) -> list[MessageRecord]:
        self._require(SessionState.AUTHENTICATED)
        url = await self._open_thread(thread_locator)

        try:
            await self._page.wait_for_selector(
                self.table.css("message_item"),
                timeout=self.options.element_timeout_ms,
            )
        except PlaywrightTimeoutError as e:
            raise ElementNotFound("message_item", f"{self.options.element_timeout_ms}ms 内未出现") from e
        except PlaywrightError as e:
            self._fail_if_page_gone()
            raise NavigationFailed(url, safe_str(e)) from e

        messages = extract_messages(
            await self._snapshot(),
            self.table,
            account_email,
            self.now(),
            partner_name=partner_name,
            thread_locator=url,
        )
        logger.info("[BROWSER] Fetched %s messages from %s", len(messages), url)
        return messages

    async def send_message(self, thread_locator: str, body: str) -> None:
        """在会话页输入并发送回复。

        站点没有可校验的发送确认，点击后固定等待 send_settle_seconds 让站点自己的异步提交完成。
        """
        self._require(SessionState.AUTHENTICATED)
        if not (body or "").strip():
            raise SendFailed("回复内容为空")

        url = await self._open_thread(thread_locator)
        timeout_ms = self.options.element_timeout_ms
        try:
            textarea = await resolve_element(self._page, self.table, "reply_textarea", timeout_ms=timeout_ms)
            await textarea.click()
            await textarea.type(body, delay=self.options.reply_type_delay_ms)

            send_button = await resolve_element(self._page, self.table, "send_button", timeout_ms=timeout_ms)
            await send_button.click()
        except ElementNotFound as e:
            raise SendFailed(str(e)) from e
        except PlaywrightError as e:
            self._fail_if_page_gone()
            raise SendFailed(safe_str(e)) from e

        if self.options.send_settle_seconds > 0:
            await asyncio.sleep(self.options.send_settle_seconds)
        logger.info("[BROWSER] Message sent to %s", url)

    async def screenshot(self, path: str) -> None:
        """调试用：整页截图。"""
        if self._page is None:
            raise SessionStateError("浏览器会话未初始化")
        await self._page.screenshot(path=path, full_page=True)

    async def _release(self) -> None:
        steps = (
            ("page", self._page, "close"),
            ("context", self._context, "close"),
            ("browser", self._browser, "close"),
            ("playwright", self._playwright, "stop"),
        )
        for name, target, method in steps:
            if target is None:
                continue
            try:
                await getattr(target, method)()
            except Exception:
                logger.warning("[BROWSER] Failed to release %s", name, exc_info=True)

        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None

    async def close(self) -> None:
        """释放页面与浏览器进程；任何状态下都可调用，可重复调用。"""
        if self._state is SessionState.CLOSED:
            return
        await self._release()
        self._state = SessionState.CLOSED
        logger.info("[BROWSER] Browser closed")
