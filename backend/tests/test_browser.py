from __future__ import annotations

import sys
import unittest
from pathlib import Path
from typing import Any

from typing_extensions import override

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from backend.app.services.browser import BrowserOptions, BrowserSession, SessionState
from backend.app.services.selectors import KLEINANZEIGEN_2026_02
from backend.app.utils.errors import (
    ElementNotFound,
    LoginFailed,
    NavigationFailed,
    NavigationTimeout,
    ScraperError,
    SendFailed,
    SessionStateError,
)

TABLE = KLEINANZEIGEN_2026_02
LOGIN_URL = TABLE.login_url
INBOX_URL = TABLE.inbox_url
THREAD_PATH = "/m-nachrichten.html?conversationId=abc"
THREAD_URL = TABLE.absolute_url(THREAD_PATH)

LOGIN_FORM = {"#login-email", "#login-password", "#login-submit"}
INBOX_HTML = """
<li class="conversation-item">
  <a class="conversation-link" href="/m-nachrichten.html?conversationId=abc">
    <span class="conversation-partner-name">Anna</span>
    <span class="conversation-timestamp">Heute 09:15</span>
  </a>
</li>
"""
THREAD_HTML = """
<div class="message-item" data-message-id="m-1">
  <span class="message-sender">Anna</span>
  <div class="message-body">Noch da?</div>
</div>
"""


# ---- Playwright 异步 API 的最小替身 ----


class FakeHandle:
    def __init__(self, page: "FakePage", selector: str):
        self.page = page
        self.selector = selector

    async def type(self, text: str, delay: float | None = None) -> None:
        self.page.events.append(("type", self.selector, text, delay))

    async def click(self) -> None:
        self.page.events.append(("click", self.selector))
        if self.selector in self.page.click_errors:
            raise self.page.click_errors[self.selector]
        if self.selector == "#login-submit":
            self.page.present = set(self.page.after_login)

    async def inner_text(self) -> str:
        return self.page.texts.get(self.selector, "")


class FakeRequest:
    def __init__(self, resource_type: str):
        self.resource_type = resource_type


class FakeRoute:
    def __init__(self, resource_type: str):
        self.request = FakeRequest(resource_type)
        self.outcome: str | None = None

    async def abort(self) -> None:
        self.outcome = "abort"

    async def continue_(self) -> None:
        self.outcome = "continue"


class FakePage:
    def __init__(self):
        self.url = "about:blank"
        self.present: set[str] = set()
        # 每个 URL 打开后出现的元素 / HTML
        self.selectors_by_url: dict[str, set[str]] = {LOGIN_URL: set(LOGIN_FORM)}
        self.html_by_url: dict[str, str] = {}
        self.after_login: set[str] = {'a[href*="logout"]'}
        self.texts: dict[str, str] = {}
        self.goto_errors: dict[str, Exception] = {}
        self.click_errors: dict[str, Exception] = {}
        self.events: list[tuple[Any, ...]] = []
        self.route_handler: Any = None
        self.closed = False

    async def route(self, pattern: str, handler: Any) -> None:
        self.route_handler = handler

    async def goto(self, url: str, wait_until: str | None = None, timeout: int | None = None) -> None:
        self.events.append(("goto", url))
        if url in self.goto_errors:
            raise self.goto_errors[url]
        self.url = url
        self.present = set(self.selectors_by_url.get(url, set()))

    async def wait_for_load_state(self, state: str | None = None, timeout: int | None = None) -> None:
        return None

    async def wait_for_selector(self, selector: str, timeout: int | None = None) -> FakeHandle:
        for part in selector.split(", "):
            if part in self.present:
                return FakeHandle(self, part)
        raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")

    async def query_selector(self, selector: str) -> FakeHandle | None:
        for part in selector.split(", "):
            if part in self.present:
                return FakeHandle(self, part)
        return None

    async def content(self) -> str:
        return self.html_by_url.get(self.url, "")

    async def screenshot(self, path: str, full_page: bool = False) -> None:
        self.events.append(("screenshot", path, full_page))

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, page: FakePage):
        self.page = page
        self.closed = False

    async def new_page(self) -> FakePage:
        return self.page

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, page: FakePage):
        self.page = page
        self.context_kwargs: dict[str, Any] = {}
        self.context: FakeContext | None = None
        self.closed = False

    async def new_context(self, **kwargs: Any) -> FakeContext:
        self.context_kwargs = kwargs
        self.context = FakeContext(self.page)
        return self.context

    async def close(self) -> None:
        self.closed = True


class FakeChromium:
    def __init__(self, browser: FakeBrowser):
        self.browser = browser
        self.launches: list[dict[str, Any]] = []
        self.launch_error: Exception | None = None

    async def launch(self, **kwargs: Any) -> FakeBrowser:
        self.launches.append(kwargs)
        if self.launch_error is not None:
            raise self.launch_error
        return self.browser


class FakePlaywright:
    def __init__(self):
        self.page = FakePage()
        self.browser = FakeBrowser(self.page)
        self.chromium = FakeChromium(self.browser)
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


class FakePlaywrightManager:
    def __init__(self, playwright: FakePlaywright):
        self.playwright = playwright

    async def start(self) -> FakePlaywright:
        return self.playwright


OPTIONS = BrowserOptions(
    headless=True,
    user_agent="TestAgent/1.0",
    viewport_width=1280,
    viewport_height=800,
    locale="de-DE",
    navigation_timeout_ms=1_000,
    element_timeout_ms=50,
    login_marker_timeout_ms=50,
    login_type_delay_ms=0,
    reply_type_delay_ms=0,
    send_settle_seconds=0,
    site_timezone="Europe/Berlin",
)


class BrowserSessionTestBase(unittest.IsolatedAsyncioTestCase):
    pw: FakePlaywright
    session: BrowserSession

    @override
    async def asyncSetUp(self):
        self.pw = FakePlaywright()
        self.session = BrowserSession(
            options=OPTIONS,
            table=TABLE,
            playwright_factory=lambda: FakePlaywrightManager(self.pw),
        )

    @override
    async def asyncTearDown(self):
        await self.session.close()

    @property
    def page(self) -> FakePage:
        return self.pw.page

    async def _login(self) -> None:
        await self.session.initialize()
        await self.session.login("me@example.com", "hunter2")


class InitializeTests(BrowserSessionTestBase):
    async def test_initialize_configures_browser(self):
        await self.session.initialize()
        self.assertEqual(self.session.state, SessionState.INITIALIZED)
        self.assertTrue(self.pw.chromium.launches[0]["headless"])
        self.assertEqual(self.pw.browser.context_kwargs["viewport"], {"width": 1280, "height": 800})
        self.assertEqual(self.pw.browser.context_kwargs["user_agent"], "TestAgent/1.0")

    async def test_initialize_is_idempotent(self):
        await self.session.initialize()
        await self.session.initialize()
        self.assertEqual(len(self.pw.chromium.launches), 1)

    async def test_resource_interception(self):
        await self.session.initialize()
        handler = self.page.route_handler
        self.assertIsNotNone(handler)

        for resource_type, expected in (
            ("image", "abort"),
            ("stylesheet", "abort"),
            ("font", "abort"),
            ("media", "abort"),
            ("document", "continue"),
            ("script", "continue"),
            ("xhr", "continue"),
        ):
            route = FakeRoute(resource_type)
            await handler(route)
            self.assertEqual(route.outcome, expected, resource_type)

    async def test_launch_failure_releases_playwright(self):
        self.pw.chromium.launch_error = PlaywrightError("browser executable missing")
        with self.assertRaises(ScraperError):
            await self.session.initialize()
        self.assertEqual(self.session.state, SessionState.FAILED)
        self.assertTrue(self.pw.stopped)

    async def test_now_is_truncated_to_the_minute(self):
        now = self.session.now()
        self.assertEqual((now.second, now.microsecond), (0, 0))
        self.assertEqual(getattr(now.tzinfo, "key", None), "Europe/Berlin")

    async def test_context_manager_closes(self):
        async with self.session as session:
            self.assertEqual(session.state, SessionState.INITIALIZED)
        self.assertEqual(self.session.state, SessionState.CLOSED)
        self.assertTrue(self.page.closed)
        self.assertTrue(self.pw.browser.closed)
        self.assertTrue(self.pw.stopped)


class LoginTests(BrowserSessionTestBase):
    async def test_login_success(self):
        await self._login()
        self.assertEqual(self.session.state, SessionState.AUTHENTICATED)
        self.assertIn(("goto", LOGIN_URL), self.page.events)
        self.assertIn(("type", "#login-email", "me@example.com", 0), self.page.events)
        self.assertIn(("type", "#login-password", "hunter2", 0), self.page.events)
        self.assertIn(("click", "#login-submit"), self.page.events)

    async def test_inline_error_fails_login(self):
        self.page.after_login = {".messagebox--error"}
        self.page.texts[".messagebox--error"] = "  E-Mail oder Passwort falsch  "
        await self.session.initialize()

        with self.assertRaises(LoginFailed) as ctx:
            await self.session.login("me@example.com", "wrong")
        self.assertEqual(ctx.exception.message, "E-Mail oder Passwort falsch")
        self.assertEqual(self.session.state, SessionState.FAILED)

        with self.assertRaises(SessionStateError):
            await self.session.list_conversations()

    async def test_missing_marker_fails_login(self):
        self.page.after_login = set()
        await self.session.initialize()
        with self.assertRaises(LoginFailed):
            await self.session.login("me@example.com", "hunter2")
        self.assertEqual(self.session.state, SessionState.FAILED)

    async def test_missing_login_field(self):
        self.page.selectors_by_url[LOGIN_URL] = {"#login-password", "#login-submit"}
        await self.session.initialize()
        with self.assertRaises(ElementNotFound) as ctx:
            await self.session.login("me@example.com", "hunter2")
        self.assertEqual(ctx.exception.logical_name, "login_email")

    async def test_login_requires_initialize(self):
        with self.assertRaises(SessionStateError):
            await self.session.login("me@example.com", "hunter2")

    async def test_login_after_close(self):
        await self.session.initialize()
        await self.session.close()
        with self.assertRaises(SessionStateError):
            await self.session.login("me@example.com", "hunter2")

    async def test_login_page_timeout(self):
        self.page.goto_errors[LOGIN_URL] = PlaywrightTimeoutError("Timeout 1000ms exceeded.")
        await self.session.initialize()
        with self.assertRaises(NavigationTimeout):
            await self.session.login("me@example.com", "hunter2")
        self.assertEqual(self.session.state, SessionState.FAILED)


class ListConversationsTests(BrowserSessionTestBase):
    async def test_requires_login(self):
        await self.session.initialize()
        with self.assertRaises(SessionStateError):
            await self.session.list_conversations()

    async def test_extracts_rows(self):
        self.page.selectors_by_url[INBOX_URL] = {".conversation-item"}
        self.page.html_by_url[INBOX_URL] = INBOX_HTML
        await self._login()

        conversations = await self.session.list_conversations()
        self.assertEqual([c.partner_name for c in conversations], ["Anna"])
        self.assertEqual(conversations[0].thread_locator, THREAD_PATH)

    async def test_empty_inbox(self):
        await self._login()
        self.assertEqual(await self.session.list_conversations(), [])

    async def test_navigation_errors(self):
        await self._login()
        self.page.goto_errors[INBOX_URL] = PlaywrightTimeoutError("Timeout 1000ms exceeded.")
        with self.assertRaises(NavigationTimeout) as ctx:
            await self.session.list_conversations()
        self.assertEqual(ctx.exception.url, INBOX_URL)

        self.page.goto_errors[INBOX_URL] = PlaywrightError("net::ERR_CONNECTION_RESET")
        with self.assertRaises(NavigationFailed):
            await self.session.list_conversations()

    async def test_timeout_keeps_session_usable(self):
        self.page.selectors_by_url[INBOX_URL] = {".conversation-item"}
        self.page.html_by_url[INBOX_URL] = INBOX_HTML
        await self._login()

        self.page.goto_errors[INBOX_URL] = PlaywrightTimeoutError("Timeout 1000ms exceeded.")
        with self.assertRaises(NavigationTimeout):
            await self.session.list_conversations()
        self.assertEqual(self.session.state, SessionState.AUTHENTICATED)

        del self.page.goto_errors[INBOX_URL]
        self.assertEqual(len(await self.session.list_conversations()), 1)

    async def test_closed_page_fails_session(self):
        await self._login()
        self.page.closed = True
        self.page.goto_errors[INBOX_URL] = PlaywrightError("Target page, context or browser has been closed")

        with self.assertRaises(NavigationFailed):
            await self.session.list_conversations()
        self.assertEqual(self.session.state, SessionState.FAILED)

        with self.assertRaises(SessionStateError):
            await self.session.list_messages(THREAD_PATH, "me@example.com")

        await self.session.close()
        self.assertEqual(self.session.state, SessionState.CLOSED)


class ListMessagesTests(BrowserSessionTestBase):
    async def test_relative_locator_is_resolved_and_reused(self):
        self.page.selectors_by_url[THREAD_URL] = {".message-item"}
        self.page.html_by_url[THREAD_URL] = THREAD_HTML
        await self._login()

        messages = await self.session.list_messages(THREAD_PATH, "me@example.com", partner_name="Anna")
        self.assertEqual([m.external_message_id for m in messages], ["m-1"])
        self.assertEqual(messages[0].recipient, "me@example.com")

        await self.session.list_messages(THREAD_PATH, "me@example.com")
        self.assertEqual(self.page.events.count(("goto", THREAD_URL)), 1)

    async def test_thread_without_items(self):
        await self._login()
        with self.assertRaises(ElementNotFound) as ctx:
            await self.session.list_messages(THREAD_PATH, "me@example.com")
        self.assertEqual(ctx.exception.logical_name, "message_item")


class SendMessageTests(BrowserSessionTestBase):
    async def test_types_and_clicks_send(self):
        self.page.selectors_by_url[THREAD_URL] = {"#reply-message", "#send-message-button"}
        await self._login()

        await self.session.send_message(THREAD_PATH, "Ja, ist noch da.")
        self.assertIn(("goto", THREAD_URL), self.page.events)
        self.assertIn(("type", "#reply-message", "Ja, ist noch da.", 0), self.page.events)
        self.assertEqual(self.page.events[-1], ("click", "#send-message-button"))

    async def test_missing_reply_box(self):
        self.page.selectors_by_url[THREAD_URL] = {"#send-message-button"}
        await self._login()
        with self.assertRaises(SendFailed):
            await self.session.send_message(THREAD_PATH, "Hallo")

    async def test_click_error_becomes_send_failed(self):
        self.page.selectors_by_url[THREAD_URL] = {"#reply-message", "#send-message-button"}
        self.page.click_errors["#send-message-button"] = PlaywrightError("element detached")
        await self._login()
        with self.assertRaises(SendFailed):
            await self.session.send_message(THREAD_PATH, "Hallo")
        self.assertEqual(self.session.state, SessionState.AUTHENTICATED)

    async def test_empty_body(self):
        await self._login()
        with self.assertRaises(SendFailed):
            await self.session.send_message(THREAD_PATH, "   ")


class CloseTests(BrowserSessionTestBase):
    async def test_close_is_idempotent(self):
        await self._login()
        await self.session.close()
        await self.session.close()
        self.assertEqual(self.session.state, SessionState.CLOSED)
        self.assertTrue(self.page.closed)
        self.assertTrue(self.pw.browser.context is not None and self.pw.browser.context.closed)
        self.assertTrue(self.pw.stopped)

    async def test_close_after_failure(self):
        self.page.after_login = set()
        await self.session.initialize()
        with self.assertRaises(LoginFailed):
            await self.session.login("me@example.com", "hunter2")
        await self.session.close()
        self.assertEqual(self.session.state, SessionState.CLOSED)
        self.assertTrue(self.pw.stopped)

    async def test_close_without_initialize(self):
        await self.session.close()
        self.assertEqual(self.session.state, SessionState.CLOSED)

    async def test_screenshot(self):
        await self.session.initialize()
        await self.session.screenshot("/tmp/inbox.png")
        self.assertIn(("screenshot", "/tmp/inbox.png", True), self.page.events)


if __name__ == "__main__":
    unittest.main()
