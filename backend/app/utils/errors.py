from __future__ import annotations

import re
from typing import Any


_CONTROL_RE = re.compile(r"[\r\n\t]+")


def _sanitize_text(text: str, *, max_len: int) -> str:
    """把异常文本压缩成更适合日志/落盘的短字符串（避免换行、控制字符、超长）。"""
    if max_len <= 0:
        return ""
    cleaned = _CONTROL_RE.sub(" ", text).strip()
    if len(cleaned) > max_len:
        return f"{cleaned[:max_len]}…"
    return cleaned


def exception_summary(exc: BaseException, *, max_len: int = 200) -> str:
    """生成对外更安全的异常摘要：默认仅保留异常类型 + 截断后的消息。"""
    name = type(exc).__name__
    msg = _sanitize_text(str(exc), max_len=max_len)
    return f"{name}: {msg}" if msg else name


def safe_str(value: Any, *, max_len: int = 200) -> str:
    """把任意值转换为适合对外/日志展示的短文本。"""
    return _sanitize_text(str(value), max_len=max_len)


class ScraperError(RuntimeError):
    """抓取/同步链路上的可预期错误基类。"""


class AccountNotFound(ScraperError, LookupError):
    def __init__(self, account_id: Any):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class ConversationNotFound(ScraperError, LookupError):
    def __init__(self, conversation_id: Any):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


class SessionStateError(ScraperError):
    """浏览器会话在错误的状态下被调用（例如未登录就抓取、关闭后再登录）。"""


class ElementNotFound(ScraperError):
    def __init__(self, logical_name: str, detail: str | None = None):
        self.logical_name = logical_name
        msg = f"页面元素未找到: {logical_name}"
        if detail:
            msg = f"{msg}（{detail}）"
        super().__init__(msg)


class LoginFailed(ScraperError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"登录失败: {message}")


class NavigationFailed(ScraperError):
    def __init__(self, url: str, detail: str | None = None):
        self.url = url
        msg = f"页面打开失败: {url}"
        if detail:
            msg = f"{msg}（{detail}）"
        super().__init__(msg)


class NavigationTimeout(NavigationFailed):
    def __init__(self, url: str, timeout_ms: int | None = None):
        self.timeout_ms = timeout_ms
        detail = f"{timeout_ms}ms 内无响应" if timeout_ms else "超时"
        super().__init__(url, detail)


class ExtractionError(ScraperError):
    """单个条目解析失败：只影响该条目/该会话，不会中断整个账号的同步。"""


class DecryptionFailed(ScraperError):
    """密文无法解密（被篡改、格式错误、或不是用当前 key 加密的）。"""


class SendFailed(ScraperError):
    pass


def _retry_suffix(exc: BaseException) -> str:
    attempts = getattr(exc, "inbox_attempts", None)
    try:
        attempts_i = int(attempts)
    except Exception:
        attempts_i = 0
    return f"（已重试 {attempts_i} 次）" if attempts_i > 1 else ""


def describe_sync_error(exc: BaseException, *, max_len: int = 400) -> str:
    """同步日志是“给人看的”：错误信息尽量短且可读（不写入堆栈）。"""
    if isinstance(exc, TimeoutError):
        return "同步超时（整体耗时超过上限，已中止）"
    if isinstance(exc, NavigationTimeout):
        return f"页面加载超时{_retry_suffix(exc)}: {safe_str(exc.url, max_len=max_len)}"
    if isinstance(exc, ScraperError):
        return f"{safe_str(exc, max_len=max_len)}{_retry_suffix(exc)}"
    return exception_summary(exc, max_len=max_len)


def http_status_for(exc: BaseException) -> int:
    """接口层的状态码映射：找不到 → 404，登录被拒 → 401，凭据不可用 → 400，站点侧失败 → 502。"""
    if isinstance(exc, (AccountNotFound, ConversationNotFound)):
        return 404
    if isinstance(exc, LoginFailed):
        return 401
    if isinstance(exc, DecryptionFailed):
        return 400
    if isinstance(exc, ScraperError):
        return 502
    return 500
