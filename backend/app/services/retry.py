"""抓取步骤的有限重试（退避 + 抖动）

目标：
- 对“页面加载超时”这类偶发问题做有限重试，降低单个会话因网络抖动而漏同步的概率。
- 不重试业务性失败（登录被拒、元素缺失、解析失败），这些重试也不会成功。

浏览器会话本身从不重试；重试策略只存在于编排层（sync.py）。
最终失败时在异常对象上附加 inbox_attempts，便于同步日志展示“已重试 N 次”。
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except Exception:
        return default


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def compute_backoff_seconds(
    *,
    attempt: int,
    base: float,
    max_backoff: float,
    jitter_ratio: float,
) -> float:
    if base <= 0:
        return 0.0

    exp = max(0, int(attempt) - 1)
    delay = base * (2**exp)
    if max_backoff > 0:
        delay = min(delay, max_backoff)

    if jitter_ratio > 0:
        jitter = delay * jitter_ratio
        delay += random.random() * jitter

    return max(0.0, float(delay))


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[BaseException], ...],
    max_attempts: int,
    backoff_seconds: float,
    max_backoff_seconds: float = 8.0,
    jitter_ratio: float = 0.1,
    label: str = "",
) -> T:
    """执行 fn；遇到 retry_on 中的异常时按指数退避重试，其余异常直接抛出。"""
    attempts = max(1, _to_int(max_attempts, 1))
    base = max(0.0, _to_float(backoff_seconds, 0.0))
    max_backoff = max(0.0, _to_float(max_backoff_seconds, 0.0))
    jitter = max(0.0, _to_float(jitter_ratio, 0.0))

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            if attempt >= attempts:
                try:
                    setattr(e, "inbox_attempts", attempt)
                    setattr(e, "inbox_max_attempts", attempts)
                except Exception:
                    pass
                raise

            sleep_s = compute_backoff_seconds(
                attempt=attempt,
                base=base,
                max_backoff=max_backoff,
                jitter_ratio=jitter,
            )
            logger.info(
                "[RETRY] %s failed (attempt %s/%s), retry in %.1fs: %s",
                label or "step",
                attempt,
                attempts,
                sleep_s,
                e,
            )
            if sleep_s > 0:
                await asyncio.sleep(sleep_s)

    # attempts>=1 时不会走到这里
    raise RuntimeError("call_with_retry: no attempt executed")
