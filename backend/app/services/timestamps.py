"""页面时间文本 → 绝对时间

站点只渲染给人看的时间文本（德语为主，也兼容英文）：
- "vor 2 Stunden" / "2 hours ago"
- "Heute 14:30" / "today 14:30"
- "Gestern 14:30" / "yesterday 14:30"
- "12.02.2026" / "12.02." / "12.02.2026 09:15"

只有分钟精度、没有时区信息：结果沿用 `now` 的 tzinfo，下游排序只能把它当作参考。
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta

_AGO_RE = re.compile(r"\bvor\b|\bago\b", re.IGNORECASE)
_RELATIVE_RE = re.compile(
    r"(?P<n>\d+)\s*(?P<unit>"
    r"minuten|minute|minutes|min"
    r"|stunden|stunde|std|hours|hour|hrs|hr"
    r"|tagen|tage|tag|days|day"
    r")\b",
    re.IGNORECASE,
)
_TODAY_RE = re.compile(r"\b(heute|today)\b", re.IGNORECASE)
_YESTERDAY_RE = re.compile(r"\b(gestern|yesterday)\b", re.IGNORECASE)
_TIME_RE = re.compile(r"(?<!\d)(\d{1,2}):(\d{2})(?!\d)")
_DATE_RE = re.compile(r"(?<![\d.])(\d{1,2})\.(\d{1,2})(?:\.(\d{4}|\d{2})(?!\d))?")


def _unit_delta(unit: str, n: int) -> timedelta:
    u = unit.lower()
    if u.startswith("min"):
        return timedelta(minutes=n)
    if u.startswith(("std", "stunde", "hour", "hr")):
        return timedelta(hours=n)
    return timedelta(days=n)


def _time_of_day(text: str) -> tuple[int, int] | None:
    m = _TIME_RE.search(text)
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def _parse_relative(text: str, now: datetime) -> datetime | None:
    if not _AGO_RE.search(text):
        return None
    m = _RELATIVE_RE.search(text)
    if not m:
        return None
    return now - _unit_delta(m.group("unit"), int(m.group("n")))


def _at_time(day: datetime, text: str) -> datetime:
    hm = _time_of_day(text)
    if hm is None:
        return day
    return day.replace(hour=hm[0], minute=hm[1], second=0, microsecond=0)


def _parse_absolute_date(text: str, now: datetime) -> datetime | None:
    m = _DATE_RE.search(text)
    if not m:
        return None
    day, month = int(m.group(1)), int(m.group(2))
    year_raw = m.group(3)
    if year_raw is None:
        year = now.year
    elif len(year_raw) == 2:
        year = 2000 + int(year_raw)
    else:
        year = int(year_raw)

    hour, minute = _time_of_day(text) or (0, 0)
    return datetime(year, month, day, hour, minute, tzinfo=now.tzinfo)


def normalize_timestamp(text: str | None, now: datetime) -> datetime:
    """把页面上的时间文本转换为绝对时间。

    规则按优先级：相对时间 → 今天 → 昨天 → 显式日期；都不匹配（或数值非法）时返回 `now`。
    该函数永远不抛异常。
    """
    if not text or not isinstance(text, str):
        return now
    cleaned = " ".join(text.split())

    try:
        rel = _parse_relative(cleaned, now)
        if rel is not None:
            return rel

        if _TODAY_RE.search(cleaned):
            return _at_time(now, cleaned)

        if _YESTERDAY_RE.search(cleaned):
            return _at_time(now - timedelta(days=1), cleaned)

        absolute = _parse_absolute_date(cleaned, now)
        if absolute is not None:
            return absolute
    except (ValueError, OverflowError):
        # 例如 "31.02.2026" / "25:99"：按“无法识别”处理
        return now

    return now
