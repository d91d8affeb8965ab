"""
Time-expression enricher.

Resolves relative Chinese time phrases ("明晚", "下周三", "周末") to
absolute local times. The visible text is left as is; resolutions are
injected for the model.
"""

from datetime import datetime, timedelta
from typing import Callable

from juchang_ai.models.runtime import EnricherOutput, EnrichmentContext
from juchang_ai.utils.timeutils import LOCAL_TZ, format_local

Resolver = Callable[[datetime], datetime]


def _at(day: datetime, hour: int) -> datetime:
    return day.replace(hour=hour, minute=0, second=0, microsecond=0)


def _days(offset: int, hour: int) -> Resolver:
    return lambda now: _at(now + timedelta(days=offset), hour)


def _next_saturday(now: datetime) -> datetime:
    # On Saturday itself the phrase means the following one
    days = 7 if now.weekday() == 5 else (5 - now.weekday()) % 7
    return _at(now + timedelta(days=days), 14)


def _next_weekday(target: int) -> Resolver:
    """Next ``target`` weekday (Mon=0) strictly after today."""

    def resolve(now: datetime) -> datetime:
        days = target - now.weekday()
        if days <= 0:
            days += 7
        return _at(now + timedelta(days=days), 19)

    return resolve


def _weekday_next_week(target: int) -> Resolver:
    """``target`` weekday of the following calendar week (Monday-based)."""

    def resolve(now: datetime) -> datetime:
        next_monday = now + timedelta(days=7 - now.weekday())
        return _at(next_monday + timedelta(days=target), 19)

    return resolve


TIME_EXPRESSIONS: dict[str, Resolver] = {
    "今天": _days(0, 19),
    "明天": _days(1, 19),
    "后天": _days(2, 19),
    "大后天": _days(3, 19),
    "今晚": _days(0, 19),
    "明晚": _days(1, 19),
    "今天晚上": _days(0, 19),
    "明天晚上": _days(1, 19),
    "今天中午": _days(0, 12),
    "明天中午": _days(1, 12),
    "周末": _next_saturday,
    "这周末": _next_saturday,
    "下周末": lambda now: _next_saturday(now + timedelta(days=7)),
}

for _index, _name in enumerate(["一", "二", "三", "四", "五", "六", "日"]):
    TIME_EXPRESSIONS[f"周{_name}"] = _next_weekday(_index)
    TIME_EXPRESSIONS[f"星期{_name}"] = _next_weekday(_index)
    TIME_EXPRESSIONS[f"下周{_name}"] = _weekday_next_week(_index)
TIME_EXPRESSIONS["周天"] = _next_weekday(6)
TIME_EXPRESSIONS["星期天"] = _next_weekday(6)
TIME_EXPRESSIONS["下周天"] = _weekday_next_week(6)

# Longest first so "下周一" wins over "周一"
_SORTED_EXPRESSIONS = sorted(TIME_EXPRESSIONS.items(), key=lambda kv: -len(kv[0]))


def find_time_expressions(text: str, now: datetime) -> list[tuple[str, datetime]]:
    """
    Find time phrases in text and resolve them against ``now``.

    Longer phrases claim their span first. Each phrase resolves once, at
    its first occurrence that does not overlap a claimed span; it is
    skipped only when every occurrence overlaps.
    """
    local_now = now.astimezone(LOCAL_TZ) if now.tzinfo else now
    claimed: list[tuple[int, int]] = []
    found: list[tuple[int, str, datetime]] = []

    for phrase, resolver in _SORTED_EXPRESSIONS:
        start = text.find(phrase)
        while start != -1:
            end = start + len(phrase)
            if not any(start < c_end and c_start < end for c_start, c_end in claimed):
                claimed.append((start, end))
                found.append((start, phrase, resolver(local_now)))
                break
            start = text.find(phrase, start + 1)

    found.sort(key=lambda item: item[0])
    return [(phrase, resolved) for _, phrase, resolved in found]


def enrich_time_expressions(text: str, context: EnrichmentContext) -> EnricherOutput:
    matches = find_time_expressions(text, context.now)
    if not matches:
        return EnricherOutput(text=text)

    lines = [f"<current_time>{format_local(context.now)}</current_time>"]
    for phrase, resolved in matches:
        lines.append(
            f'<time_resolved original="{phrase}" resolved="{format_local(resolved)}" />'
        )
    return EnricherOutput(text=text, applied=["time_expression"], injection="\n".join(lines))
