"""
Cron 表达式解析与下次触发时间计算

所有计算都在 UTC 下进行。解析失败返回 None，从不抛出异常，
这样调度扫描可以跳过单个格式错误的规则而不影响其余规则。
"""
import logging
from dataclasses import dataclass
from datetime import datetime, date, time, timedelta, timezone
from typing import List, Optional, Tuple, Union

from ..config import DEFAULT_SEARCH_HORIZON_DAYS
from ..utils import utcnow, ensure_utc


logger = logging.getLogger(__name__)


# (名称, 最小值, 最大值)
FIELD_RANGES = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 6),
)


def _to_int(text: str) -> Optional[int]:
    if not text or not (text.isascii() and text.isdigit()):
        return None
    return int(text)


def parse_field(field: str, minimum: int, maximum: int) -> Optional[List[int]]:
    """
    解析单个 cron 字段

    支持 ``*``、``N``、``N-M``、``*/N`` 以及它们的逗号列表。
    任一片段非法则整个字段解析失败。

    Returns:
        升序去重后的取值列表，失败时返回 None
    """
    if not isinstance(field, str):
        return None

    values = set()
    for part in field.strip().split(","):
        part = part.strip()
        if not part:
            return None

        if part == "*":
            values.update(range(minimum, maximum + 1))
            continue

        if part.startswith("*/"):
            step = _to_int(part[2:])
            if step is None or step < 1:
                return None
            values.update(range(minimum, maximum + 1, step))
            continue

        if "-" in part:
            start_text, _, end_text = part.partition("-")
            start, end = _to_int(start_text), _to_int(end_text)
            if start is None or end is None:
                return None
            if start < minimum or end > maximum or start > end:
                return None
            values.update(range(start, end + 1))
            continue

        value = _to_int(part)
        if value is None or value < minimum or value > maximum:
            return None
        values.add(value)

    return sorted(values)


@dataclass(frozen=True)
class CronExpression:
    """已解析的五字段 cron 表达式"""
    minutes: Tuple[int, ...]
    hours: Tuple[int, ...]
    days: Tuple[int, ...]
    months: Tuple[int, ...]
    weekdays: Tuple[int, ...]
    source: str = ""

    @property
    def day_restricted(self) -> bool:
        return len(self.days) < 31

    @property
    def weekday_restricted(self) -> bool:
        return len(self.weekdays) < 7

    def matches_date(self, day: date) -> bool:
        """日期是否满足月份、日、星期约束"""
        if day.month not in self.months:
            return False

        dom_match = day.day in self.days
        # 0 = 星期日
        dow_match = (day.isoweekday() % 7) in self.weekdays

        # 日和星期都受限时取并集
        if self.day_restricted and self.weekday_restricted:
            return dom_match or dow_match
        if self.day_restricted:
            return dom_match
        if self.weekday_restricted:
            return dow_match
        return True

    def matches(self, moment: datetime) -> bool:
        moment = ensure_utc(moment)
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and self.matches_date(moment.date())
        )


def parse_expression(expression: str) -> Optional[CronExpression]:
    """解析完整的五字段表达式，字段数不为5或任一字段非法时返回 None"""
    if not isinstance(expression, str):
        return None

    fields = expression.split()
    if len(fields) != len(FIELD_RANGES):
        return None

    parsed = []
    for text, (_, minimum, maximum) in zip(fields, FIELD_RANGES):
        values = parse_field(text, minimum, maximum)
        if values is None:
            return None
        parsed.append(tuple(values))

    return CronExpression(*parsed, source=" ".join(fields))


def is_valid_expression(expression: str) -> bool:
    return parse_expression(expression) is not None


def compute_next_run(
    expression: Union[str, CronExpression],
    from_time: Optional[datetime] = None,
    horizon_days: int = DEFAULT_SEARCH_HORIZON_DAYS,
) -> Optional[datetime]:
    """
    计算严格晚于 from_time 的下一个匹配时刻

    Args:
        expression: cron 表达式字符串或已解析对象
        from_time: 起点（不含），默认当前时间；无时区按 UTC 处理
        horizon_days: 向前搜索的最大天数

    Returns:
        秒数归零的 UTC 时间；表达式非法或搜索窗口内无匹配时返回 None
    """
    cron = expression if isinstance(expression, CronExpression) else parse_expression(expression)
    if cron is None:
        return None

    try:
        start = ensure_utc(from_time or utcnow()).replace(second=0, microsecond=0)
        start += timedelta(minutes=1)

        for offset in range(horizon_days + 1):
            day = start.date() + timedelta(days=offset)
            if not cron.matches_date(day):
                continue

            earliest = start.time() if offset == 0 else time(0, 0)
            for hour in cron.hours:
                if hour < earliest.hour:
                    continue
                for minute in cron.minutes:
                    if hour == earliest.hour and minute < earliest.minute:
                        continue
                    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)
    except OverflowError:
        logger.warning(f"Cron search for '{cron.source}' ran past the supported date range")
        return None

    return None


def upcoming_runs(
    expression: str,
    count: int,
    from_time: Optional[datetime] = None,
    horizon_days: int = DEFAULT_SEARCH_HORIZON_DAYS,
) -> List[datetime]:
    """连续计算接下来的若干次触发时间"""
    runs = []
    cursor = from_time
    for _ in range(count):
        cursor = compute_next_run(expression, cursor, horizon_days)
        if cursor is None:
            break
        runs.append(cursor)
    return runs
