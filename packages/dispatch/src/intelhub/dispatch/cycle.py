"""周期计算器

纯函数：把周期定义（ONE_TIME / DAILY / WEEKLY / MONTHLY、下发时刻、
每周几/每月几号）和参考时间换算为下一次发生时间。
计算在周期所属时区的墙钟时间上进行，返回带时区的 datetime。
"""

import calendar
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ConfigurationError
from .models.enums import CycleType
from .models.template import MINUTES_IN_DAY, TaskRule, TaskTemplate

DEFAULT_MAX_ITERATIONS = 10_000


class CycleSpec(BaseModel):
    """周期定义（模板或规则的排期部分）"""

    model_config = ConfigDict(frozen=True)

    cycle_type: CycleType
    run_at_minute: int = Field(ge=0, le=MINUTES_IN_DAY - 1)
    days_of_week: tuple[int, ...] = Field(default=(1,), description="1=周一..7=周日")
    days_of_month: tuple[int, ...] = Field(default=(1,), description="0 表示月末")
    active_from: datetime | None = None
    active_until: datetime | None = None
    timezone: str = "Asia/Shanghai"

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def window_start(self) -> datetime | None:
        """生效起点；ONE_TIME 从 active_from 当天零点起算"""
        if self.active_from is None:
            return None
        start = self.active_from
        if start.tzinfo is None:
            start = start.replace(tzinfo=self.tz)
        start = start.astimezone(self.tz)
        if self.cycle_type == CycleType.ONE_TIME:
            start = start.replace(hour=0, minute=0, second=0, microsecond=0)
        return start

    @property
    def multi_day(self) -> bool:
        """每周/每月多天下发时，发生期标识需要细化到天"""
        if self.cycle_type == CycleType.WEEKLY:
            return len(set(self.days_of_week)) > 1
        if self.cycle_type == CycleType.MONTHLY:
            return len(set(self.days_of_month)) > 1
        return False


def template_cycle(template: TaskTemplate) -> CycleSpec:
    """模板自身的周期"""
    return CycleSpec(
        cycle_type=template.cycle_type,
        run_at_minute=template.run_at_minute,
        days_of_week=(template.run_day_of_week or 1,),
        days_of_month=(
            template.run_day_of_month if template.run_day_of_month is not None else 1,
        ),
        active_from=template.active_from,
        active_until=template.active_until,
        timezone=template.timezone,
    )


def rule_cycle(template: TaskTemplate, rule: TaskRule) -> CycleSpec:
    """规则的周期：频率与下发时刻取自规则，生效窗口与时区取自模板"""
    base = template_cycle(template)
    return CycleSpec(
        cycle_type=rule.frequency_type,
        run_at_minute=rule.dispatch_at_minute,
        days_of_week=tuple(sorted(set(rule.weekdays))) or base.days_of_week,
        days_of_month=tuple(sorted(set(rule.month_days))) or base.days_of_month,
        active_from=template.active_from,
        active_until=template.active_until,
        timezone=template.timezone,
    )


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def localize(cycle: CycleSpec, instant: datetime) -> datetime:
    """转换到周期时区；naive 时间视为该时区的墙钟时间"""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=cycle.tz)
    return instant.astimezone(cycle.tz)


def _at_minute(day: date, minute: int, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time(minute // 60, minute % 60), tzinfo=tz)


def _effective_month_day(year: int, month: int, run_day: int) -> int:
    # 0 表示月末；超出当月天数的日期截断到月末（如 2 月 31 日）
    last = last_day_of_month(year, month)
    return last if run_day == 0 or run_day > last else run_day


def _next_weekly(ref: datetime, weekday: int, minute: int, tz: ZoneInfo) -> datetime:
    monday = ref.date() - timedelta(days=ref.isoweekday() - 1)
    day = monday + timedelta(days=max(0, min(6, weekday - 1)))
    candidate = _at_minute(day, minute, tz)
    if candidate <= ref:
        candidate = _at_minute(day + timedelta(days=7), minute, tz)
    return candidate


def _next_monthly(ref: datetime, run_day: int, minute: int, tz: ZoneInfo) -> datetime:
    year, month = ref.year, ref.month
    day = _effective_month_day(year, month, run_day)
    candidate = _at_minute(date(year, month, day), minute, tz)
    if candidate <= ref:
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        day = _effective_month_day(year, month, run_day)
        candidate = _at_minute(date(year, month, day), minute, tz)
    return candidate


def next_occurrence(cycle: CycleSpec, reference: datetime) -> datetime | None:
    """计算严格晚于 reference 的下一次发生时间

    Returns:
        下一次发生时间；ONE_TIME 已过或未配置 active_from 时返回 None
    """
    tz = cycle.tz
    ref = localize(cycle, reference)
    minute = cycle.run_at_minute

    match cycle.cycle_type:
        case CycleType.ONE_TIME:
            if cycle.active_from is None:
                return None
            start = localize(cycle, cycle.active_from).date()
            candidate = _at_minute(start, minute, tz)
            return candidate if candidate > ref else None
        case CycleType.DAILY:
            candidate = _at_minute(ref.date(), minute, tz)
            if candidate <= ref:
                candidate = _at_minute(ref.date() + timedelta(days=1), minute, tz)
            return candidate
        case CycleType.WEEKLY:
            return min(_next_weekly(ref, d, minute, tz) for d in cycle.days_of_week)
        case CycleType.MONTHLY:
            return min(_next_monthly(ref, d, minute, tz) for d in cycle.days_of_month)


def enumerate_occurrences(
    cycle: CycleSpec,
    start: datetime,
    end: datetime,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> list[datetime]:
    """枚举 (start, end] 内、且落在生效窗口内的全部发生时间

    Raises:
        ConfigurationError: 周期不前进或超过安全迭代上限
    """
    cursor = localize(cycle, start)
    limit = localize(cycle, end)
    if cycle.window_start is not None:
        cursor = max(cursor, cycle.window_start - timedelta(microseconds=1))
    if cycle.active_until is not None:
        limit = min(limit, localize(cycle, cycle.active_until))

    occurrences: list[datetime] = []
    for _ in range(max_iterations):
        nxt = next_occurrence(cycle, cursor)
        if nxt is None or nxt > limit:
            return occurrences
        if nxt <= cursor:
            raise ConfigurationError(f"周期不前进: {cycle.cycle_type} 在 {cursor.isoformat()}")
        occurrences.append(nxt)
        cursor = nxt

    raise ConfigurationError(
        f"周期枚举超过安全上限 {max_iterations} 次: {cycle.cycle_type}"
    )


def period_key(cycle: CycleSpec, occurs_at: datetime) -> str:
    """发生期标识：日期 / ISO 周 / 年月；多天规则细化到天"""
    day = localize(cycle, occurs_at).date()

    match cycle.cycle_type:
        case CycleType.WEEKLY:
            iso_year, iso_week, iso_weekday = day.isocalendar()
            key = f"{iso_year}-W{iso_week:02d}"
            return f"{key}-{iso_weekday}" if cycle.multi_day else key
        case CycleType.MONTHLY:
            key = f"{day.year}-{day.month:02d}"
            return f"{key}-{day.day:02d}" if cycle.multi_day else key
        case _:
            return day.isoformat()


def period_bounds(cycle: CycleSpec, occurs_at: datetime) -> tuple[datetime, datetime]:
    """发生期所在周期的起止时间（日 / ISO 周 / 自然月）"""
    tz = cycle.tz
    day = localize(cycle, occurs_at).date()

    match cycle.cycle_type:
        case CycleType.WEEKLY:
            first = day - timedelta(days=day.isoweekday() - 1)
            last = first + timedelta(days=6)
        case CycleType.MONTHLY:
            first = day.replace(day=1)
            last = day.replace(day=last_day_of_month(day.year, day.month))
        case _:
            first = last = day

    return (
        datetime.combine(first, time.min, tzinfo=tz),
        datetime.combine(last, time.max, tzinfo=tz),
    )


def period_span(cycle: CycleSpec) -> timedelta | None:
    """单个周期的最大跨度；ONE_TIME 没有周期"""
    match cycle.cycle_type:
        case CycleType.DAILY:
            return timedelta(days=1)
        case CycleType.WEEKLY:
            return timedelta(days=7)
        case CycleType.MONTHLY:
            return timedelta(days=31)
        case _:
            return None


def period_due_instant(
    cycle: CycleSpec,
    occurs_at: datetime,
    due_at_minute: int,
    due_day_of_week: int | None = None,
    due_day_of_month: int | None = None,
) -> datetime:
    """按发生期所在周期计算截止时间

    DAILY / ONE_TIME 为当天 due_at_minute；WEEKLY 为本周第 due_day_of_week 天
    （默认周日）；MONTHLY 为本月 due_day_of_month 号（0 或默认为月末，超出截断到月末）。

    Raises:
        ConfigurationError: 截止早于下发
    """
    period_start, _ = period_bounds(cycle, occurs_at)
    day = period_start.date()

    match cycle.cycle_type:
        case CycleType.WEEKLY:
            weekday = due_day_of_week or 7
            day += timedelta(days=max(0, min(6, weekday - 1)))
        case CycleType.MONTHLY:
            run_day = due_day_of_month if due_day_of_month is not None else 0
            day = day.replace(day=_effective_month_day(day.year, day.month, run_day))
        case _:
            day = localize(cycle, occurs_at).date()

    due = _at_minute(day, due_at_minute, cycle.tz)
    if due < occurs_at:
        raise ConfigurationError(
            f"截止时间 {due.isoformat()} 早于下发时间 {occurs_at.isoformat()}"
        )
    return due


def due_instant(occurs_at: datetime, due_offset_minutes: int) -> datetime:
    """截止时间 = 下发时间 + 下发到截止的偏移

    Raises:
        ConfigurationError: 偏移为负（截止早于下发）
    """
    if due_offset_minutes < 0:
        raise ConfigurationError(
            f"截止时间早于下发时间（偏移 {due_offset_minutes} 分钟）"
        )
    return occurs_at + timedelta(minutes=due_offset_minutes)
