"""日历投影

只读聚合：已生成任务按截止日期（日历时区）分桶统计；
尚未发放的未来发生期单独计入 preview，不写回任何状态。
"""

from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import structlog

from .config import EngineConfig
from .engine import DistributionEngine
from .models.calendar import CalendarDay, CalendarFilters, CalendarSummary, CalendarTypeStat
from .models.enums import TaskPriority, TaskStatus, TaskType
from .store.protocols import TaskStore

log = structlog.get_logger()


class CalendarProjection:
    """日历聚合"""

    def __init__(
        self,
        task_store: TaskStore,
        engine: DistributionEngine,
        config: EngineConfig | None = None,
    ) -> None:
        self._tasks = task_store
        self._engine = engine
        self._tz = ZoneInfo((config or EngineConfig()).calendar_timezone)

    async def summary(
        self,
        start: date,
        end: date,
        filters: CalendarFilters | None = None,
        now: datetime | None = None,
    ) -> CalendarSummary:
        """[start, end] 闭区间内的按日统计

        Args:
            start: 起始日期（日历时区）
            end: 结束日期（日历时区，含当天）
            filters: 筛选条件
            now: 当前时间，用于判断逾期和预览起点
        """
        filters = filters or CalendarFilters()
        now = now or datetime.now(self._tz)
        range_start = datetime.combine(start, time.min, tzinfo=self._tz)
        range_end = datetime.combine(end + timedelta(days=1), time.min, tzinfo=self._tz)

        days: dict[date, CalendarDay] = {}
        type_totals: Counter[TaskType] = Counter()
        type_priorities: dict[TaskType, Counter[str]] = defaultdict(Counter)

        def _day(d: date) -> CalendarDay:
            return days.setdefault(d, CalendarDay(day=d))

        tasks = await self._tasks.list_tasks(range_start, range_end, filters)
        for task in tasks:
            bucket = _day(task.due_at.astimezone(self._tz).date())
            bucket.total += 1
            if task.status == TaskStatus.COMPLETED:
                bucket.completed += 1
            elif task.status == TaskStatus.OVERDUE or (
                task.status != TaskStatus.CANCELLED and task.due_at < now
            ):
                bucket.overdue += 1
            if task.priority == TaskPriority.URGENT:
                bucket.urgent += 1
            bucket.by_type[task.task_type] = bucket.by_type.get(task.task_type, 0) + 1
            bucket.by_priority[task.priority] = bucket.by_priority.get(task.priority, 0) + 1
            type_totals[task.task_type] += 1
            type_priorities[task.task_type][task.priority] += 1

        previews = []
        if not filters.excludes_preview:
            previews = [
                p
                for p in await self._engine.preview_window(range_start, range_end, now)
                if p.due_at < range_end
                and (filters.task_type is None or p.task_type == filters.task_type)
                and (filters.priority is None or p.priority == filters.priority)
            ]
            for p in previews:
                _day(p.due_at.astimezone(self._tz).date()).preview += 1

        await log.adebug(
            "calendar_summary_built",
            start=start.isoformat(),
            end=end.isoformat(),
            task_count=len(tasks),
            preview_count=len(previews),
        )
        return CalendarSummary(
            summary=[days[d] for d in sorted(days)],
            type_stats=[
                CalendarTypeStat(
                    task_type=task_type,
                    total=total,
                    by_priority=dict(type_priorities[task_type]),
                )
                for task_type, total in sorted(type_totals.items())
            ],
            previews=previews,
        )
