"""日历聚合模型

materialized 计数来自已生成任务；preview 计数来自尚未发放的未来发生期，
两者在结果中分开呈现。
"""

from datetime import date

from pydantic import BaseModel, Field

from .enums import TaskPriority, TaskStatus, TaskType
from .plan import OccurrencePreview


class CalendarFilters(BaseModel):
    """日历筛选条件"""

    assignee_id: str | None = None
    assignee_org_id: str | None = None
    assignee_dept_id: str | None = None
    status: TaskStatus | None = None
    task_type: TaskType | None = None
    priority: TaskPriority | None = None
    include_preview: bool = True

    @property
    def excludes_preview(self) -> bool:
        """预览没有执行人和状态，按执行人/状态筛选时不计入"""
        return (
            not self.include_preview
            or self.assignee_id is not None
            or self.assignee_org_id is not None
            or self.assignee_dept_id is not None
            or self.status is not None
        )


class CalendarDay(BaseModel):
    """单日聚合"""

    day: date = Field(description="日期（日历时区）")
    total: int = Field(default=0, description="已生成任务数")
    completed: int = 0
    overdue: int = 0
    urgent: int = 0
    preview: int = Field(default=0, description="未发放的预览发生期数")
    by_type: dict[str, int] = Field(default_factory=dict)
    by_priority: dict[str, int] = Field(default_factory=dict)


class CalendarTypeStat(BaseModel):
    """按任务类型的统计"""

    task_type: TaskType
    total: int = 0
    by_priority: dict[str, int] = Field(default_factory=dict)


class CalendarSummary(BaseModel):
    """日历聚合结果"""

    summary: list[CalendarDay] = Field(default_factory=list)
    type_stats: list[CalendarTypeStat] = Field(default_factory=list)
    previews: list[OccurrencePreview] = Field(
        default_factory=list,
        description="预览发生期明细（只读，不落库）",
    )
