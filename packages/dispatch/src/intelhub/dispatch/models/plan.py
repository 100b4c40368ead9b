"""分配/完成/发放过程中的值对象

AssignmentState 与 Selection 显式承载轮换游标和待办数量快照，
使分配策略成为纯函数，可在重跑时复现。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import CompletionPolicy, OccurrenceState, TaskPriority, TaskType
from .scope import CandidateTarget, UnassignedPoint
from .task import RotationCursor


class AssignmentState(BaseModel):
    """分配策略的输入状态"""

    cursor: RotationCursor | None = Field(default=None, description="ROTATION 游标")
    pending_counts: dict[str, int] = Field(
        default_factory=dict,
        description="BALANCED 使用的用户待办数量快照",
    )


class Selection(BaseModel):
    """分配策略输出：选中的执行人 + 推进后的游标"""

    assignees: list[CandidateTarget] = Field(default_factory=list)
    next_cursor: RotationCursor | None = Field(default=None)


class ConfigWarning(BaseModel):
    """配置告警（不阻断发放，例如法定人数被截断）"""

    code: str
    message: str


class TaskEmissionPlan(BaseModel):
    """完成策略输出：一人一任务，还是共享任务组"""

    policy: CompletionPolicy
    assignees: list[CandidateTarget] = Field(default_factory=list)
    shared: bool = Field(description="True 表示生成 TaskGroup")
    required_count: int = Field(description="任务组达成完成所需人数；EACH 独立任务时为 1")
    warnings: list[ConfigWarning] = Field(default_factory=list)


class GroupTransition(BaseModel):
    """成员完成后任务组的状态变化"""

    completed_count: int
    group_completed: bool = Field(description="任务组当前是否已完成")
    fired: bool = Field(description="本次完成是否触发了任务组完成（只触发一次）")
    proxy_task_ids: list[str] = Field(default_factory=list, description="被代完成的成员任务")


class OccurrenceOutcome(BaseModel):
    """单个发生期的处理结果"""

    template_id: str
    rule_id: str | None = None
    period_key: str
    occurs_at: datetime
    state: OccurrenceState
    duplicate: bool = Field(default=False, description="发放键已存在，本次为空操作")
    task_count: int = 0
    group_id: str | None = None
    reason: str = ""


class DistributionReport(BaseModel):
    """一次 tick / 手动触发的汇总"""

    started_at: datetime
    finished_at: datetime | None = None
    outcomes: list[OccurrenceOutcome] = Field(default_factory=list)
    halted: list[str] = Field(default_factory=list, description="因配置错误停止的模板/规则")
    errors: list[str] = Field(default_factory=list, description="处理异常的模板")

    @property
    def emitted(self) -> list[OccurrenceOutcome]:
        return [
            o for o in self.outcomes if o.state == OccurrenceState.EMITTED and not o.duplicate
        ]

    def count(self, state: OccurrenceState) -> int:
        return sum(1 for o in self.outcomes if o.state == state and not o.duplicate)


class OccurrencePreview(BaseModel):
    """只读的发生期预览（不落库）"""

    template_id: str
    rule_id: str | None = None
    period_key: str
    occurs_at: datetime
    due_at: datetime
    state: OccurrenceState
    task_type: TaskType = TaskType.COLLECTION
    priority: TaskPriority = TaskPriority.MEDIUM


class AssigneePreview(BaseModel):
    """分发预览中的单个执行人"""

    user_id: str
    organization_id: str | None = None
    department_id: str | None = None
    collection_point_ids: list[str] = Field(default_factory=list)
    task_count: int = 0


class DistributionPreview(BaseModel):
    """分发预览：下一次发放会分给谁、生成多少任务"""

    template_id: str
    total_tasks: int = 0
    total_assignees: int = 0
    assignees: list[AssigneePreview] = Field(default_factory=list)
    unassigned_points: list[UnassignedPoint] = Field(default_factory=list)
