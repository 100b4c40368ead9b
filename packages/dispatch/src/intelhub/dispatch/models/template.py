"""TaskTemplate / TaskRule 配置模型

模板与规则是外部持久化的配置，由创建它们的管理员拥有。
模板无规则时，模板自身的 assignee_mode 决定范围。
"""

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from .enums import (
    AssigneeMode,
    AssigneeStrategy,
    CompletionPolicy,
    CycleType,
    PointType,
    TaskPriority,
    TaskType,
)
from .scope import ScopeDescriptor

MINUTES_IN_DAY = 24 * 60


class DuePolicy(BaseModel):
    """QUORUM 完成策略的法定人数：绝对数量或比例二选一"""

    quorum: int | None = Field(default=None, ge=1, description="绝对人数")
    ratio: float | None = Field(default=None, gt=0, le=1, description="比例 (0, 1]")

    @model_validator(mode="after")
    def _exactly_one(self) -> "DuePolicy":
        if (self.quorum is None) == (self.ratio is None):
            raise ValueError("duePolicy 需要且只能设置 quorum 或 ratio 之一")
        return self


class TaskTemplate(BaseModel):
    """任务模板 -- 常驻配置：任务类型、周期、默认分配方式"""

    template_id: str = Field(description="模板 ID")
    name: str = Field(min_length=1, description="模板名称")
    description: str = Field(default="", description="模板说明")
    task_type: TaskType = Field(default=TaskType.COLLECTION)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)

    # 周期配置
    cycle_type: CycleType = Field(default=CycleType.ONE_TIME)
    run_at_minute: int = Field(default=540, ge=0, le=MINUTES_IN_DAY - 1, description="下发时刻")
    due_at_minute: int = Field(default=1080, ge=0, le=MINUTES_IN_DAY - 1, description="截止时刻")
    run_day_of_week: int | None = Field(default=None, ge=1, le=7, description="1=周一..7=周日")
    run_day_of_month: int | None = Field(default=None, ge=0, le=31, description="0 表示月末")
    due_day_of_week: int | None = Field(
        default=None, ge=1, le=7, description="每周截止日，空表示周日"
    )
    due_day_of_month: int | None = Field(
        default=None, ge=0, le=31, description="每月截止日，0 或空表示月末"
    )
    active_from: datetime = Field(description="生效时间")
    active_until: datetime | None = Field(default=None, description="失效时间，空表示长期")
    timezone: str = Field(default="Asia/Shanghai", description="IANA 时区")
    allow_late: bool = Field(default=True, description="是否允许补发已过截止的发生期")
    max_backfill_periods: int = Field(default=3, ge=0, le=365, description="最大回填期数")
    is_active: bool = Field(default=True)

    # 模板级分配
    assignee_mode: AssigneeMode = Field(default=AssigneeMode.MANUAL)
    assignee_ids: list[str] = Field(default_factory=list)
    department_ids: list[str] = Field(default_factory=list)
    organization_ids: list[str] = Field(default_factory=list)
    collection_point_ids: list[str] = Field(default_factory=list)
    target_point_type: PointType | None = Field(default=None)

    # 仅供参考的缓存标记
    next_run_at: datetime | None = Field(default=None)
    last_run_at: datetime | None = Field(default=None)
    created_at: datetime | None = Field(default=None)
    updated_at: datetime | None = Field(default=None)

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"未知时区: {value}") from e
        return value

    @property
    def due_offset_minutes(self) -> int:
        """下发到截止的分钟偏移（规则沿用模板的偏移；模板自身按周期截止日计算）"""
        return self.due_at_minute - self.run_at_minute


class TaskRule(BaseModel):
    """分发规则 -- 细化范围/频率/分配/完成策略，隶属于一个模板"""

    rule_id: str = Field(description="规则 ID")
    template_id: str = Field(description="所属模板 ID")
    scope: ScopeDescriptor = Field(description="范围描述")
    frequency_type: CycleType = Field(default=CycleType.DAILY)
    weekdays: list[int] = Field(default_factory=list, description="每周几（1-7）")
    month_days: list[int] = Field(default_factory=list, description="每月几号（0 表示月末）")
    dispatch_at_minute: int = Field(default=540, ge=0, le=MINUTES_IN_DAY - 1)
    assignee_strategy: AssigneeStrategy = Field(default=AssigneeStrategy.POINT_OWNER)
    completion_policy: CompletionPolicy = Field(default=CompletionPolicy.EACH)
    due_policy: DuePolicy | None = Field(default=None, description="仅 QUORUM 使用")
    grouping: bool = Field(default=False, description="同一发生期的执行人是否共享任务组")
    is_active: bool = Field(default=True)

    @model_validator(mode="after")
    def _check_days(self) -> "TaskRule":
        if any(d < 1 or d > 7 for d in self.weekdays):
            raise ValueError("weekdays 取值范围 1-7")
        if any(d < 0 or d > 31 for d in self.month_days):
            raise ValueError("monthDays 取值范围 0-31")
        return self
