"""生成任务、任务组与发放记录

GeneratedTask / TaskGroup 在创建时归分发引擎所有，
之后由外部任务生命周期（执行人操作）修改状态，不再修改排期。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import (
    CompletionPolicy,
    GroupStatus,
    OccurrenceState,
    TaskPriority,
    TaskStatus,
    TaskType,
)


def rule_key_of(rule_id: str | None) -> str:
    """发放键中的规则部分（模板自身分配时为空串）"""
    return rule_id or ""


class GeneratedTask(BaseModel):
    """一个具体的工作单元"""

    task_id: str = Field(description="唯一标识，ULID 格式")
    template_id: str = Field(description="来源模板")
    rule_id: str | None = Field(default=None, description="来源规则")
    period_key: str = Field(description="发生期标识，如 2025-06-16 / 2025-W25 / 2025-06")
    title: str = Field(description="任务标题")
    task_type: TaskType = Field(default=TaskType.COLLECTION)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    assignee_id: str = Field(description="执行人")
    assignee_org_id: str | None = Field(default=None, description="执行人组织快照")
    assignee_dept_id: str | None = Field(default=None, description="执行人部门快照")
    collection_point_id: str | None = Field(default=None)
    commodity: str | None = Field(default=None)
    group_id: str | None = Field(default=None, description="共享任务组 ID")
    period_start: datetime = Field(description="周期开始")
    period_end: datetime = Field(description="周期结束")
    due_at: datetime = Field(description="截止时间")
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    is_late: bool = Field(default=False, description="是否逾期完成")
    completed_by_proxy: bool = Field(default=False, description="是否因任务组完成而代完成")
    completed_at: datetime | None = Field(default=None)
    created_at: datetime = Field(description="创建时间")


class TaskGroup(BaseModel):
    """共享完成策略下的任务组"""

    group_id: str = Field(description="唯一标识，ULID 格式")
    template_id: str
    rule_id: str | None = None
    period_key: str
    completion_policy: CompletionPolicy
    required_count: int = Field(ge=1, description="达成完成所需人数")
    completed_count: int = Field(default=0, ge=0)
    member_assignee_ids: list[str] = Field(default_factory=list)
    status: GroupStatus = Field(default=GroupStatus.PENDING)
    created_at: datetime
    updated_at: datetime


class OccurrenceRecord(BaseModel):
    """发放键记录 (template_id, rule_key, period_key)"""

    template_id: str
    rule_key: str = Field(default="", description="规则 ID，模板自身分配为空串")
    period_key: str
    occurs_at: datetime
    state: OccurrenceState
    reason: str = Field(default="")
    attempts: int = Field(default=0)
    task_count: int = Field(default=0)
    group_id: str | None = None
    updated_at: datetime

    @property
    def rule_id(self) -> str | None:
        return self.rule_key or None


class RotationCursor(BaseModel):
    """ROTATION 策略的轮换游标（带版本，随发放一起原子更新）"""

    rule_key: str
    position: int = Field(default=0, ge=0, description="下一次选中的序号（取模前）")
    version: int = Field(default=0, ge=0, description="乐观锁版本")


class ConfigFault(BaseModel):
    """配置故障：在配置指纹变化前，该模板/规则停止处理"""

    template_id: str
    rule_key: str = ""
    fingerprint: str
    message: str
    created_at: datetime
