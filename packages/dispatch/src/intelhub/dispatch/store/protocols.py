"""Store Protocol 接口定义

定义 TemplateStore、TaskStore、OccurrenceStore 的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from datetime import datetime
from typing import Protocol

from ..models.calendar import CalendarFilters
from ..models.enums import OccurrenceState
from ..models.task import ConfigFault, GeneratedTask, OccurrenceRecord, RotationCursor, TaskGroup
from ..models.template import TaskRule, TaskTemplate


class TemplateStore(Protocol):
    """模板/规则配置接口"""

    async def save_template(self, template: TaskTemplate) -> None: ...

    async def get_template(self, template_id: str) -> TaskTemplate | None: ...

    async def list_active_templates(self) -> list[TaskTemplate]: ...

    async def update_run_markers(
        self,
        template_id: str,
        last_run_at: datetime | None,
        next_run_at: datetime | None,
    ) -> None:
        """更新参考标记"""
        ...

    async def save_rule(self, rule: TaskRule) -> None: ...

    async def list_rules(self, template_id: str, active_only: bool = True) -> list[TaskRule]: ...


class TaskStore(Protocol):
    """生成任务存储接口"""

    async def create_task(self, task: GeneratedTask) -> None:
        """创建任务记录"""
        ...

    async def create_group(self, group: TaskGroup) -> None:
        """创建任务组记录"""
        ...

    async def get_task(self, task_id: str) -> GeneratedTask | None: ...

    async def get_group(self, group_id: str) -> TaskGroup | None: ...

    async def list_group_members(self, group_id: str) -> list[GeneratedTask]: ...

    async def list_tasks(
        self,
        due_from: datetime,
        due_to: datetime,
        filters: CalendarFilters | None = None,
    ) -> list[GeneratedTask]:
        """按截止时间区间查询（日历使用）"""
        ...

    async def pending_count_by_user(self, user_ids: list[str]) -> dict[str, int]:
        """用户 PENDING 任务数（BALANCED 使用）"""
        ...


class OccurrenceStore(Protocol):
    """发生期 / 轮换游标 / 配置故障存储接口

    claim_occurrence 必须是原子的"不存在或未落定则写入"。
    """

    async def claim_occurrence(self, record: OccurrenceRecord) -> bool:
        """认领发放键，False 表示已落定（重复发放）"""
        ...

    async def record_state(self, record: OccurrenceRecord) -> bool: ...

    async def latest_occurrence(
        self, template_id: str, rule_key: str
    ) -> OccurrenceRecord | None: ...

    async def list_occurrences(
        self,
        template_id: str,
        rule_key: str | None = None,
        state: OccurrenceState | None = None,
    ) -> list[OccurrenceRecord]: ...

    async def get_cursor(self, rule_key: str) -> RotationCursor: ...

    async def compare_and_set_cursor(self, cursor_next: RotationCursor) -> bool:
        """版本匹配时写入，False 表示冲突"""
        ...

    async def get_fault(self, template_id: str, rule_key: str) -> ConfigFault | None: ...

    async def save_fault(self, fault: ConfigFault) -> None: ...

    async def clear_fault(self, template_id: str, rule_key: str) -> None: ...
