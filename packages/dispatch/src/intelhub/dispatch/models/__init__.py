"""IntelHub Dispatch Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .calendar import CalendarDay, CalendarFilters, CalendarSummary, CalendarTypeStat
from .directory import CollectionPoint, User
from .enums import (
    OPEN_STATES,
    SETTLED_OCCURRENCE_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    AssigneeMode,
    AssigneeStrategy,
    CompletionPolicy,
    CycleType,
    GroupStatus,
    OccurrenceState,
    PointType,
    ScopeType,
    TaskPriority,
    TaskStatus,
    TaskType,
    validate_transition,
)
from .plan import (
    AssigneePreview,
    AssignmentState,
    ConfigWarning,
    DistributionPreview,
    DistributionReport,
    GroupTransition,
    OccurrenceOutcome,
    OccurrencePreview,
    Selection,
    TaskEmissionPlan,
)
from .scope import (
    AllActiveScope,
    CandidateTarget,
    DepartmentScope,
    OrganizationScope,
    PointScope,
    QueryScope,
    RoleScope,
    ScopeDescriptor,
    ScopeResolution,
    UnassignedPoint,
    UserScope,
    build_scope,
)
from .task import (
    ConfigFault,
    GeneratedTask,
    OccurrenceRecord,
    RotationCursor,
    TaskGroup,
    rule_key_of,
)
from .template import DuePolicy, TaskRule, TaskTemplate

__all__ = [
    # 枚举
    "CycleType",
    "TaskType",
    "TaskPriority",
    "TaskStatus",
    "ScopeType",
    "AssigneeStrategy",
    "CompletionPolicy",
    "AssigneeMode",
    "PointType",
    "GroupStatus",
    "OccurrenceState",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "OPEN_STATES",
    "SETTLED_OCCURRENCE_STATES",
    "validate_transition",
    # 配置
    "TaskTemplate",
    "TaskRule",
    "DuePolicy",
    # 范围
    "ScopeDescriptor",
    "PointScope",
    "UserScope",
    "DepartmentScope",
    "OrganizationScope",
    "RoleScope",
    "AllActiveScope",
    "QueryScope",
    "CandidateTarget",
    "UnassignedPoint",
    "ScopeResolution",
    "build_scope",
    # 外部实体
    "User",
    "CollectionPoint",
    # 任务
    "GeneratedTask",
    "TaskGroup",
    "OccurrenceRecord",
    "RotationCursor",
    "ConfigFault",
    "rule_key_of",
    # 过程值对象
    "AssignmentState",
    "Selection",
    "ConfigWarning",
    "TaskEmissionPlan",
    "GroupTransition",
    "OccurrenceOutcome",
    "DistributionReport",
    "OccurrencePreview",
    "AssigneePreview",
    "DistributionPreview",
    # 日历
    "CalendarFilters",
    "CalendarDay",
    "CalendarTypeStat",
    "CalendarSummary",
]
