"""枚举定义

包含周期类型、范围类型、分配策略、完成策略、任务状态机、
发生期（occurrence）状态，以及 VALID_TRANSITIONS 合法流转映射和终态集合。
"""

from enum import StrEnum


class CycleType(StrEnum):
    """周期类型"""

    ONE_TIME = "ONE_TIME"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class TaskType(StrEnum):
    """采集任务类型"""

    COLLECTION = "COLLECTION"
    REPORT = "REPORT"
    RESEARCH = "RESEARCH"
    VERIFICATION = "VERIFICATION"
    OTHER = "OTHER"


class TaskPriority(StrEnum):
    """任务优先级"""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class TaskStatus(StrEnum):
    """任务状态机（外部生命周期，本引擎只消费）"""

    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"  # 已提交待审核
    RETURNED = "RETURNED"  # 已驳回需修改
    COMPLETED = "COMPLETED"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {
        TaskStatus.SUBMITTED,
        TaskStatus.COMPLETED,
        TaskStatus.OVERDUE,
        TaskStatus.CANCELLED,
    },
    TaskStatus.SUBMITTED: {
        TaskStatus.RETURNED,
        TaskStatus.COMPLETED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.RETURNED: {
        TaskStatus.SUBMITTED,
        TaskStatus.OVERDUE,
        TaskStatus.CANCELLED,
    },
    # 超时任务仍允许补交
    TaskStatus.OVERDUE: {
        TaskStatus.SUBMITTED,
        TaskStatus.COMPLETED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.COMPLETED: set(),
    TaskStatus.CANCELLED: set(),
}

TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.COMPLETED,
    TaskStatus.CANCELLED,
}

OPEN_STATES: set[TaskStatus] = {
    TaskStatus.PENDING,
    TaskStatus.SUBMITTED,
    TaskStatus.RETURNED,
    TaskStatus.OVERDUE,
}


class ScopeType(StrEnum):
    """规则范围类型"""

    POINT = "POINT"
    USER = "USER"
    DEPARTMENT = "DEPARTMENT"
    ORGANIZATION = "ORGANIZATION"
    ROLE = "ROLE"
    QUERY = "QUERY"


class AssigneeStrategy(StrEnum):
    """分配策略"""

    POINT_OWNER = "POINT_OWNER"
    ROTATION = "ROTATION"
    BALANCED = "BALANCED"
    USER_POOL = "USER_POOL"


class CompletionPolicy(StrEnum):
    """完成策略"""

    EACH = "EACH"
    ANY_ONE = "ANY_ONE"
    QUORUM = "QUORUM"
    ALL = "ALL"


class AssigneeMode(StrEnum):
    """模板级分配模式（模板无规则时生效）"""

    MANUAL = "MANUAL"
    ALL_ACTIVE = "ALL_ACTIVE"
    BY_DEPARTMENT = "BY_DEPARTMENT"
    BY_ORGANIZATION = "BY_ORGANIZATION"
    BY_COLLECTION_POINT = "BY_COLLECTION_POINT"


class PointType(StrEnum):
    """采集点类型"""

    ENTERPRISE = "ENTERPRISE"
    PORT = "PORT"
    STATION = "STATION"
    REGION = "REGION"
    MARKET = "MARKET"


class GroupStatus(StrEnum):
    """任务组状态"""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class OccurrenceState(StrEnum):
    """发生期状态

    NOT_DUE / DUE 由周期计算得出，不落库；
    其余状态按 (template_id, rule_key, period_key) 持久化。
    """

    NOT_DUE = "NOT_DUE"
    DUE = "DUE"
    EMITTED = "EMITTED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"

    # 可观测性补充状态：区分"范围为空"、"生成失败"、"等待重试"
    SKIPPED_EMPTY = "SKIPPED_EMPTY"
    PENDING_RETRY = "PENDING_RETRY"
    FAILED = "FAILED"


# 已落定的发生期不再生成任务
SETTLED_OCCURRENCE_STATES: set[OccurrenceState] = {
    OccurrenceState.EMITTED,
    OccurrenceState.COMPLETED,
    OccurrenceState.EXPIRED,
    OccurrenceState.SKIPPED_EMPTY,
}


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证任务状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
