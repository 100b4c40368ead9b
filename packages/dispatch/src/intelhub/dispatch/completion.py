"""完成策略

shape: 把选中的执行人整形为发放计划（独立任务或共享任务组）。
apply_member_completion: 成员任务完成后任务组的状态变化。
两者都是纯函数，持久化由 store.transaction 负责。
"""

import math

import structlog

from .exceptions import ConfigurationError
from .models.enums import OPEN_STATES, CompletionPolicy, GroupStatus, TaskStatus
from .models.plan import ConfigWarning, GroupTransition, TaskEmissionPlan
from .models.scope import CandidateTarget
from .models.task import GeneratedTask, TaskGroup
from .models.template import DuePolicy

log = structlog.get_logger()

# 比例法定人数的浮点误差容忍（避免 0.7 * 10 向上取整为 8）
_RATIO_PRECISION = 9


def quorum_size(due_policy: DuePolicy, pool_size: int) -> tuple[int, list[ConfigWarning]]:
    """计算法定人数，截断到 [1, pool_size]"""
    warnings: list[ConfigWarning] = []
    if due_policy.quorum is not None:
        required = due_policy.quorum
    else:
        required = math.ceil(round((due_policy.ratio or 0) * pool_size, _RATIO_PRECISION))

    if required > pool_size:
        warnings.append(
            ConfigWarning(
                code="QUORUM_CLAMPED",
                message=f"法定人数 {required} 超过执行人数 {pool_size}，按 {pool_size} 处理",
            )
        )
    return max(1, min(required, pool_size)), warnings


def shape(
    policy: CompletionPolicy,
    assignees: list[CandidateTarget],
    due_policy: DuePolicy | None = None,
    grouping: bool = False,
) -> TaskEmissionPlan:
    """按完成策略生成发放计划

    Raises:
        ConfigurationError: QUORUM 未配置 due_policy
    """
    n = len(assignees)
    if n == 0:
        return TaskEmissionPlan(policy=policy, shared=False, required_count=0)

    match policy:
        case CompletionPolicy.EACH:
            return TaskEmissionPlan(
                policy=policy,
                assignees=assignees,
                shared=grouping,
                required_count=n if grouping else 1,
            )
        case CompletionPolicy.ANY_ONE:
            return TaskEmissionPlan(
                policy=policy, assignees=assignees, shared=True, required_count=1
            )
        case CompletionPolicy.ALL:
            return TaskEmissionPlan(
                policy=policy, assignees=assignees, shared=True, required_count=n
            )
        case CompletionPolicy.QUORUM:
            if due_policy is None:
                raise ConfigurationError("QUORUM 完成策略需要 due_policy（quorum 或 ratio）")
            required, warnings = quorum_size(due_policy, n)
            for warning in warnings:
                log.warning("completion_config_warning", code=warning.code, message=warning.message)
            return TaskEmissionPlan(
                policy=policy,
                assignees=assignees,
                shared=True,
                required_count=required,
                warnings=warnings,
            )


def apply_member_completion(
    group: TaskGroup,
    members: list[GeneratedTask],
    task_id: str,
) -> GroupTransition:
    """成员 task_id 完成后的任务组变化

    任务组达到 required_count 的那一刻转为 COMPLETED（只触发一次）；
    ANY_ONE / QUORUM 下其余未完成成员标记为代完成。
    对已完成或已取消的任务组再次调用不产生任何变化。
    """
    if group.status != GroupStatus.PENDING:
        return GroupTransition(
            completed_count=group.completed_count,
            group_completed=group.status == GroupStatus.COMPLETED,
            fired=False,
        )

    completed = sum(
        1
        for m in members
        if m.task_id == task_id
        or (m.status == TaskStatus.COMPLETED and not m.completed_by_proxy)
    )
    if completed < group.required_count:
        return GroupTransition(completed_count=completed, group_completed=False, fired=False)

    proxy_ids: list[str] = []
    if group.completion_policy in (CompletionPolicy.ANY_ONE, CompletionPolicy.QUORUM):
        proxy_ids = [
            m.task_id for m in members if m.task_id != task_id and m.status in OPEN_STATES
        ]
    return GroupTransition(
        completed_count=completed,
        group_completed=True,
        fired=True,
        proxy_task_ids=proxy_ids,
    )
