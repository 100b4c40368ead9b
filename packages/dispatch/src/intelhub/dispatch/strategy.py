"""分配策略

纯函数：select(strategy, candidates, state) -> Selection。
轮换游标和待办数量都由调用方显式传入，相同输入总是得到相同输出。
"""

from .models.enums import AssigneeStrategy
from .models.plan import AssignmentState, Selection
from .models.scope import CandidateTarget
from .models.task import RotationCursor


def select(
    strategy: AssigneeStrategy,
    candidates: list[CandidateTarget],
    state: AssignmentState | None = None,
) -> Selection:
    """从候选目标中选出执行人

    Args:
        strategy: 分配策略
        candidates: 已按候选键排序的候选目标
        state: 轮换游标 / 待办数量快照

    Returns:
        Selection；ROTATION 时 next_cursor 为推进后的游标（版本不变，由存储层 CAS 递增）
    """
    state = state or AssignmentState()

    match strategy:
        case AssigneeStrategy.POINT_OWNER | AssigneeStrategy.USER_POOL:
            return Selection(assignees=list(candidates), next_cursor=state.cursor)
        case AssigneeStrategy.ROTATION:
            return _rotate(candidates, state.cursor or RotationCursor(rule_key=""))
        case AssigneeStrategy.BALANCED:
            return Selection(
                assignees=_least_loaded(candidates, state.pending_counts),
                next_cursor=state.cursor,
            )


def _rotate(candidates: list[CandidateTarget], cursor: RotationCursor) -> Selection:
    if not candidates:
        return Selection(next_cursor=cursor)
    chosen = candidates[cursor.position % len(candidates)]
    return Selection(
        assignees=[chosen],
        next_cursor=cursor.model_copy(update={"position": cursor.position + 1}),
    )


def _least_loaded(
    candidates: list[CandidateTarget],
    pending_counts: dict[str, int],
) -> list[CandidateTarget]:
    if not candidates:
        return []
    # 待办最少者优先，相同时按候选键
    best = min(candidates, key=lambda c: (pending_counts.get(c.user_id, 0), c.key))
    return [best]
