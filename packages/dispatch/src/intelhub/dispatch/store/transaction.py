"""原子事务封装

发放：发放键认领 + 任务组 + 任务 + 轮换游标 CAS 在同一 SQLite 事务内提交。
完成：成员任务完成 + 任务组计数/代完成 + 发生期完成在同一事务内提交。
调用方需持有 StoreGroup.write_lock，避免共享连接上的事务交错。
"""

from datetime import datetime

import aiosqlite
import structlog

from ..completion import apply_member_completion
from ..exceptions import CursorConflictError, InvalidTransitionError, TaskNotFoundError
from ..models.enums import (
    OPEN_STATES,
    GroupStatus,
    OccurrenceState,
    TaskStatus,
    validate_transition,
)
from ..models.plan import GroupTransition
from ..models.task import (
    ConfigFault,
    GeneratedTask,
    OccurrenceRecord,
    RotationCursor,
    TaskGroup,
    rule_key_of,
)
from .occurrence_store import SqliteOccurrenceStore
from .task_store import SqliteTaskStore

log = structlog.get_logger()


async def emit_occurrence(
    conn: aiosqlite.Connection,
    occurrence_store: SqliteOccurrenceStore,
    task_store: SqliteTaskStore,
    record: OccurrenceRecord,
    tasks: list[GeneratedTask],
    group: TaskGroup | None = None,
    cursor_next: RotationCursor | None = None,
) -> bool:
    """在同一事务内原子发放一个发生期

    Args:
        conn: 数据库连接（需在同一连接上操作以保证事务性）
        occurrence_store: 发生期存储
        task_store: 任务存储
        record: 发放键记录（state=EMITTED）
        tasks: 要创建的任务
        group: 共享任务组（可选）
        cursor_next: 推进后的轮换游标（可选，version 为读取时的版本）

    Returns:
        True 表示已发放；False 表示发放键已落定，本次为空操作

    Raises:
        CursorConflictError: 轮换游标已被并发推进，事务已回滚
    """
    try:
        if not await occurrence_store.claim_occurrence(record):
            await conn.rollback()
            return False

        if group is not None:
            await task_store.create_group(group)
        for task in tasks:
            await task_store.create_task(task)

        if cursor_next is not None and not await occurrence_store.compare_and_set_cursor(
            cursor_next
        ):
            raise CursorConflictError(cursor_next.rule_key, cursor_next.version)

        await conn.commit()
        return True
    except Exception:
        await conn.rollback()
        raise


async def record_outcome(
    conn: aiosqlite.Connection,
    occurrence_store: SqliteOccurrenceStore,
    records: list[OccurrenceRecord],
) -> None:
    """批量记录未发放的发生期结果（EXPIRED / SKIPPED_EMPTY / PENDING_RETRY / FAILED）"""
    try:
        for record in records:
            await occurrence_store.record_state(record)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def record_fault(
    conn: aiosqlite.Connection,
    occurrence_store: SqliteOccurrenceStore,
    fault: ConfigFault,
    failed: OccurrenceRecord | None = None,
) -> None:
    """记录配置故障（以及失败的发生期），模板/规则停止处理直至配置变化"""
    try:
        if failed is not None:
            await occurrence_store.record_state(failed)
        await occurrence_store.save_fault(fault)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def clear_fault(
    conn: aiosqlite.Connection,
    occurrence_store: SqliteOccurrenceStore,
    template_id: str,
    rule_key: str,
) -> None:
    """配置已变化，解除停止状态"""
    try:
        await occurrence_store.clear_fault(template_id, rule_key)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def complete_task(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    occurrence_store: SqliteOccurrenceStore,
    task_id: str,
    now: datetime,
) -> tuple[GeneratedTask, GroupTransition | None]:
    """完成一个任务，并推进所属任务组与发生期

    completed_at 晚于 due_at 时记 is_late。

    Raises:
        TaskNotFoundError: 任务不存在
        InvalidTransitionError: 当前状态不允许完成
    """
    try:
        task = await task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if not validate_transition(task.status, TaskStatus.COMPLETED):
            raise InvalidTransitionError(task_id, task.status, TaskStatus.COMPLETED)

        completed = task.model_copy(
            update={
                "status": TaskStatus.COMPLETED,
                "completed_at": now,
                "is_late": now > task.due_at,
            }
        )
        await task_store.update_task(completed, now)

        transition: GroupTransition | None = None
        if task.group_id is not None:
            transition = await _advance_group(task_store, task.group_id, task_id, now)

        await _settle_occurrence(task_store, occurrence_store, completed, transition, now)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise

    log.info(
        "task_completed",
        task_id=task_id,
        is_late=completed.is_late,
        group_fired=bool(transition and transition.fired),
    )
    return completed, transition


async def _advance_group(
    task_store: SqliteTaskStore,
    group_id: str,
    task_id: str,
    now: datetime,
) -> GroupTransition:
    group = await task_store.get_group(group_id)
    if group is None:
        raise TaskNotFoundError(group_id)
    members = await task_store.list_group_members(group_id)
    transition = apply_member_completion(group, members, task_id)
    if group.status != GroupStatus.PENDING:
        return transition

    await task_store.update_group(
        group.model_copy(
            update={
                "completed_count": transition.completed_count,
                "status": GroupStatus.COMPLETED if transition.group_completed else group.status,
                "updated_at": now,
            }
        )
    )
    for member in members:
        if member.task_id in transition.proxy_task_ids:
            await task_store.update_task(
                member.model_copy(
                    update={
                        "status": TaskStatus.COMPLETED,
                        "completed_by_proxy": True,
                        "completed_at": now,
                    }
                ),
                now,
            )
    return transition


async def _settle_occurrence(
    task_store: SqliteTaskStore,
    occurrence_store: SqliteOccurrenceStore,
    task: GeneratedTask,
    transition: GroupTransition | None,
    now: datetime,
) -> None:
    # 任务组完成，或独立任务全部完成时，发生期转为 COMPLETED
    if transition is not None:
        done = transition.fired
    else:
        siblings = await task_store.list_tasks_for_occurrence(
            task.template_id, task.rule_id, task.period_key
        )
        done = all(
            s.task_id == task.task_id or s.status == TaskStatus.COMPLETED for s in siblings
        )
    if done:
        await occurrence_store.set_state(
            task.template_id,
            rule_key_of(task.rule_id),
            task.period_key,
            OccurrenceState.COMPLETED,
            now,
        )


async def transition_task(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    task_id: str,
    to_status: TaskStatus,
    now: datetime,
) -> GeneratedTask:
    """应用外部生命周期的状态流转（提交、驳回、取消等）

    完成请使用 complete_task，以便推进任务组和发生期。

    Raises:
        TaskNotFoundError: 任务不存在
        InvalidTransitionError: 流转不合法
    """
    try:
        task = await task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if not validate_transition(task.status, to_status):
            raise InvalidTransitionError(task_id, task.status, to_status)
        updated = task.model_copy(update={"status": to_status})
        await task_store.update_task(updated, now)
        await conn.commit()
        return updated
    except Exception:
        await conn.rollback()
        raise


async def cancel_group(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    group_id: str,
    now: datetime,
) -> int:
    """取消任务组及其全部未完成成员，返回取消的任务数

    Raises:
        TaskNotFoundError: 任务组不存在
    """
    try:
        group = await task_store.get_group(group_id)
        if group is None:
            raise TaskNotFoundError(group_id)
        if group.status != GroupStatus.PENDING:
            await conn.rollback()
            return 0

        cancelled = 0
        for member in await task_store.list_group_members(group_id):
            if member.status in OPEN_STATES:
                await task_store.update_task(
                    member.model_copy(update={"status": TaskStatus.CANCELLED}), now
                )
                cancelled += 1
        await task_store.update_group(
            group.model_copy(update={"status": GroupStatus.CANCELLED, "updated_at": now})
        )
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise

    log.info("task_group_cancelled", group_id=group_id, cancelled=cancelled)
    return cancelled


async def mark_overdue(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    now: datetime,
) -> int:
    """截止时间已过的未完成任务批量置为 OVERDUE"""
    try:
        count = await task_store.mark_overdue(now)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise

    if count:
        log.info("tasks_marked_overdue", count=count)
    return count
