"""生成任务与任务组的 SQLite 实现

任务创建后由外部生命周期推进状态，此处仅提供数据库操作；
事务提交由 store.transaction 负责。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.calendar import CalendarFilters
from ..models.enums import VALID_TRANSITIONS, TaskStatus
from ..models.task import GeneratedTask, TaskGroup, rule_key_of
from .timestamps import from_db, from_db_opt, to_db, to_db_opt

_TASK_COLUMNS = """
    task_id, template_id, rule_key, period_key, title, task_type, priority,
    assignee_id, assignee_org_id, assignee_dept_id, collection_point_id, commodity,
    group_id, period_start, period_end, due_at, status, is_late, completed_by_proxy,
    completed_at, created_at
"""

_GROUP_COLUMNS = """
    group_id, template_id, rule_key, period_key, completion_policy, required_count,
    completed_count, member_assignee_ids, status, created_at, updated_at
"""

# 可以流转到 OVERDUE 的状态
_OVERDUE_SOURCES = sorted(
    s.value for s, targets in VALID_TRANSITIONS.items() if TaskStatus.OVERDUE in targets
)


class SqliteTaskStore:
    """GeneratedTask / TaskGroup 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_task(self, task: GeneratedTask) -> None:
        """创建任务记录"""
        await self._conn.execute(
            f"""
            INSERT INTO generated_tasks ({_TASK_COLUMNS}, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.task_id,
                task.template_id,
                rule_key_of(task.rule_id),
                task.period_key,
                task.title,
                task.task_type.value,
                task.priority.value,
                task.assignee_id,
                task.assignee_org_id,
                task.assignee_dept_id,
                task.collection_point_id,
                task.commodity,
                task.group_id,
                to_db(task.period_start),
                to_db(task.period_end),
                to_db(task.due_at),
                task.status.value,
                int(task.is_late),
                int(task.completed_by_proxy),
                to_db_opt(task.completed_at),
                to_db(task.created_at),
                to_db(task.created_at),
            ),
        )

    async def create_group(self, group: TaskGroup) -> None:
        """创建任务组记录"""
        await self._conn.execute(
            f"""
            INSERT INTO task_groups ({_GROUP_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                group.group_id,
                group.template_id,
                rule_key_of(group.rule_id),
                group.period_key,
                group.completion_policy.value,
                group.required_count,
                group.completed_count,
                json.dumps(group.member_assignee_ids),
                group.status.value,
                to_db(group.created_at),
                to_db(group.updated_at),
            ),
        )

    async def get_task(self, task_id: str) -> GeneratedTask | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM generated_tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def get_group(self, group_id: str) -> TaskGroup | None:
        """根据 group_id 查询任务组"""
        cursor = await self._conn.execute(
            f"SELECT {_GROUP_COLUMNS} FROM task_groups WHERE group_id = ?",
            (group_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_group(row)

    async def list_group_members(self, group_id: str) -> list[GeneratedTask]:
        """任务组的全部成员任务"""
        cursor = await self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM generated_tasks WHERE group_id = ? ORDER BY task_id",
            (group_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_tasks_for_occurrence(
        self,
        template_id: str,
        rule_id: str | None,
        period_key: str,
    ) -> list[GeneratedTask]:
        """某个发生期生成的全部任务"""
        cursor = await self._conn.execute(
            f"""
            SELECT {_TASK_COLUMNS} FROM generated_tasks
            WHERE template_id = ? AND rule_key = ? AND period_key = ?
            ORDER BY task_id
            """,
            (template_id, rule_key_of(rule_id), period_key),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_tasks(
        self,
        due_from: datetime,
        due_to: datetime,
        filters: CalendarFilters | None = None,
    ) -> list[GeneratedTask]:
        """按截止时间区间 [due_from, due_to) 查询任务，支持日历筛选条件"""
        sql = f"SELECT {_TASK_COLUMNS} FROM generated_tasks WHERE due_at >= ? AND due_at < ?"
        params: list = [to_db(due_from), to_db(due_to)]

        if filters is not None:
            for column, value in (
                ("assignee_id", filters.assignee_id),
                ("assignee_org_id", filters.assignee_org_id),
                ("assignee_dept_id", filters.assignee_dept_id),
                ("status", filters.status),
                ("task_type", filters.task_type),
                ("priority", filters.priority),
            ):
                if value is not None:
                    sql += f" AND {column} = ?"
                    params.append(str(value))

        cursor = await self._conn.execute(sql + " ORDER BY due_at, task_id", params)
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def pending_count_by_user(self, user_ids: list[str]) -> dict[str, int]:
        """用户当前 PENDING 任务数（BALANCED 策略使用）"""
        counts = {uid: 0 for uid in user_ids}
        if not user_ids:
            return counts
        placeholders = ", ".join("?" for _ in user_ids)
        cursor = await self._conn.execute(
            f"""
            SELECT assignee_id, COUNT(*) FROM generated_tasks
            WHERE status = ? AND assignee_id IN ({placeholders})
            GROUP BY assignee_id
            """,
            (TaskStatus.PENDING.value, *user_ids),
        )
        for row in await cursor.fetchall():
            counts[row[0]] = row[1]
        return counts

    async def update_task(self, task: GeneratedTask, updated_at: datetime) -> None:
        """写回任务的可变字段（状态、逾期、代完成、完成时间）"""
        await self._conn.execute(
            """
            UPDATE generated_tasks
            SET status = ?, is_late = ?, completed_by_proxy = ?, completed_at = ?,
                updated_at = ?
            WHERE task_id = ?
            """,
            (
                task.status.value,
                int(task.is_late),
                int(task.completed_by_proxy),
                to_db_opt(task.completed_at),
                to_db(updated_at),
                task.task_id,
            ),
        )

    async def update_group(self, group: TaskGroup) -> None:
        """写回任务组计数与状态"""
        await self._conn.execute(
            """
            UPDATE task_groups SET completed_count = ?, status = ?, updated_at = ?
            WHERE group_id = ?
            """,
            (group.completed_count, group.status.value, to_db(group.updated_at), group.group_id),
        )

    async def mark_overdue(self, now: datetime) -> int:
        """截止时间已过的未完成任务置为 OVERDUE，返回更新条数"""
        placeholders = ", ".join("?" for _ in _OVERDUE_SOURCES)
        cursor = await self._conn.execute(
            f"""
            UPDATE generated_tasks SET status = ?, updated_at = ?
            WHERE due_at < ? AND status IN ({placeholders})
            """,
            (TaskStatus.OVERDUE.value, to_db(now), to_db(now), *_OVERDUE_SOURCES),
        )
        return cursor.rowcount

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> GeneratedTask:
        """将数据库行转换为 GeneratedTask 模型"""
        return GeneratedTask(
            task_id=row[0],
            template_id=row[1],
            rule_id=row[2] or None,
            period_key=row[3],
            title=row[4],
            task_type=row[5],
            priority=row[6],
            assignee_id=row[7],
            assignee_org_id=row[8],
            assignee_dept_id=row[9],
            collection_point_id=row[10],
            commodity=row[11],
            group_id=row[12],
            period_start=from_db(row[13]),
            period_end=from_db(row[14]),
            due_at=from_db(row[15]),
            status=row[16],
            is_late=bool(row[17]),
            completed_by_proxy=bool(row[18]),
            completed_at=from_db_opt(row[19]),
            created_at=from_db(row[20]),
        )

    @staticmethod
    def _row_to_group(row: aiosqlite.Row) -> TaskGroup:
        return TaskGroup(
            group_id=row[0],
            template_id=row[1],
            rule_id=row[2] or None,
            period_key=row[3],
            completion_policy=row[4],
            required_count=row[5],
            completed_count=row[6],
            member_assignee_ids=json.loads(row[7]),
            status=row[8],
            created_at=from_db(row[9]),
            updated_at=from_db(row[10]),
        )
