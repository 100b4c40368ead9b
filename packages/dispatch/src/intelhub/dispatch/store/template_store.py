"""模板/规则配置存储

配置由管理员维护，引擎只读取；唯一的写入是 last_run_at / next_run_at 参考标记。
与 SqliteTaskStore 一致，这里不提交事务，由调用方决定提交时机。
"""

from datetime import UTC, datetime

import aiosqlite

from ..models.template import TaskRule, TaskTemplate
from .timestamps import from_db_opt, to_db, to_db_opt

# 参考标记单独成列，不写入 data
_MARKER_FIELDS = {"next_run_at", "last_run_at"}


class SqliteTemplateStore:
    """模板与规则的 SQLite 存储"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def save_template(self, template: TaskTemplate) -> None:
        """新增或覆盖模板配置"""
        await self._conn.execute(
            """
            INSERT INTO task_templates (template_id, name, is_active, data,
                                        next_run_at, last_run_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(template_id) DO UPDATE SET
                name = excluded.name,
                is_active = excluded.is_active,
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (
                template.template_id,
                template.name,
                int(template.is_active),
                template.model_dump_json(exclude=_MARKER_FIELDS),
                to_db_opt(template.next_run_at),
                to_db_opt(template.last_run_at),
                to_db(template.updated_at or datetime.now(UTC)),
            ),
        )

    async def get_template(self, template_id: str) -> TaskTemplate | None:
        cursor = await self._conn.execute(
            "SELECT data, next_run_at, last_run_at FROM task_templates WHERE template_id = ?",
            (template_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_template(row)

    async def list_active_templates(self) -> list[TaskTemplate]:
        """全部启用模板，按 template_id 排序"""
        cursor = await self._conn.execute(
            """
            SELECT data, next_run_at, last_run_at FROM task_templates
            WHERE is_active = 1 ORDER BY template_id
            """
        )
        rows = await cursor.fetchall()
        return [self._row_to_template(row) for row in rows]

    async def update_run_markers(
        self,
        template_id: str,
        last_run_at: datetime | None,
        next_run_at: datetime | None,
    ) -> None:
        """更新参考标记（不参与发放判断）"""
        await self._conn.execute(
            "UPDATE task_templates SET last_run_at = ?, next_run_at = ? WHERE template_id = ?",
            (to_db_opt(last_run_at), to_db_opt(next_run_at), template_id),
        )

    async def save_rule(self, rule: TaskRule) -> None:
        """新增或覆盖规则"""
        await self._conn.execute(
            """
            INSERT INTO task_rules (rule_id, template_id, is_active, data, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(rule_id) DO UPDATE SET
                template_id = excluded.template_id,
                is_active = excluded.is_active,
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (
                rule.rule_id,
                rule.template_id,
                int(rule.is_active),
                rule.model_dump_json(),
                to_db(datetime.now(UTC)),
            ),
        )

    async def list_rules(self, template_id: str, active_only: bool = True) -> list[TaskRule]:
        """模板下的规则，按 rule_id 排序"""
        sql = "SELECT data FROM task_rules WHERE template_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        cursor = await self._conn.execute(sql + " ORDER BY rule_id", (template_id,))
        rows = await cursor.fetchall()
        return [TaskRule.model_validate_json(row[0]) for row in rows]

    @staticmethod
    def _row_to_template(row: aiosqlite.Row) -> TaskTemplate:
        template = TaskTemplate.model_validate_json(row[0])
        return template.model_copy(
            update={
                "next_run_at": from_db_opt(row[1]),
                "last_run_at": from_db_opt(row[2]),
            }
        )
