"""发放记录、轮换游标与配置故障的 SQLite 实现

occurrences 表的主键 (template_id, rule_key, period_key) 是幂等门：
claim_occurrence 是一条条件 upsert，已落定的发生期不会被再次认领。
"""

from datetime import datetime

import aiosqlite

from ..models.enums import SETTLED_OCCURRENCE_STATES, OccurrenceState
from ..models.task import ConfigFault, OccurrenceRecord, RotationCursor
from .timestamps import from_db, to_db

_OCCURRENCE_COLUMNS = """
    template_id, rule_key, period_key, occurs_at, state, reason, attempts,
    task_count, group_id, updated_at
"""

_SETTLED = ", ".join(f"'{s.value}'" for s in sorted(SETTLED_OCCURRENCE_STATES))


class SqliteOccurrenceStore:
    """发生期状态存储"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def claim_occurrence(self, record: OccurrenceRecord) -> bool:
        """原子认领发放键

        不存在时插入；存在但未落定（PENDING_RETRY / FAILED）时转为 record.state；
        已落定时不做任何修改。

        Returns:
            True 表示本次认领成功，False 表示重复发放
        """
        cursor = await self._conn.execute(
            f"""
            INSERT INTO occurrences ({_OCCURRENCE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(template_id, rule_key, period_key) DO UPDATE SET
                state = excluded.state,
                reason = excluded.reason,
                attempts = occurrences.attempts + 1,
                task_count = excluded.task_count,
                group_id = excluded.group_id,
                updated_at = excluded.updated_at
            WHERE occurrences.state NOT IN ({_SETTLED})
            """,
            self._record_params(record),
        )
        return cursor.rowcount > 0

    async def record_state(self, record: OccurrenceRecord) -> bool:
        """记录未发放结果（EXPIRED / SKIPPED_EMPTY / PENDING_RETRY / FAILED）

        与 claim_occurrence 使用同一条件：已落定的发生期保持不变。
        """
        return await self.claim_occurrence(record)

    async def set_state(
        self,
        template_id: str,
        rule_key: str,
        period_key: str,
        state: OccurrenceState,
        updated_at: datetime,
    ) -> None:
        """无条件更新发生期状态（EMITTED -> COMPLETED）"""
        await self._conn.execute(
            """
            UPDATE occurrences SET state = ?, updated_at = ?
            WHERE template_id = ? AND rule_key = ? AND period_key = ?
            """,
            (state.value, to_db(updated_at), template_id, rule_key, period_key),
        )

    async def get_occurrence(
        self,
        template_id: str,
        rule_key: str,
        period_key: str,
    ) -> OccurrenceRecord | None:
        cursor = await self._conn.execute(
            f"""
            SELECT {_OCCURRENCE_COLUMNS} FROM occurrences
            WHERE template_id = ? AND rule_key = ? AND period_key = ?
            """,
            (template_id, rule_key, period_key),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    async def latest_occurrence(self, template_id: str, rule_key: str) -> OccurrenceRecord | None:
        """最近一次有记录的发生期（任意状态），作为下一次枚举的起点"""
        cursor = await self._conn.execute(
            f"""
            SELECT {_OCCURRENCE_COLUMNS} FROM occurrences
            WHERE template_id = ? AND rule_key = ?
            ORDER BY occurs_at DESC LIMIT 1
            """,
            (template_id, rule_key),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    async def list_occurrences(
        self,
        template_id: str,
        rule_key: str | None = None,
        state: OccurrenceState | None = None,
    ) -> list[OccurrenceRecord]:
        """按模板（可选规则、状态）列出发生期，按发生时间升序"""
        sql = f"SELECT {_OCCURRENCE_COLUMNS} FROM occurrences WHERE template_id = ?"
        params: list = [template_id]
        if rule_key is not None:
            sql += " AND rule_key = ?"
            params.append(rule_key)
        if state is not None:
            sql += " AND state = ?"
            params.append(state.value)
        cursor = await self._conn.execute(sql + " ORDER BY occurs_at, period_key", params)
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def get_cursor(self, rule_key: str) -> RotationCursor:
        """读取轮换游标；不存在时返回初始游标"""
        cursor = await self._conn.execute(
            "SELECT rule_key, position, version FROM rotation_cursors WHERE rule_key = ?",
            (rule_key,),
        )
        row = await cursor.fetchone()
        if row is None:
            return RotationCursor(rule_key=rule_key)
        return RotationCursor(rule_key=row[0], position=row[1], version=row[2])

    async def compare_and_set_cursor(self, cursor_next: RotationCursor) -> bool:
        """版本匹配时写入推进后的游标并递增版本

        Args:
            cursor_next: 推进后的游标，version 为读取时的版本

        Returns:
            True 表示写入成功，False 表示版本冲突
        """
        if cursor_next.version == 0:
            result = await self._conn.execute(
                """
                INSERT INTO rotation_cursors (rule_key, position, version) VALUES (?, ?, 1)
                ON CONFLICT(rule_key) DO UPDATE SET
                    position = excluded.position,
                    version = rotation_cursors.version + 1
                WHERE rotation_cursors.version = 0
                """,
                (cursor_next.rule_key, cursor_next.position),
            )
        else:
            result = await self._conn.execute(
                """
                UPDATE rotation_cursors SET position = ?, version = version + 1
                WHERE rule_key = ? AND version = ?
                """,
                (cursor_next.position, cursor_next.rule_key, cursor_next.version),
            )
        return result.rowcount > 0

    async def get_fault(self, template_id: str, rule_key: str) -> ConfigFault | None:
        cursor = await self._conn.execute(
            """
            SELECT template_id, rule_key, fingerprint, message, created_at
            FROM config_faults WHERE template_id = ? AND rule_key = ?
            """,
            (template_id, rule_key),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return ConfigFault(
            template_id=row[0],
            rule_key=row[1],
            fingerprint=row[2],
            message=row[3],
            created_at=from_db(row[4]),
        )

    async def save_fault(self, fault: ConfigFault) -> None:
        await self._conn.execute(
            """
            INSERT INTO config_faults (template_id, rule_key, fingerprint, message, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(template_id, rule_key) DO UPDATE SET
                fingerprint = excluded.fingerprint,
                message = excluded.message,
                created_at = excluded.created_at
            """,
            (
                fault.template_id,
                fault.rule_key,
                fault.fingerprint,
                fault.message,
                to_db(fault.created_at),
            ),
        )

    async def clear_fault(self, template_id: str, rule_key: str) -> None:
        await self._conn.execute(
            "DELETE FROM config_faults WHERE template_id = ? AND rule_key = ?",
            (template_id, rule_key),
        )

    @staticmethod
    def _record_params(record: OccurrenceRecord) -> tuple:
        return (
            record.template_id,
            record.rule_key,
            record.period_key,
            to_db(record.occurs_at),
            record.state.value,
            record.reason,
            record.attempts,
            record.task_count,
            record.group_id,
            to_db(record.updated_at),
        )

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> OccurrenceRecord:
        return OccurrenceRecord(
            template_id=row[0],
            rule_key=row[1],
            period_key=row[2],
            occurs_at=from_db(row[3]),
            state=row[4],
            reason=row[5],
            attempts=row[6],
            task_count=row[7],
            group_id=row[8],
            updated_at=from_db(row[9]),
        )
