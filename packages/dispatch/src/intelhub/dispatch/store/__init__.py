"""IntelHub Dispatch Store -- SQLite 持久化实现

提供工厂函数创建共享数据库连接的 Store 实例组。
"""

import asyncio
from pathlib import Path

import aiosqlite

from .occurrence_store import SqliteOccurrenceStore
from .sqlite_init import init_db
from .task_store import SqliteTaskStore
from .template_store import SqliteTemplateStore
from .transaction import (
    cancel_group,
    clear_fault,
    complete_task,
    emit_occurrence,
    mark_overdue,
    record_fault,
    record_outcome,
    transition_task,
)


class StoreGroup:
    """Store 实例组 -- 共享同一个数据库连接

    write_lock 串行化共享连接上的写事务（同一进程内的并发 tick）。
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self.template_store = SqliteTemplateStore(conn)
        self.task_store = SqliteTaskStore(conn)
        self.occurrence_store = SqliteOccurrenceStore(conn)
        self.write_lock = asyncio.Lock()

    async def close(self) -> None:
        await self.conn.close()


async def create_store_group(db_path: str) -> StoreGroup:
    """创建 Store 实例组

    Args:
        db_path: SQLite 数据库文件路径

    Returns:
        StoreGroup 实例
    """
    # 确保数据库目录存在
    db_dir = Path(db_path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await init_db(conn)

    return StoreGroup(conn=conn)


__all__ = [
    "StoreGroup",
    "create_store_group",
    "SqliteTemplateStore",
    "SqliteTaskStore",
    "SqliteOccurrenceStore",
    "init_db",
    "emit_occurrence",
    "record_outcome",
    "record_fault",
    "clear_fault",
    "complete_task",
    "transition_task",
    "cancel_group",
    "mark_overdue",
]
