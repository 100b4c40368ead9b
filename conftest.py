"""全局 pytest 配置 -- 临时 SQLite 数据库 fixture

async 测试由 pyproject.toml 中的 asyncio_mode = "auto" 支持。
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import aiosqlite
import pytest_asyncio


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "sqlite" / "dispatch_test.db"


@pytest_asyncio.fixture
async def db_conn(tmp_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """提供已初始化的临时 SQLite 数据库连接"""
    from intelhub.dispatch.store.sqlite_init import init_db

    conn = await aiosqlite.connect(str(tmp_path / "conn_test.db"))
    await init_db(conn)
    yield conn
    await conn.close()
