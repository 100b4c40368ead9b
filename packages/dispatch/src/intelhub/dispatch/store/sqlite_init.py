"""SQLite 数据库初始化

PRAGMA 配置 + 表 DDL + 索引创建。
时间列统一存 UTC ISO 字符串，保证范围查询可按字符串比较。
"""

import aiosqlite

# 模板与规则：完整配置存 JSON，常用筛选字段单独成列
_TEMPLATES_DDL = """
CREATE TABLE IF NOT EXISTS task_templates (
    template_id  TEXT PRIMARY KEY,
    name         TEXT NOT NULL DEFAULT '',
    is_active    INTEGER NOT NULL DEFAULT 1,
    data         TEXT NOT NULL DEFAULT '{}',
    next_run_at  TEXT,
    last_run_at  TEXT,
    updated_at   TEXT NOT NULL
);
"""

_RULES_DDL = """
CREATE TABLE IF NOT EXISTS task_rules (
    rule_id      TEXT PRIMARY KEY,
    template_id  TEXT NOT NULL,
    is_active    INTEGER NOT NULL DEFAULT 1,
    data         TEXT NOT NULL DEFAULT '{}',
    updated_at   TEXT NOT NULL,

    FOREIGN KEY (template_id) REFERENCES task_templates(template_id)
);
"""

_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS generated_tasks (
    task_id              TEXT PRIMARY KEY,
    template_id          TEXT NOT NULL,
    rule_key             TEXT NOT NULL DEFAULT '',
    period_key           TEXT NOT NULL,
    title                TEXT NOT NULL DEFAULT '',
    task_type            TEXT NOT NULL,
    priority             TEXT NOT NULL,
    assignee_id          TEXT NOT NULL,
    assignee_org_id      TEXT,
    assignee_dept_id     TEXT,
    collection_point_id  TEXT,
    commodity            TEXT,
    group_id             TEXT,
    period_start         TEXT NOT NULL,
    period_end           TEXT NOT NULL,
    due_at               TEXT NOT NULL,
    status               TEXT NOT NULL DEFAULT 'PENDING',
    is_late              INTEGER NOT NULL DEFAULT 0,
    completed_by_proxy   INTEGER NOT NULL DEFAULT 0,
    completed_at         TEXT,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL,

    FOREIGN KEY (group_id) REFERENCES task_groups(group_id)
);
"""

_GROUPS_DDL = """
CREATE TABLE IF NOT EXISTS task_groups (
    group_id             TEXT PRIMARY KEY,
    template_id          TEXT NOT NULL,
    rule_key             TEXT NOT NULL DEFAULT '',
    period_key           TEXT NOT NULL,
    completion_policy    TEXT NOT NULL,
    required_count       INTEGER NOT NULL,
    completed_count      INTEGER NOT NULL DEFAULT 0,
    member_assignee_ids  TEXT NOT NULL DEFAULT '[]',
    status               TEXT NOT NULL DEFAULT 'PENDING',
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);
"""

# 发放键：(template_id, rule_key, period_key) 主键即幂等约束
_OCCURRENCES_DDL = """
CREATE TABLE IF NOT EXISTS occurrences (
    template_id  TEXT NOT NULL,
    rule_key     TEXT NOT NULL DEFAULT '',
    period_key   TEXT NOT NULL,
    occurs_at    TEXT NOT NULL,
    state        TEXT NOT NULL,
    reason       TEXT NOT NULL DEFAULT '',
    attempts     INTEGER NOT NULL DEFAULT 0,
    task_count   INTEGER NOT NULL DEFAULT 0,
    group_id     TEXT,
    updated_at   TEXT NOT NULL,

    PRIMARY KEY (template_id, rule_key, period_key)
);
"""

_CURSORS_DDL = """
CREATE TABLE IF NOT EXISTS rotation_cursors (
    rule_key  TEXT PRIMARY KEY,
    position  INTEGER NOT NULL DEFAULT 0,
    version   INTEGER NOT NULL DEFAULT 0
);
"""

_FAULTS_DDL = """
CREATE TABLE IF NOT EXISTS config_faults (
    template_id  TEXT NOT NULL,
    rule_key     TEXT NOT NULL DEFAULT '',
    fingerprint  TEXT NOT NULL,
    message      TEXT NOT NULL DEFAULT '',
    created_at   TEXT NOT NULL,

    PRIMARY KEY (template_id, rule_key)
);
"""

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_rules_template ON task_rules(template_id);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_due_at ON generated_tasks(due_at);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_assignee_status ON generated_tasks(assignee_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_group ON generated_tasks(group_id);",
    (
        "CREATE INDEX IF NOT EXISTS idx_tasks_occurrence "
        "ON generated_tasks(template_id, rule_key, period_key);"
    ),
    "CREATE INDEX IF NOT EXISTS idx_occurrences_state ON occurrences(state);",
    (
        "CREATE INDEX IF NOT EXISTS idx_occurrences_latest "
        "ON occurrences(template_id, rule_key, occurs_at DESC);"
    ),
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    for ddl in (
        _TEMPLATES_DDL,
        _RULES_DDL,
        _GROUPS_DDL,
        _TASKS_DDL,
        _OCCURRENCES_DDL,
        _CURSORS_DDL,
        _FAULTS_DDL,
    ):
        await conn.execute(ddl)

    for idx_sql in _INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效"""
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
