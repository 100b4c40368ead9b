"""集成测试共享 fixture"""

import json
from pathlib import Path

import pytest


@pytest.fixture
def dispatch_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """CLI 运行环境：临时数据库 + 目录快照文件"""
    snapshot = {
        "users": [
            {"user_id": "u1", "name": "张三", "organization_id": "org1", "department_id": "dept1"},
            {"user_id": "u2", "name": "李四", "organization_id": "org1", "department_id": "dept1"},
        ],
        "points": [
            {"point_id": "p1", "name": "锦州港", "point_type": "PORT", "owner_id": "u1",
             "commodities": ["corn"]},
            {"point_id": "p2", "name": "北良港", "point_type": "PORT"},
        ],
    }
    snapshot_path = tmp_path / "directory_snapshot.json"
    snapshot_path.write_text(json.dumps(snapshot, ensure_ascii=False), encoding="utf-8")

    monkeypatch.setenv("INTELHUB_DB_PATH", str(tmp_path / "sqlite" / "dispatch.db"))
    monkeypatch.setenv("INTELHUB_SNAPSHOT_PATH", str(snapshot_path))
    monkeypatch.setenv("INTELHUB_COLLABORATOR_RETRY_BASE_DELAY_S", "0")
    return tmp_path
