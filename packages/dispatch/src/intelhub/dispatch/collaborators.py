"""外部协作方接口

目录服务、采集点登记和通知投递都是外部服务，这里用 Protocol 定义接口
（结构化子类型）。快照实现从 JSON 文件加载，供 CLI 与测试使用。
"""

import json
from pathlib import Path
from typing import Protocol

import structlog
from pydantic import BaseModel, Field

from .models.directory import CollectionPoint, User
from .models.enums import PointType
from .models.task import GeneratedTask, TaskGroup

log = structlog.get_logger()


class Directory(Protocol):
    """目录服务接口（用户/部门/组织/角色）"""

    async def resolve_users(self, user_ids: list[str]) -> list[User]:
        """按 ID 查询用户"""
        ...

    async def resolve_department_members(self, department_id: str) -> list[User]:
        """部门在职成员"""
        ...

    async def resolve_organization_members(self, organization_id: str) -> list[User]:
        """组织在职成员"""
        ...

    async def resolve_role_members(self, role_id: str) -> list[User]:
        """角色成员"""
        ...

    async def resolve_all_active_users(self) -> list[User]:
        """全部在职用户（模板 ALL_ACTIVE 模式）"""
        ...


class CollectionPointRegistry(Protocol):
    """采集点登记接口"""

    async def resolve_points_by_type(self, point_type: PointType) -> list[CollectionPoint]:
        """指定类型的全部启用采集点"""
        ...

    async def resolve_points(self, point_ids: list[str]) -> list[CollectionPoint]:
        """按 ID 查询采集点"""
        ...


class Notifier(Protocol):
    """任务分配通知（发出即忘，引擎不关心投递结果）"""

    async def tasks_assigned(
        self,
        tasks: list[GeneratedTask],
        group: TaskGroup | None,
    ) -> None: ...


class LoggingNotifier:
    """仅记录日志的通知实现"""

    async def tasks_assigned(
        self,
        tasks: list[GeneratedTask],
        group: TaskGroup | None,
    ) -> None:
        await log.ainfo(
            "tasks_assigned_notification",
            task_count=len(tasks),
            assignee_ids=sorted({t.assignee_id for t in tasks}),
            group_id=group.group_id if group else None,
        )


class DirectorySnapshot(BaseModel):
    """目录与采集点快照文件结构"""

    users: list[User] = Field(default_factory=list)
    points: list[CollectionPoint] = Field(default_factory=list)


class SnapshotDirectory:
    """基于内存快照的目录服务实现"""

    def __init__(self, users: list[User]) -> None:
        self._users = {u.user_id: u for u in users}

    async def resolve_users(self, user_ids: list[str]) -> list[User]:
        return [self._users[uid] for uid in user_ids if uid in self._users]

    async def resolve_department_members(self, department_id: str) -> list[User]:
        return [
            u for u in self._users.values() if u.department_id == department_id and u.is_active
        ]

    async def resolve_organization_members(self, organization_id: str) -> list[User]:
        return [
            u
            for u in self._users.values()
            if u.organization_id == organization_id and u.is_active
        ]

    async def resolve_role_members(self, role_id: str) -> list[User]:
        return [u for u in self._users.values() if role_id in u.role_ids]

    async def resolve_all_active_users(self) -> list[User]:
        return [u for u in self._users.values() if u.is_active]


class SnapshotPointRegistry:
    """基于内存快照的采集点登记实现"""

    def __init__(self, points: list[CollectionPoint]) -> None:
        self._points = {p.point_id: p for p in points}

    async def resolve_points_by_type(self, point_type: PointType) -> list[CollectionPoint]:
        return [
            p for p in self._points.values() if p.point_type == point_type and p.is_active
        ]

    async def resolve_points(self, point_ids: list[str]) -> list[CollectionPoint]:
        return [self._points[pid] for pid in point_ids if pid in self._points]


def load_snapshot(path: Path) -> tuple[SnapshotDirectory, SnapshotPointRegistry]:
    """从 JSON 快照文件构建目录服务与采集点登记"""
    snapshot = DirectorySnapshot.model_validate(json.loads(path.read_text(encoding="utf-8")))
    log.info(
        "directory_snapshot_loaded",
        path=str(path),
        user_count=len(snapshot.users),
        point_count=len(snapshot.points),
    )
    return SnapshotDirectory(snapshot.users), SnapshotPointRegistry(snapshot.points)
