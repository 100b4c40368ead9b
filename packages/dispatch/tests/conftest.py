"""packages/dispatch 测试配置 -- 目录快照、Store 与引擎 fixture"""

from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from intelhub.dispatch.collaborators import SnapshotDirectory, SnapshotPointRegistry
from intelhub.dispatch.config import EngineConfig
from intelhub.dispatch.engine import DistributionEngine
from intelhub.dispatch.models import (
    AssigneeMode,
    CollectionPoint,
    CycleType,
    GeneratedTask,
    PointType,
    TaskGroup,
    TaskRule,
    TaskTemplate,
    User,
)
from intelhub.dispatch.scope import ScopeResolver
from intelhub.dispatch.store import StoreGroup, create_store_group

SH = ZoneInfo("Asia/Shanghai")


def sh(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    """Asia/Shanghai 墙钟时间"""
    return datetime(year, month, day, hour, minute, tzinfo=SH)


class RecordingNotifier:
    """记录每次分配通知"""

    def __init__(self) -> None:
        self.calls: list[tuple[list[GeneratedTask], TaskGroup | None]] = []

    async def tasks_assigned(
        self,
        tasks: list[GeneratedTask],
        group: TaskGroup | None,
    ) -> None:
        self.calls.append((tasks, group))


class FlakyDirectory(SnapshotDirectory):
    """前 fail_times 次调用抛出 ConnectionError 的目录服务"""

    def __init__(self, users: list[User], fail_times: int) -> None:
        super().__init__(users)
        self.fail_times = fail_times
        self.calls = 0

    def _maybe_fail(self) -> None:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise ConnectionError("directory unreachable")

    async def resolve_users(self, user_ids: list[str]) -> list[User]:
        self._maybe_fail()
        return await super().resolve_users(user_ids)

    async def resolve_department_members(self, department_id: str) -> list[User]:
        self._maybe_fail()
        return await super().resolve_department_members(department_id)


@pytest.fixture
def users() -> list[User]:
    return [
        User(user_id="u1", name="张三", organization_id="org1", department_id="dept1",
             role_ids=["collector"]),
        User(user_id="u2", name="李四", organization_id="org1", department_id="dept1",
             role_ids=["collector"]),
        User(user_id="u3", name="王五", organization_id="org1", department_id="dept2",
             role_ids=["analyst"]),
        User(user_id="u4", name="赵六", organization_id="org2", department_id="dept3",
             is_active=False),
        User(user_id="u5", name="钱七", organization_id="org2", department_id="dept3"),
    ]


@pytest.fixture
def points() -> list[CollectionPoint]:
    return [
        CollectionPoint(point_id="p1", name="锦州港", point_type=PointType.PORT, owner_id="u1",
                        commodities=["corn", "soybean"]),
        CollectionPoint(point_id="p2", name="鲅鱼圈港", point_type=PointType.PORT, owner_id="u2"),
        CollectionPoint(point_id="p3", name="北良港", point_type=PointType.PORT),
        CollectionPoint(point_id="p4", name="四平站", point_type=PointType.STATION,
                        owner_id="u3"),
        CollectionPoint(point_id="p5", name="大窑湾港", point_type=PointType.PORT,
                        owner_id="u5", is_active=False),
    ]


@pytest.fixture
def directory(users: list[User]) -> SnapshotDirectory:
    return SnapshotDirectory(users)


@pytest.fixture
def registry(points: list[CollectionPoint]) -> SnapshotPointRegistry:
    return SnapshotPointRegistry(points)


@pytest.fixture
def make_flaky_directory(users: list[User]) -> Callable[[int], FlakyDirectory]:
    """构造前 n 次调用失败的目录服务"""

    def _make(fail_times: int) -> FlakyDirectory:
        return FlakyDirectory(users, fail_times)

    return _make


@pytest.fixture
def fast_config() -> EngineConfig:
    """测试用配置：重试不等待"""
    return EngineConfig(
        collaborator_retry_attempts=3,
        collaborator_retry_base_delay_s=0,
        collaborator_timeout_s=1,
    )


@pytest.fixture
def resolver(
    directory: SnapshotDirectory,
    registry: SnapshotPointRegistry,
    fast_config: EngineConfig,
) -> ScopeResolver:
    return ScopeResolver(directory, registry, fast_config)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def stores(tmp_db_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """已初始化的 Store 实例组"""
    group = await create_store_group(str(tmp_db_path))
    yield group
    await group.close()


@pytest.fixture
def engine(
    stores: StoreGroup,
    resolver: ScopeResolver,
    notifier: RecordingNotifier,
    fast_config: EngineConfig,
) -> DistributionEngine:
    return DistributionEngine(stores, resolver, notifier=notifier, config=fast_config)


@pytest.fixture
def make_template() -> Callable[..., TaskTemplate]:
    """每日 09:00 下发、18:00 截止，手动指定 u1/u2 的模板"""

    def _make(**overrides: Any) -> TaskTemplate:
        fields: dict[str, Any] = {
            "template_id": "tpl-daily",
            "name": "每日港口价格采集",
            "cycle_type": CycleType.DAILY,
            "run_at_minute": 9 * 60,
            "due_at_minute": 18 * 60,
            "active_from": sh(2025, 6, 1),
            "assignee_mode": AssigneeMode.MANUAL,
            "assignee_ids": ["u1", "u2"],
        }
        fields.update(overrides)
        return TaskTemplate(**fields)

    return _make


@pytest.fixture
def save_config(stores: StoreGroup) -> Callable[..., Any]:
    """写入模板与规则并提交"""

    async def _save(template: TaskTemplate, *rules: TaskRule) -> None:
        await stores.template_store.save_template(template)
        for rule in rules:
            await stores.template_store.save_rule(rule)
        await stores.conn.commit()

    return _save
