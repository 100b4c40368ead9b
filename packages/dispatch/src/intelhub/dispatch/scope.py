"""范围解析器

把抽象范围描述（采集点、人员、部门、组织、角色、复合条件）解析为
具体候选目标。所有协作方调用都经过有界退避重试。
解析结果为空不是错误：引擎会跳过该发生期并记录告警。
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from .collaborators import CollectionPointRegistry, Directory
from .config import EngineConfig
from .exceptions import ConfigurationError
from .models.directory import CollectionPoint, User
from .models.enums import AssigneeMode
from .models.scope import (
    AllActiveScope,
    CandidateTarget,
    DepartmentScope,
    OrganizationScope,
    PointScope,
    QueryScope,
    RoleScope,
    ScopeDescriptor,
    ScopeResolution,
    UnassignedPoint,
    UserScope,
)
from .models.template import TaskTemplate
from .retry import call_with_retry

log = structlog.get_logger()

T = TypeVar("T")


def template_scope(template: TaskTemplate) -> ScopeDescriptor:
    """模板无规则时，由 assignee_mode 推导范围描述

    Raises:
        ConfigurationError: 分配模式缺少对应的 ID 列表
    """
    try:
        match template.assignee_mode:
            case AssigneeMode.MANUAL:
                return UserScope(user_ids=template.assignee_ids)
            case AssigneeMode.ALL_ACTIVE:
                return AllActiveScope()
            case AssigneeMode.BY_DEPARTMENT:
                return DepartmentScope(department_ids=template.department_ids)
            case AssigneeMode.BY_ORGANIZATION:
                return OrganizationScope(organization_ids=template.organization_ids)
            case AssigneeMode.BY_COLLECTION_POINT:
                return PointScope(
                    target_point_type=template.target_point_type,
                    collection_point_ids=template.collection_point_ids,
                )
    except ValueError as e:
        raise ConfigurationError(
            f"模板分配模式 {template.assignee_mode} 缺少目标: {e}",
            template_id=template.template_id,
        ) from e


def _user_candidate(user: User) -> CandidateTarget:
    return CandidateTarget(
        user_id=user.user_id,
        organization_id=user.organization_id,
        department_id=user.department_id,
    )


class ScopeResolver:
    """范围解析器"""

    def __init__(
        self,
        directory: Directory,
        points: CollectionPointRegistry,
        config: EngineConfig | None = None,
    ) -> None:
        self._directory = directory
        self._points = points
        self._config = config or EngineConfig()

    async def resolve(self, scope: ScopeDescriptor) -> list[CandidateTarget]:
        """解析范围为候选目标列表（按候选键排序，保证确定性）"""
        resolution = await self.resolve_detailed(scope)
        return resolution.candidates

    async def resolve_detailed(self, scope: ScopeDescriptor) -> ScopeResolution:
        """解析范围，同时返回无负责人的采集点"""
        match scope:
            case PointScope():
                resolution = await self._resolve_points(scope)
            case UserScope(user_ids=user_ids):
                users = await self._call("resolve_users", lambda: self._directory.resolve_users(user_ids))
                resolution = ScopeResolution(candidates=[_user_candidate(u) for u in users])
            case DepartmentScope(department_ids=ids):
                resolution = await self._resolve_members(
                    "resolve_department_members", self._directory.resolve_department_members, ids
                )
            case OrganizationScope(organization_ids=ids):
                resolution = await self._resolve_members(
                    "resolve_organization_members", self._directory.resolve_organization_members, ids
                )
            case RoleScope(role_ids=ids):
                resolution = await self._resolve_members(
                    "resolve_role_members", self._directory.resolve_role_members, ids
                )
            case AllActiveScope():
                users = await self._call(
                    "resolve_all_active_users", self._directory.resolve_all_active_users
                )
                resolution = ScopeResolution(candidates=[_user_candidate(u) for u in users])
            case QueryScope():
                resolution = await self._resolve_query(scope)

        resolution.candidates.sort(key=lambda c: c.key)
        return resolution

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        return await call_with_retry(
            operation,
            func,
            attempts=self._config.collaborator_retry_attempts,
            base_delay_s=self._config.collaborator_retry_base_delay_s,
            timeout_s=self._config.collaborator_timeout_s,
        )

    async def _resolve_members(
        self,
        operation: str,
        lookup: Callable[[str], Awaitable[list[User]]],
        ids: list[str],
    ) -> ScopeResolution:
        seen: dict[str, CandidateTarget] = {}
        for entity_id in ids:
            members = await self._call(operation, lambda entity_id=entity_id: lookup(entity_id))
            for user in members:
                if not user.is_active:
                    continue
                seen.setdefault(user.user_id, _user_candidate(user))
        return ScopeResolution(candidates=list(seen.values()))

    async def _resolve_points(self, scope: PointScope) -> ScopeResolution:
        points: dict[str, CollectionPoint] = {}
        if scope.target_point_type is not None:
            for point in await self._call(
                "resolve_points_by_type",
                lambda: self._points.resolve_points_by_type(scope.target_point_type),
            ):
                points.setdefault(point.point_id, point)
        if scope.collection_point_ids:
            for point in await self._call(
                "resolve_points",
                lambda: self._points.resolve_points(scope.collection_point_ids),
            ):
                points.setdefault(point.point_id, point)

        resolution = ScopeResolution()
        owned: list[CollectionPoint] = []
        for point in sorted(points.values(), key=lambda p: p.point_id):
            if not point.is_active:
                continue
            if point.owner_id is None:
                log.info("point_without_owner_skipped", point_id=point.point_id)
                resolution.unassigned_points.append(
                    UnassignedPoint(
                        point_id=point.point_id,
                        name=point.name,
                        point_type=point.point_type,
                    )
                )
                continue
            owned.append(point)

        if not owned:
            return resolution

        owner_ids = sorted({p.owner_id for p in owned if p.owner_id})
        owners = {
            u.user_id: u
            for u in await self._call(
                "resolve_users", lambda: self._directory.resolve_users(owner_ids)
            )
        }

        for point in owned:
            owner = owners.get(point.owner_id or "")
            if owner is None:
                log.warning(
                    "point_owner_not_in_directory",
                    point_id=point.point_id,
                    owner_id=point.owner_id,
                )
                continue
            # 采集点配置了品种时，每个品种一条候选
            for commodity in point.commodities or [None]:
                resolution.candidates.append(
                    CandidateTarget(
                        user_id=owner.user_id,
                        organization_id=owner.organization_id,
                        department_id=owner.department_id,
                        collection_point_id=point.point_id,
                        commodity=commodity,
                    )
                )
        return resolution

    async def _resolve_query(self, scope: QueryScope) -> ScopeResolution:
        parts: list[ScopeResolution] = []
        if scope.user_ids:
            parts.append(await self.resolve_detailed(UserScope(user_ids=scope.user_ids)))
        if scope.department_ids:
            parts.append(
                await self.resolve_detailed(DepartmentScope(department_ids=scope.department_ids))
            )
        if scope.organization_ids:
            parts.append(
                await self.resolve_detailed(
                    OrganizationScope(organization_ids=scope.organization_ids)
                )
            )
        if scope.role_ids:
            parts.append(await self.resolve_detailed(RoleScope(role_ids=scope.role_ids)))
        if scope.points is not None:
            parts.append(await self.resolve_detailed(scope.points))

        merged = ScopeResolution()
        seen: set[str] = set()
        for part in parts:
            merged.unassigned_points.extend(part.unassigned_points)
            for candidate in part.candidates:
                if candidate.user_id in seen:
                    continue
                seen.add(candidate.user_id)
                merged.candidates.append(candidate)
        return merged
