"""范围描述（ScopeDescriptor）与候选目标

ScopeDescriptor 是按 scope_type 判别的封闭联合类型：
Point | User | Department | Organization | Role | Query。
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from ..exceptions import ConfigurationError
from .enums import PointType


class PointScope(BaseModel):
    """采集点范围：按类型或按指定采集点"""

    scope_type: Literal["POINT"] = "POINT"
    target_point_type: PointType | None = Field(default=None, description="目标采集点类型")
    collection_point_ids: list[str] = Field(default_factory=list, description="指定采集点 ID")

    @model_validator(mode="after")
    def _require_target(self) -> "PointScope":
        if self.target_point_type is None and not self.collection_point_ids:
            raise ValueError("POINT 范围需要 target_point_type 或 collection_point_ids")
        return self


class UserScope(BaseModel):
    """人员范围"""

    scope_type: Literal["USER"] = "USER"
    user_ids: list[str] = Field(min_length=1, description="人员 ID")


class DepartmentScope(BaseModel):
    """部门范围（仅展开在职成员）"""

    scope_type: Literal["DEPARTMENT"] = "DEPARTMENT"
    department_ids: list[str] = Field(min_length=1, description="部门 ID")


class OrganizationScope(BaseModel):
    """组织范围（仅展开在职成员）"""

    scope_type: Literal["ORGANIZATION"] = "ORGANIZATION"
    organization_ids: list[str] = Field(min_length=1, description="组织 ID")


class RoleScope(BaseModel):
    """角色范围"""

    scope_type: Literal["ROLE"] = "ROLE"
    role_ids: list[str] = Field(min_length=1, description="角色 ID")


class AllActiveScope(BaseModel):
    """全员范围（仅由模板 ALL_ACTIVE 分配模式产生）"""

    scope_type: Literal["ALL_ACTIVE"] = "ALL_ACTIVE"


class QueryScope(BaseModel):
    """复合条件：各维度结果取并集，按 user_id 去重"""

    scope_type: Literal["QUERY"] = "QUERY"
    user_ids: list[str] = Field(default_factory=list)
    department_ids: list[str] = Field(default_factory=list)
    organization_ids: list[str] = Field(default_factory=list)
    role_ids: list[str] = Field(default_factory=list)
    points: PointScope | None = Field(default=None, description="采集点维度")

    @model_validator(mode="after")
    def _require_dimension(self) -> "QueryScope":
        if not (
            self.user_ids
            or self.department_ids
            or self.organization_ids
            or self.role_ids
            or self.points
        ):
            raise ValueError("QUERY 范围至少需要一个维度")
        return self


ScopeDescriptor = Annotated[
    PointScope
    | UserScope
    | DepartmentScope
    | OrganizationScope
    | RoleScope
    | AllActiveScope
    | QueryScope,
    Field(discriminator="scope_type"),
]

scope_adapter: TypeAdapter[ScopeDescriptor] = TypeAdapter(ScopeDescriptor)


def build_scope(
    scope_type: str,
    scope_query: dict[str, Any] | None,
    rule_id: str | None = None,
) -> ScopeDescriptor:
    """将松散的 (scopeType, scopeQuery) 转换为类型化范围描述

    Raises:
        ConfigurationError: 范围描述缺少该类型必填字段或类型未知
    """
    data = dict(scope_query or {})
    data["scope_type"] = scope_type
    try:
        return scope_adapter.validate_python(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"范围描述不合法 ({scope_type}): {e.errors()[0]['msg']}",
            rule_id=rule_id,
        ) from e


class CandidateTarget(BaseModel):
    """解析后的具体分配目标（策略选择之前）"""

    user_id: str = Field(description="用户 ID")
    organization_id: str | None = Field(default=None, description="组织快照")
    department_id: str | None = Field(default=None, description="部门快照")
    collection_point_id: str | None = Field(default=None, description="采集点 ID")
    commodity: str | None = Field(default=None, description="品种")

    @property
    def key(self) -> str:
        """候选唯一键，用于确定性排序和去重"""
        return f"{self.user_id}|{self.collection_point_id or ''}|{self.commodity or ''}"


class UnassignedPoint(BaseModel):
    """无负责人的采集点（预览展示用）"""

    point_id: str
    name: str
    point_type: PointType


class ScopeResolution(BaseModel):
    """范围解析明细"""

    candidates: list[CandidateTarget] = Field(default_factory=list)
    unassigned_points: list[UnassignedPoint] = Field(default_factory=list)
