"""目录服务与采集点登记的外部实体快照"""

from pydantic import BaseModel, Field

from .enums import PointType


class User(BaseModel):
    """目录服务中的用户"""

    user_id: str
    name: str = ""
    organization_id: str | None = None
    department_id: str | None = None
    role_ids: list[str] = Field(default_factory=list)
    is_active: bool = True


class CollectionPoint(BaseModel):
    """采集点，owner_id 为当前负责人"""

    point_id: str
    name: str = ""
    point_type: PointType
    owner_id: str | None = None
    commodities: list[str] = Field(default_factory=list, description="采集品种")
    is_active: bool = True
