"""配置模块 -- 可通过环境变量覆盖

包含数据库路径、目录快照路径，以及分发引擎的运行参数。
"""

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

log = structlog.get_logger()


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("INTELHUB_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "INTELHUB_DB_PATH",
        str(_get_base_dir() / "sqlite" / "dispatch.db"),
    )


def get_snapshot_path() -> Path:
    """获取目录/采集点快照文件路径（CLI 使用）"""
    return Path(
        os.environ.get(
            "INTELHUB_SNAPSHOT_PATH",
            str(_get_base_dir() / "directory_snapshot.json"),
        )
    )


class EngineConfig(BaseModel):
    """分发引擎运行参数

    环境变量:
        INTELHUB_SCHEDULER_INTERVAL_S: 调度间隔（秒，默认 300）
        INTELHUB_MAX_OCCURRENCE_ITERATIONS: 周期枚举安全上限（默认 10000）
        INTELHUB_COLLABORATOR_RETRY_ATTEMPTS: 协作方调用重试次数（默认 3）
        INTELHUB_COLLABORATOR_RETRY_BASE_DELAY_S: 退避基础间隔（秒，默认 0.2）
        INTELHUB_COLLABORATOR_TIMEOUT_S: 单次协作方调用超时（秒，默认 10）
        INTELHUB_MAX_CONCURRENT_TEMPLATES: 同一 tick 内并行处理的模板数（默认 4）
        INTELHUB_CALENDAR_TIMEZONE: 日历按日聚合使用的时区（默认 Asia/Shanghai）
    """

    scheduler_interval_s: float = Field(default=300, gt=0)
    max_occurrence_iterations: int = Field(default=10_000, ge=1)
    collaborator_retry_attempts: int = Field(default=3, ge=1)
    collaborator_retry_base_delay_s: float = Field(default=0.2, ge=0)
    collaborator_timeout_s: float = Field(default=10, gt=0)
    max_concurrent_templates: int = Field(default=4, ge=1)
    calendar_timezone: str = Field(default="Asia/Shanghai")

    @field_validator("calendar_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"未知时区: {value}") from e
        return value


_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "INTELHUB_SCHEDULER_INTERVAL_S": ("scheduler_interval_s", float),
    "INTELHUB_MAX_OCCURRENCE_ITERATIONS": ("max_occurrence_iterations", int),
    "INTELHUB_COLLABORATOR_RETRY_ATTEMPTS": ("collaborator_retry_attempts", int),
    "INTELHUB_COLLABORATOR_RETRY_BASE_DELAY_S": ("collaborator_retry_base_delay_s", float),
    "INTELHUB_COLLABORATOR_TIMEOUT_S": ("collaborator_timeout_s", float),
    "INTELHUB_MAX_CONCURRENT_TEMPLATES": ("max_concurrent_templates", int),
    "INTELHUB_CALENDAR_TIMEZONE": ("calendar_timezone", str),
}


def load_engine_config() -> EngineConfig:
    """从环境变量加载引擎配置

    每个字段单独转换并校验；非法值（无法转换、超出范围、未知时区）
    记录告警并回退默认值，不阻塞启动。
    """
    kwargs: dict = {}

    for env_var, (field_name, cast) in _ENV_FIELDS.items():
        val = os.environ.get(env_var)
        if not val:
            continue
        try:
            value = cast(val)
            EngineConfig.model_validate({field_name: value})
        except (ValueError, ValidationError):
            log.warning(
                "invalid_engine_config",
                env_var=env_var,
                value=val,
                fallback=EngineConfig.model_fields[field_name].default,
            )
            continue
        kwargs[field_name] = value

    return EngineConfig(**kwargs)
