"""IntelHub Dispatch -- 周期任务分发引擎

packages/dispatch 的公开接口导出。
"""

# 协作方接口
from .collaborators import (
    CollectionPointRegistry,
    Directory,
    LoggingNotifier,
    Notifier,
    SnapshotDirectory,
    SnapshotPointRegistry,
    load_snapshot,
)

# 纯函数组件
from .completion import apply_member_completion, shape

# 配置
from .config import EngineConfig, load_engine_config
from .cycle import CycleSpec, enumerate_occurrences, next_occurrence, period_bounds, period_key
from .engine import DistributionEngine

# 异常
from .exceptions import (
    ConfigurationError,
    CursorConflictError,
    DispatchError,
    InvalidTransitionError,
    TaskNotFoundError,
    TransientCollaboratorError,
)
from .projection import CalendarProjection
from .scheduler import DispatchScheduler
from .scope import ScopeResolver, template_scope
from .strategy import select

__all__ = [
    "CycleSpec",
    "next_occurrence",
    "enumerate_occurrences",
    "period_key",
    "period_bounds",
    "ScopeResolver",
    "template_scope",
    "select",
    "shape",
    "apply_member_completion",
    "DistributionEngine",
    "CalendarProjection",
    "DispatchScheduler",
    "Directory",
    "CollectionPointRegistry",
    "Notifier",
    "LoggingNotifier",
    "SnapshotDirectory",
    "SnapshotPointRegistry",
    "load_snapshot",
    "EngineConfig",
    "load_engine_config",
    "DispatchError",
    "ConfigurationError",
    "TransientCollaboratorError",
    "CursorConflictError",
    "TaskNotFoundError",
    "InvalidTransitionError",
]
