"""分发引擎异常体系

ConfigurationError 不可重试，需要模板/规则负责人修正；
TransientCollaboratorError 在下一次 tick 的回填窗口内重试。
"范围为空"和"重复发放"不是异常，以发生期状态体现。
"""


class DispatchError(Exception):
    """分发引擎基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class ConfigurationError(DispatchError):
    """配置错误（周期不前进、范围缺少必填字段、截止早于下发等）

    该模板/规则停止处理，直到配置被修正。
    """

    def __init__(
        self,
        message: str,
        template_id: str | None = None,
        rule_id: str | None = None,
    ) -> None:
        super().__init__(message, recoverable=False)
        self.template_id = template_id
        self.rule_id = rule_id


class TransientCollaboratorError(DispatchError):
    """协作方（目录服务、采集点登记）不可达或超时

    只中止当前发生期的处理，下一次 tick 重试。
    """

    def __init__(self, operation: str, original_error: Exception) -> None:
        """
        Args:
            operation: 调用的协作方操作名
            original_error: 原始异常
        """
        super().__init__(
            f"协作方调用失败: {operation} -- {original_error}",
            recoverable=True,
        )
        self.operation = operation
        self.original_error = original_error


class CursorConflictError(DispatchError):
    """轮换游标版本冲突（并发 tick 已推进同一规则的游标）"""

    def __init__(self, rule_key: str, expected_version: int) -> None:
        super().__init__(
            f"轮换游标版本冲突: {rule_key} (expected version {expected_version})",
            recoverable=True,
        )
        self.rule_key = rule_key
        self.expected_version = expected_version


class TaskNotFoundError(DispatchError):
    """任务、任务组或模板不存在"""

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"对象不存在: {entity_id}", recoverable=False)
        self.entity_id = entity_id


class InvalidTransitionError(DispatchError):
    """任务状态流转不合法"""

    def __init__(self, task_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"任务 {task_id} 不允许从 {from_status} 流转到 {to_status}",
            recoverable=False,
        )
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status
