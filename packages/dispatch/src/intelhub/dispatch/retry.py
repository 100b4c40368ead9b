"""协作方调用的有界退避重试

每次调用带超时；重试由 tenacity 驱动（有限次数 + 指数退避）。
重试耗尽后抛出 TransientCollaboratorError，由分发引擎把当前发生期标记为等待重试，
不影响同一 tick 内其他发生期。
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import TransientCollaboratorError

log = structlog.get_logger()

T = TypeVar("T")

# 单次退避等待上限（秒）
MAX_BACKOFF_S = 30.0

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    OSError,
    TransientCollaboratorError,
)


def _unwrap(error: BaseException | None) -> BaseException | None:
    if isinstance(error, TransientCollaboratorError):
        return error.original_error
    return error


async def call_with_retry(
    operation: str,
    func: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay_s: float = 0.2,
    timeout_s: float = 10.0,
) -> T:
    """带超时和指数退避的协作方调用

    Args:
        operation: 操作名（用于日志和异常）
        func: 无参协程工厂，每次重试重新调用
        attempts: 最大尝试次数
        base_delay_s: 退避基础间隔，第 n 次重试等待 base * 2**(n-1)
        timeout_s: 单次调用超时

    Raises:
        TransientCollaboratorError: 所有尝试均失败
    """

    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "collaborator_call_failed",
            operation=operation,
            attempt=retry_state.attempt_number,
            max_attempts=attempts,
            next_delay_s=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(_unwrap(error)),
        )

    async def _attempt() -> T:
        return await asyncio.wait_for(func(), timeout=timeout_s)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay_s, max=MAX_BACKOFF_S),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        before_sleep=_log_retry,
    )
    try:
        return await retrying(_attempt)
    except RetryError as e:
        last_error = _unwrap(e.last_attempt.exception()) or TimeoutError(operation)
        log.warning(
            "collaborator_retries_exhausted",
            operation=operation,
            max_attempts=attempts,
            error=str(last_error),
        )
        raise TransientCollaboratorError(operation, last_error) from last_error
