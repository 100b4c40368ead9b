"""协作方调用重试测试

测试内容：
1. 可重试异常按次数上限重试，耗尽后包装为 TransientCollaboratorError
2. 单次调用超时计为可重试失败
3. 不可重试异常直接抛出
4. 指数退避等待间隔
"""

import asyncio

import pytest
from intelhub.dispatch.exceptions import TransientCollaboratorError
from intelhub.dispatch.retry import call_with_retry
from structlog.testing import capture_logs


class CountingCall:
    """前 fail_times 次调用抛出 error，之后返回 result"""

    def __init__(self, error: Exception, fail_times: int, result: str = "ok") -> None:
        self.error = error
        self.fail_times = fail_times
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise self.error
        return self.result


class TestCallWithRetry:
    """call_with_retry"""

    async def test_succeeds_after_transient_failures(self):
        call = CountingCall(ConnectionError("reset"), fail_times=2)

        result = await call_with_retry("resolve_users", call, attempts=3, base_delay_s=0)

        assert result == "ok"
        assert call.calls == 3

    async def test_exhausted_attempts_wrap_original_error(self):
        error = ConnectionError("refused")
        call = CountingCall(error, fail_times=5)

        with pytest.raises(TransientCollaboratorError) as exc_info:
            await call_with_retry("resolve_points", call, attempts=3, base_delay_s=0)

        assert call.calls == 3
        assert exc_info.value.operation == "resolve_points"
        assert exc_info.value.original_error is error
        assert exc_info.value.__cause__ is error

    async def test_nested_transient_error_is_unwrapped(self):
        inner = OSError("dns")
        call = CountingCall(TransientCollaboratorError("lookup", inner), fail_times=5)

        with pytest.raises(TransientCollaboratorError) as exc_info:
            await call_with_retry("resolve_users", call, attempts=2, base_delay_s=0)

        assert call.calls == 2
        assert exc_info.value.original_error is inner

    async def test_slow_call_times_out_each_attempt(self):
        calls = 0

        async def slow() -> str:
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)
            return "late"

        with pytest.raises(TransientCollaboratorError) as exc_info:
            await call_with_retry("resolve_role_members", slow, attempts=2, base_delay_s=0,
                                  timeout_s=0.01)

        assert calls == 2
        assert isinstance(exc_info.value.original_error, TimeoutError)

    async def test_non_retryable_error_propagates_immediately(self):
        call = CountingCall(ValueError("bad payload"), fail_times=5)

        with pytest.raises(ValueError):
            await call_with_retry("resolve_users", call, attempts=3, base_delay_s=0)

        assert call.calls == 1

    async def test_exponential_backoff_between_attempts(self):
        call = CountingCall(TimeoutError(), fail_times=5)

        with capture_logs() as logs, pytest.raises(TransientCollaboratorError):
            await call_with_retry("resolve_users", call, attempts=4, base_delay_s=0.01)

        retries = [e for e in logs if e["event"] == "collaborator_call_failed"]
        assert [e["attempt"] for e in retries] == [1, 2, 3]
        assert [e["next_delay_s"] for e in retries] == pytest.approx([0.01, 0.02, 0.04])
        assert logs[-1]["event"] == "collaborator_retries_exhausted"
