"""周期调度器

后台任务按 scheduler_interval_s 间隔调用 run_tick，并顺带把过期任务置为 OVERDUE。
上一次 tick 未结束时跳过本次，不重入。
"""

import asyncio
import contextlib
from datetime import UTC, datetime

import structlog

from .config import EngineConfig
from .engine import DistributionEngine
from .models.plan import DistributionReport
from .store import StoreGroup, mark_overdue

log = structlog.get_logger()


class DispatchScheduler:
    """分发调度器"""

    def __init__(
        self,
        engine: DistributionEngine,
        stores: StoreGroup,
        config: EngineConfig | None = None,
    ) -> None:
        self._engine = engine
        self._stores = stores
        self._config = config or EngineConfig()
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self, now: datetime | None = None) -> DistributionReport | None:
        """执行一次 tick；上一次仍在执行时返回 None"""
        if self._running:
            await log.awarning("scheduler_tick_skipped", reason="previous_tick_running")
            return None

        self._running = True
        try:
            now = now or datetime.now(UTC)
            report = await self._engine.run_tick(now)
            async with self._stores.write_lock:
                await mark_overdue(self._stores.conn, self._stores.task_store, now)
            return report
        finally:
            self._running = False

    def start(self) -> None:
        """启动后台循环"""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())
        log.info("scheduler_started", interval_s=self._config.scheduler_interval_s)

    async def stop(self) -> None:
        """停止后台循环并等待当前 tick 结束"""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        await log.ainfo("scheduler_stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                # 单次 tick 失败不终止调度循环
                await log.aerror(
                    "scheduler_tick_failed",
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=e,
                )
            await asyncio.sleep(self._config.scheduler_interval_s)
