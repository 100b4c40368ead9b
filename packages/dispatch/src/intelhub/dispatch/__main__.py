"""CLI 入口模块 -- python -m intelhub.dispatch <command>

支持的命令：
  import <file>          从 JSON 文件导入模板与规则
  tick                   执行一次分发 tick
  run <template_id>      手动触发单个模板
  preview <template_id> [days]
                         预览未来发生期与分发对象（默认 7 天）
  calendar <start> <end> 日历汇总（日期格式 YYYY-MM-DD）
  mark-overdue           将已过截止的任务置为 OVERDUE
  serve                  启动周期调度器（Ctrl+C 退出）
"""

import asyncio
import json
import sys
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from .collaborators import LoggingNotifier, load_snapshot
from .config import get_db_path, get_snapshot_path, load_engine_config
from .engine import DistributionEngine
from .logging_config import setup_logging
from .models.template import TaskRule, TaskTemplate
from .projection import CalendarProjection
from .scheduler import DispatchScheduler
from .scope import ScopeResolver
from .store import StoreGroup, create_store_group, mark_overdue

log = structlog.get_logger()

_USAGE = __doc__.split("\n", 2)[2]


class ConfigBundle(BaseModel):
    """import 命令的文件结构"""

    templates: list[TaskTemplate] = Field(default_factory=list)
    rules: list[TaskRule] = Field(default_factory=list)


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print("用法: python -m intelhub.dispatch <command>")
        print(_USAGE)
        sys.exit(1)

    setup_logging()
    command, args = sys.argv[1], sys.argv[2:]

    if command == "import" and len(args) == 1:
        asyncio.run(import_config(Path(args[0])))
    elif command == "tick":
        asyncio.run(tick())
    elif command == "run" and len(args) == 1:
        asyncio.run(run_template(args[0]))
    elif command == "preview" and len(args) in (1, 2):
        days = int(args[1]) if len(args) == 2 else 7
        asyncio.run(preview(args[0], days))
    elif command == "calendar" and len(args) == 2:
        asyncio.run(calendar(date.fromisoformat(args[0]), date.fromisoformat(args[1])))
    elif command == "mark-overdue":
        asyncio.run(overdue())
    elif command == "serve":
        asyncio.run(serve())
    else:
        print(f"未知命令或参数错误: {' '.join(sys.argv[1:])}")
        print(_USAGE)
        sys.exit(1)


async def _open() -> tuple[StoreGroup, DistributionEngine]:
    db_path = get_db_path()
    print(f"数据库路径: {db_path}")
    config = load_engine_config()
    stores = await create_store_group(db_path)
    directory, points = load_snapshot(get_snapshot_path())
    engine = DistributionEngine(
        stores,
        ScopeResolver(directory, points, config),
        notifier=LoggingNotifier(),
        config=config,
    )
    return stores, engine


async def import_config(path: Path) -> None:
    """导入模板与规则"""
    bundle = ConfigBundle.model_validate_json(path.read_text(encoding="utf-8"))
    stores = await create_store_group(get_db_path())
    try:
        async with stores.write_lock:
            try:
                for template in bundle.templates:
                    await stores.template_store.save_template(template)
                for rule in bundle.rules:
                    await stores.template_store.save_rule(rule)
                await stores.conn.commit()
            except Exception:
                await stores.conn.rollback()
                raise
        print(f"导入完成: {len(bundle.templates)} 个模板, {len(bundle.rules)} 条规则")
    finally:
        await stores.close()


async def tick() -> None:
    stores, engine = await _open()
    try:
        report = await engine.run_tick()
        print(
            f"tick 完成: 发放 {len(report.emitted)} 个发生期, "
            f"停止 {len(report.halted)} 个目标, 异常 {len(report.errors)} 个模板"
        )
        for outcome in report.outcomes:
            suffix = " (重复)" if outcome.duplicate else ""
            print(
                f"  {outcome.template_id}/{outcome.rule_id or '-'} "
                f"{outcome.period_key}: {outcome.state}{suffix} 任务数={outcome.task_count}"
            )
    finally:
        await stores.close()


async def run_template(template_id: str) -> None:
    stores, engine = await _open()
    try:
        report = await engine.run_distribution_now(template_id)
        print(f"手动触发完成: 发放 {len(report.emitted)} 个发生期")
        for outcome in report.outcomes:
            print(f"  {outcome.period_key}: {outcome.state} 任务数={outcome.task_count}")
    finally:
        await stores.close()


async def preview(template_id: str, days: int) -> None:
    stores, engine = await _open()
    try:
        now = datetime.now(UTC)
        occurrences = await engine.preview_occurrences(template_id, now + timedelta(days=days), now)
        print(f"未来 {days} 天发生期: {len(occurrences)} 个")
        for p in occurrences:
            print(f"  {p.period_key} 下发 {p.occurs_at.isoformat()} 截止 {p.due_at.isoformat()}")

        distribution = await engine.preview_distribution(template_id)
        print(
            f"分发预览: {distribution.total_assignees} 人, {distribution.total_tasks} 个任务, "
            f"{len(distribution.unassigned_points)} 个采集点无负责人"
        )
        print(json.dumps(distribution.model_dump(mode="json"), ensure_ascii=False, indent=2))
    finally:
        await stores.close()


async def calendar(start: date, end: date) -> None:
    stores, engine = await _open()
    try:
        projection = CalendarProjection(stores.task_store, engine, load_engine_config())
        result = await projection.summary(start, end)
        for day in result.summary:
            print(
                f"{day.day.isoformat()}  总数 {day.total}  完成 {day.completed}  "
                f"逾期 {day.overdue}  紧急 {day.urgent}  预览 {day.preview}"
            )
    finally:
        await stores.close()


async def overdue() -> None:
    stores = await create_store_group(get_db_path())
    try:
        count = await mark_overdue(stores.conn, stores.task_store, datetime.now(UTC))
        print(f"已标记 {count} 个任务为 OVERDUE")
    finally:
        await stores.close()


async def serve() -> None:
    stores, engine = await _open()
    config = load_engine_config()
    scheduler = DispatchScheduler(engine, stores, config)
    scheduler.start()
    print(f"调度器已启动，间隔 {config.scheduler_interval_s} 秒")
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await stores.close()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        log.info("cli_interrupted")
