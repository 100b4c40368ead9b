"""分发引擎集成测试

测试内容：
1. 回填窗口：超出 max_backfill_periods 的发生期记为 EXPIRED
2. 幂等：重复 tick、并发 tick、手动触发不重复生成任务
3. allow_late / 范围为空 / 协作方暂时失败
4. 配置错误停止处理，配置变化后自动恢复
5. ROTATION 轮换、ANY_ONE 任务组、采集点品种
6. 预览只读、通知失败不影响发放、参考标记
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
from intelhub.dispatch.engine import DistributionEngine, config_fingerprint
from intelhub.dispatch.exceptions import TaskNotFoundError
from intelhub.dispatch.models import (
    AssigneeMode,
    AssigneeStrategy,
    CompletionPolicy,
    CycleType,
    DuePolicy,
    GroupStatus,
    OccurrenceState,
    PointType,
    TaskRule,
    TaskStatus,
    UserScope,
)
from intelhub.dispatch.scope import ScopeResolver
from intelhub.dispatch.store import complete_task

SH = ZoneInfo("Asia/Shanghai")


def sh(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=SH)


async def _all_tasks(stores):
    return await stores.task_store.list_tasks(sh(2000, 1, 1), sh(2100, 1, 1))


def _rule(**overrides) -> TaskRule:
    fields = {
        "rule_id": "r1",
        "template_id": "tpl-daily",
        "scope": UserScope(user_ids=["u1", "u2", "u3"]),
        "frequency_type": "DAILY",
        "dispatch_at_minute": 9 * 60,
    }
    fields.update(overrides)
    return TaskRule(**fields)


class TestBackfill:
    """回填窗口"""

    async def test_only_last_n_periods_emitted(self, engine, stores, make_template, save_config):
        await save_config(make_template(max_backfill_periods=3))

        report = await engine.run_tick(sh(2025, 6, 5, 10))

        assert [o.period_key for o in report.emitted] == [
            "2025-06-03",
            "2025-06-04",
            "2025-06-05",
        ]
        assert report.count(OccurrenceState.EXPIRED) == 2
        assert len(await _all_tasks(stores)) == 6

        expired = await stores.occurrence_store.list_occurrences(
            "tpl-daily", state=OccurrenceState.EXPIRED
        )
        assert [r.period_key for r in expired] == ["2025-06-01", "2025-06-02"]
        assert {r.reason for r in expired} == {"backfill_window_exceeded"}

    async def test_zero_backfill_still_emits_latest(
        self, engine, stores, make_template, save_config
    ):
        await save_config(make_template(max_backfill_periods=0))

        report = await engine.run_tick(sh(2025, 6, 3, 10))

        assert [o.period_key for o in report.emitted] == ["2025-06-03"]
        assert report.count(OccurrenceState.EXPIRED) == 2

    async def test_long_history_bounded_without_halting(
        self, engine, stores, make_template, save_config
    ):
        """生效起点很早的每日模板：只回看有限周期，不触发枚举上限"""
        await save_config(make_template(active_from=sh(1990, 1, 1), max_backfill_periods=3))

        report = await engine.run_tick(sh(2025, 6, 5, 10))

        assert report.halted == []
        assert [o.period_key for o in report.emitted] == [
            "2025-06-03",
            "2025-06-04",
            "2025-06-05",
        ]
        assert report.count(OccurrenceState.EXPIRED) == 4
        assert await stores.occurrence_store.get_fault("tpl-daily", "") is None

        following = await engine.run_tick(sh(2025, 6, 6, 10))
        assert [o.period_key for o in following.emitted] == ["2025-06-06"]
        assert following.count(OccurrenceState.EXPIRED) == 0

    async def test_nothing_due_before_active_from(self, engine, stores, make_template, save_config):
        await save_config(make_template(active_from=sh(2025, 7, 1)))

        report = await engine.run_tick(sh(2025, 6, 15, 10))

        assert report.outcomes == []
        assert await _all_tasks(stores) == []

    async def test_tasks_carry_period_and_due(self, engine, stores, make_template, save_config):
        await save_config(make_template())

        await engine.run_tick(sh(2025, 6, 1, 10))

        tasks = await _all_tasks(stores)
        assert {t.assignee_id for t in tasks} == {"u1", "u2"}
        for task in tasks:
            assert task.period_key == "2025-06-01"
            assert task.due_at == sh(2025, 6, 1, 18)
            assert task.period_start == sh(2025, 6, 1)
            assert task.status == TaskStatus.PENDING
            assert task.group_id is None
            assert task.assignee_org_id == "org1"


class TestIdempotency:
    """幂等发放"""

    async def test_repeated_tick_is_noop(self, engine, stores, make_template, save_config):
        await save_config(make_template())
        now = sh(2025, 6, 1, 10)

        first = await engine.run_tick(now)
        second = await engine.run_tick(now)
        manual = await engine.run_distribution_now("tpl-daily", now + timedelta(minutes=5))

        assert len(first.emitted) == 1
        assert second.emitted == []
        assert manual.emitted == []
        assert len(await _all_tasks(stores)) == 2

    async def test_concurrent_ticks_emit_once(self, engine, stores, make_template, save_config):
        await save_config(make_template())
        now = sh(2025, 6, 3, 10)

        reports = await asyncio.gather(*(engine.run_tick(now) for _ in range(3)))

        assert sum(len(r.emitted) for r in reports) == 3
        tasks = await _all_tasks(stores)
        assert len(tasks) == 6
        keys = [(t.period_key, t.assignee_id) for t in tasks]
        assert len(keys) == len(set(keys))

    async def test_manual_trigger_of_inactive_template(
        self, engine, stores, make_template, save_config
    ):
        await save_config(make_template(is_active=False))

        tick = await engine.run_tick(sh(2025, 6, 1, 10))
        manual = await engine.run_distribution_now("tpl-daily", sh(2025, 6, 1, 10))

        assert tick.outcomes == []
        assert len(manual.emitted) == 1

    async def test_unknown_template(self, engine):
        with pytest.raises(TaskNotFoundError):
            await engine.run_distribution_now("missing")


class TestOccurrenceOutcomes:
    """逾期、空范围、协作方失败"""

    async def test_late_occurrence_expired_when_not_allowed(
        self, engine, stores, make_template, save_config
    ):
        await save_config(make_template(allow_late=False))

        report = await engine.run_tick(sh(2025, 6, 2, 10))

        assert [o.period_key for o in report.emitted] == ["2025-06-02"]
        record = await stores.occurrence_store.get_occurrence("tpl-daily", "", "2025-06-01")
        assert record.state == OccurrenceState.EXPIRED
        assert record.reason == "late_not_allowed"

    async def test_empty_scope_skipped(self, engine, stores, make_template, save_config):
        await save_config(
            make_template(assignee_mode=AssigneeMode.BY_DEPARTMENT, department_ids=["nobody"])
        )

        report = await engine.run_tick(sh(2025, 6, 1, 10))
        again = await engine.run_tick(sh(2025, 6, 1, 11))

        assert report.count(OccurrenceState.SKIPPED_EMPTY) == 1
        assert again.outcomes == []
        record = await stores.occurrence_store.get_occurrence("tpl-daily", "", "2025-06-01")
        assert record.state == OccurrenceState.SKIPPED_EMPTY

    async def test_transient_failure_retried_next_tick(
        self, stores, make_flaky_directory, registry, fast_config, make_template, save_config
    ):
        flaky = make_flaky_directory(3)
        engine = DistributionEngine(
            stores, ScopeResolver(flaky, registry, fast_config), config=fast_config
        )
        await save_config(make_template())

        first = await engine.run_tick(sh(2025, 6, 1, 10))
        assert first.count(OccurrenceState.PENDING_RETRY) == 1
        assert await _all_tasks(stores) == []

        second = await engine.run_tick(sh(2025, 6, 1, 10, 5))
        assert [o.period_key for o in second.emitted] == ["2025-06-01"]
        record = await stores.occurrence_store.get_occurrence("tpl-daily", "", "2025-06-01")
        assert record.state == OccurrenceState.EMITTED
        assert record.attempts == 2

    async def test_pending_retry_expires_when_outside_backfill_window(
        self, engine, stores, make_flaky_directory, registry, fast_config, make_template,
        save_config,
    ):
        await save_config(make_template(max_backfill_periods=2))
        flaky_engine = DistributionEngine(
            stores,
            ScopeResolver(make_flaky_directory(3), registry, fast_config),
            config=fast_config,
        )
        first = await flaky_engine.run_tick(sh(2025, 6, 1, 10))
        assert first.count(OccurrenceState.PENDING_RETRY) == 1

        report = await engine.run_tick(sh(2025, 6, 4, 10))

        assert [o.period_key for o in report.emitted] == ["2025-06-03", "2025-06-04"]
        expired = await stores.occurrence_store.list_occurrences(
            "tpl-daily", state=OccurrenceState.EXPIRED
        )
        assert [r.period_key for r in expired] == ["2025-06-01", "2025-06-02"]
        assert {r.reason for r in expired} == {"backfill_window_exceeded"}
        assert (
            await stores.occurrence_store.list_occurrences(
                "tpl-daily", state=OccurrenceState.PENDING_RETRY
            )
            == []
        )

    async def test_transient_failure_does_not_block_other_templates(
        self, stores, registry, fast_config, make_template, save_config
    ):
        directory = AsyncMock()
        directory.resolve_users.side_effect = ConnectionError("down")
        engine = DistributionEngine(
            stores, ScopeResolver(directory, registry, fast_config), config=fast_config
        )
        await save_config(make_template())
        await save_config(
            make_template(
                template_id="tpl-ports",
                assignee_mode=AssigneeMode.BY_COLLECTION_POINT,
                collection_point_ids=["p3"],
            )
        )

        report = await engine.run_tick(sh(2025, 6, 1, 10))

        states = {o.template_id: o.state for o in report.outcomes}
        assert states == {
            "tpl-daily": OccurrenceState.PENDING_RETRY,
            "tpl-ports": OccurrenceState.SKIPPED_EMPTY,
        }


class TestConfigurationFaults:
    """配置错误停止处理"""

    async def test_quorum_without_due_policy_halts_then_recovers(
        self, engine, stores, make_template, save_config
    ):
        template = make_template()
        broken = _rule(completion_policy=CompletionPolicy.QUORUM)
        await save_config(template, broken)

        first = await engine.run_tick(sh(2025, 6, 1, 10))
        assert first.halted == ["tpl-daily/r1"]
        assert first.count(OccurrenceState.FAILED) == 1
        assert await stores.occurrence_store.get_fault("tpl-daily", "r1") is not None

        # 配置未变：保持停止，不再重试
        second = await engine.run_tick(sh(2025, 6, 1, 11))
        assert second.halted == ["tpl-daily/r1"]
        assert second.outcomes == []

        fixed = broken.model_copy(update={"due_policy": DuePolicy(quorum=2)})
        await save_config(template, fixed)
        third = await engine.run_tick(sh(2025, 6, 1, 12))

        assert third.halted == []
        assert [o.period_key for o in third.emitted] == ["2025-06-01"]
        assert await stores.occurrence_store.get_fault("tpl-daily", "r1") is None
        group = await stores.task_store.get_group(third.emitted[0].group_id)
        assert group.required_count == 2
        assert group.completion_policy == CompletionPolicy.QUORUM

    async def test_due_before_dispatch_halts_without_occurrences(
        self, engine, stores, make_template, save_config
    ):
        await save_config(make_template(due_at_minute=8 * 60))

        report = await engine.run_tick(sh(2025, 6, 1, 10))

        assert report.halted == ["tpl-daily/-"]
        assert report.outcomes == []
        assert await stores.occurrence_store.list_occurrences("tpl-daily") == []

    async def test_weekly_due_on_later_day_is_accepted(
        self, engine, stores, make_template, save_config
    ):
        """周一 09:00 下发、周日 08:00 截止：截止时刻早于下发时刻但日期在后"""
        await save_config(
            make_template(
                cycle_type=CycleType.WEEKLY,
                run_day_of_week=1,
                due_at_minute=8 * 60,
                active_from=sh(2025, 6, 2),
            )
        )

        report = await engine.run_tick(sh(2025, 6, 2, 10))

        assert report.halted == []
        assert [o.period_key for o in report.emitted] == ["2025-W23"]
        tasks = await _all_tasks(stores)
        assert {t.due_at for t in tasks} == {sh(2025, 6, 8, 8)}

    async def test_monthly_due_day_before_run_day_halts(
        self, engine, stores, make_template, save_config
    ):
        await save_config(
            make_template(
                cycle_type=CycleType.MONTHLY,
                run_day_of_month=20,
                due_day_of_month=5,
                active_from=sh(2025, 6, 1),
            )
        )

        report = await engine.run_tick(sh(2025, 6, 21, 10))

        assert report.halted == ["tpl-daily/-"]
        assert report.emitted == []

    async def test_fault_on_one_rule_does_not_stop_siblings(
        self, engine, stores, make_template, save_config
    ):
        await save_config(
            make_template(),
            _rule(rule_id="r1", completion_policy=CompletionPolicy.QUORUM),
            _rule(rule_id="r2", scope=UserScope(user_ids=["u5"])),
        )

        report = await engine.run_tick(sh(2025, 6, 1, 10))

        assert report.halted == ["tpl-daily/r1"]
        assert [(o.rule_id, o.period_key) for o in report.emitted] == [("r2", "2025-06-01")]

    def test_fingerprint_ignores_run_markers(self, make_template):
        template = make_template()
        marked = template.model_copy(update={"last_run_at": sh(2025, 6, 1, 10)})
        changed = template.model_copy(update={"due_at_minute": 17 * 60})
        assert config_fingerprint(template, None) == config_fingerprint(marked, None)
        assert config_fingerprint(template, None) != config_fingerprint(changed, None)


class TestAssignmentAndCompletion:
    """分配策略与完成策略贯通"""

    async def test_rotation_across_ticks(self, engine, stores, make_template, save_config):
        await save_config(make_template(), _rule(assignee_strategy=AssigneeStrategy.ROTATION))

        picked = []
        for day in range(1, 6):
            report = await engine.run_tick(sh(2025, 6, day, 10))
            [outcome] = report.emitted
            [task] = await stores.task_store.list_tasks_for_occurrence(
                "tpl-daily", "r1", outcome.period_key
            )
            picked.append(task.assignee_id)

        assert picked == ["u1", "u2", "u3", "u1", "u2"]
        cursor = await stores.occurrence_store.get_cursor("r1")
        assert cursor.position == 5
        assert cursor.version == 5

    async def test_balanced_picks_least_loaded(self, engine, stores, make_template, save_config):
        await save_config(make_template(), _rule(assignee_strategy=AssigneeStrategy.BALANCED))

        picked = []
        for day in range(1, 4):
            report = await engine.run_tick(sh(2025, 6, day, 10))
            [task] = await stores.task_store.list_tasks_for_occurrence(
                "tpl-daily", "r1", report.emitted[0].period_key
            )
            picked.append(task.assignee_id)

        assert picked == ["u1", "u2", "u3"]

    async def test_any_one_group_completion(self, engine, stores, make_template, save_config):
        await save_config(make_template(), _rule(completion_policy=CompletionPolicy.ANY_ONE))

        report = await engine.run_tick(sh(2025, 6, 1, 10))
        [outcome] = report.emitted
        assert outcome.task_count == 3

        members = await stores.task_store.list_group_members(outcome.group_id)
        target = next(m for m in members if m.assignee_id == "u2")
        _, transition = await complete_task(
            stores.conn, stores.task_store, stores.occurrence_store, target.task_id,
            sh(2025, 6, 1, 12),
        )

        assert transition.fired is True
        group = await stores.task_store.get_group(outcome.group_id)
        assert group.status == GroupStatus.COMPLETED
        members = await stores.task_store.list_group_members(outcome.group_id)
        assert sum(m.completed_by_proxy for m in members) == 2
        record = await stores.occurrence_store.get_occurrence("tpl-daily", "r1", "2025-06-01")
        assert record.state == OccurrenceState.COMPLETED

    async def test_point_commodities_in_titles(self, engine, stores, make_template, save_config):
        await save_config(
            make_template(
                assignee_mode=AssigneeMode.BY_COLLECTION_POINT,
                target_point_type=PointType.PORT,
            )
        )

        await engine.run_tick(sh(2025, 6, 1, 10))

        titles = sorted(t.title for t in await _all_tasks(stores))
        assert titles == [
            "每日港口价格采集 [2025-06-01]",
            "每日港口价格采集 [2025-06-01] [corn]",
            "每日港口价格采集 [2025-06-01] [soybean]",
        ]


class TestPreviewAndSideEffects:
    """预览、通知与参考标记"""

    async def test_preview_occurrences_is_read_only(
        self, engine, stores, make_template, save_config
    ):
        await save_config(make_template())

        previews = await engine.preview_occurrences(
            "tpl-daily", sh(2025, 6, 4, 10), now=sh(2025, 6, 1, 10)
        )

        assert [p.period_key for p in previews] == ["2025-06-02", "2025-06-03", "2025-06-04"]
        assert {p.state for p in previews} == {OccurrenceState.NOT_DUE}
        assert previews[0].due_at == sh(2025, 6, 2, 18)
        assert await stores.occurrence_store.list_occurrences("tpl-daily") == []
        assert await _all_tasks(stores) == []

    async def test_preview_distribution(self, engine, stores, make_template, save_config):
        await save_config(
            make_template(
                assignee_mode=AssigneeMode.BY_COLLECTION_POINT,
                target_point_type=PointType.PORT,
            )
        )

        preview = await engine.preview_distribution("tpl-daily")

        assert preview.total_tasks == 3
        assert preview.total_assignees == 2
        u1 = preview.assignees[0]
        assert (u1.user_id, u1.task_count, u1.collection_point_ids) == ("u1", 2, ["p1"])
        assert [p.point_id for p in preview.unassigned_points] == ["p3"]
        assert await _all_tasks(stores) == []

    async def test_preview_distribution_does_not_advance_rotation(
        self, engine, stores, make_template, save_config
    ):
        await save_config(make_template(), _rule(assignee_strategy=AssigneeStrategy.ROTATION))

        first = await engine.preview_distribution("tpl-daily")
        second = await engine.preview_distribution("tpl-daily")

        assert [a.user_id for a in first.assignees] == ["u1"]
        assert first == second
        assert (await stores.occurrence_store.get_cursor("r1")).version == 0

    async def test_notifier_called_and_failures_ignored(
        self, stores, resolver, fast_config, notifier, make_template, save_config
    ):
        await save_config(make_template())
        engine = DistributionEngine(stores, resolver, notifier=notifier, config=fast_config)
        await engine.run_tick(sh(2025, 6, 1, 10))
        assert len(notifier.calls) == 1
        assert len(notifier.calls[0][0]) == 2

        failing = AsyncMock()
        failing.tasks_assigned.side_effect = RuntimeError("mail server down")
        engine = DistributionEngine(stores, resolver, notifier=failing, config=fast_config)
        report = await engine.run_tick(sh(2025, 6, 2, 10))

        assert [o.period_key for o in report.emitted] == ["2025-06-02"]
        assert len(await _all_tasks(stores)) == 4

    async def test_run_markers_updated(self, engine, stores, make_template, save_config):
        await save_config(make_template())
        now = sh(2025, 6, 1, 10)

        await engine.run_tick(now)

        template = await stores.template_store.get_template("tpl-daily")
        assert template.last_run_at == now
        assert template.next_run_at == sh(2025, 6, 2, 9)

    async def test_one_time_template_emits_once(self, engine, stores, make_template, save_config):
        await save_config(make_template(cycle_type="ONE_TIME", active_from=sh(2025, 6, 1, 12)))

        first = await engine.run_tick(sh(2025, 6, 1, 13))
        second = await engine.run_tick(sh(2025, 6, 8, 13))

        assert [o.period_key for o in first.emitted] == ["2025-06-01"]
        assert second.outcomes == []
        template = await stores.template_store.get_template("tpl-daily")
        assert template.next_run_at is None
