"""分发引擎

每个 (模板, 规则, 发生期) 走一遍：周期计算 -> 范围解析 -> 分配策略 -> 完成策略 ->
原子发放。发放键 (template_id, rule_key, period_key) 保证重复 tick、并发 tick、
手动触发都不会重复生成任务。

失败语义：
- 协作方暂时不可用：发生期记为 PENDING_RETRY，下一次 tick 在回填窗口内重试
- 配置错误：发生期记为 FAILED，记录 ConfigFault，配置变化前停止处理该模板/规则
- 范围为空：发生期记为 SKIPPED_EMPTY（告警，不是错误）
"""

import asyncio
import hashlib
from datetime import UTC, datetime

import structlog
from ulid import ULID

from .collaborators import LoggingNotifier, Notifier
from .completion import shape
from .config import EngineConfig
from .cycle import (
    CycleSpec,
    due_instant,
    enumerate_occurrences,
    localize,
    next_occurrence,
    period_bounds,
    period_due_instant,
    period_key,
    period_span,
    rule_cycle,
    template_cycle,
)
from .exceptions import (
    ConfigurationError,
    CursorConflictError,
    TaskNotFoundError,
    TransientCollaboratorError,
)
from .models.enums import (
    AssigneeStrategy,
    CompletionPolicy,
    OccurrenceState,
)
from .models.plan import (
    AssigneePreview,
    AssignmentState,
    DistributionPreview,
    DistributionReport,
    OccurrenceOutcome,
    OccurrencePreview,
    TaskEmissionPlan,
)
from .models.scope import CandidateTarget, ScopeDescriptor
from .models.task import ConfigFault, GeneratedTask, OccurrenceRecord, TaskGroup, rule_key_of
from .models.template import TaskRule, TaskTemplate
from .scope import ScopeResolver, template_scope
from .store import StoreGroup, clear_fault, emit_occurrence, record_fault, record_outcome
from .store.protocols import OccurrenceStore, TaskStore, TemplateStore
from .strategy import select

log = structlog.get_logger()


def config_fingerprint(template: TaskTemplate, rule: TaskRule | None) -> str:
    """模板/规则配置指纹（排除参考标记和时间戳）"""
    payload = template.model_dump_json(
        exclude={"next_run_at", "last_run_at", "created_at", "updated_at"}
    )
    if rule is not None:
        payload += rule.model_dump_json()
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def task_title(template: TaskTemplate, key: str, commodity: str | None) -> str:
    title = f"{template.name} [{key}]"
    return f"{title} [{commodity}]" if commodity else title


class _Target:
    """一个分发目标：模板 + 可选规则（无规则时使用模板自身的分配模式）"""

    def __init__(self, template: TaskTemplate, rule: TaskRule | None) -> None:
        self.template = template
        self.rule = rule
        self.rule_id = rule.rule_id if rule else None
        self.rule_key = rule_key_of(self.rule_id)

    @property
    def label(self) -> str:
        return f"{self.template.template_id}/{self.rule_key or '-'}"

    @property
    def strategy(self) -> AssigneeStrategy:
        return self.rule.assignee_strategy if self.rule else AssigneeStrategy.POINT_OWNER

    @property
    def policy(self) -> CompletionPolicy:
        return self.rule.completion_policy if self.rule else CompletionPolicy.EACH

    def cycle(self) -> CycleSpec:
        if self.rule is None:
            return template_cycle(self.template)
        return rule_cycle(self.template, self.rule)

    def scope(self) -> ScopeDescriptor:
        if self.rule is None:
            return template_scope(self.template)
        return self.rule.scope

    def due_at(self, occurs_at: datetime) -> datetime:
        """模板按周期截止日计算；规则沿用模板的下发到截止偏移"""
        template = self.template
        try:
            if self.rule is None:
                return period_due_instant(
                    self.cycle(),
                    occurs_at,
                    template.due_at_minute,
                    template.due_day_of_week,
                    template.due_day_of_month,
                )
            return due_instant(occurs_at, template.due_offset_minutes)
        except ConfigurationError as e:
            raise ConfigurationError(
                str(e), template_id=self.template.template_id, rule_id=self.rule_id
            ) from e


class DistributionEngine:
    """分发引擎"""

    def __init__(
        self,
        stores: StoreGroup,
        resolver: ScopeResolver,
        notifier: Notifier | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._stores = stores
        self._templates: TemplateStore = stores.template_store
        self._tasks: TaskStore = stores.task_store
        self._occurrences: OccurrenceStore = stores.occurrence_store
        self._resolver = resolver
        self._notifier = notifier or LoggingNotifier()
        self._config = config or EngineConfig()

    # ============================================================
    # 对外入口
    # ============================================================

    async def run_tick(self, now: datetime | None = None) -> DistributionReport:
        """处理全部启用模板的到期发生期

        模板之间并行（受 max_concurrent_templates 限制），同一模板内串行。
        naive 的 now 视为 UTC。
        """
        now = _aware(now)
        report = DistributionReport(started_at=now)
        templates = await self._templates.list_active_templates()
        semaphore = asyncio.Semaphore(self._config.max_concurrent_templates)

        async def _guarded(template: TaskTemplate) -> DistributionReport:
            async with semaphore:
                return await self._process_template(template, now)

        results = await asyncio.gather(
            *(_guarded(t) for t in templates), return_exceptions=True
        )
        for template, result in zip(templates, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                await log.aerror(
                    "template_processing_failed",
                    template_id=template.template_id,
                    error=str(result),
                    exc_info=result,
                )
                report.errors.append(template.template_id)
                continue
            report.outcomes.extend(result.outcomes)
            report.halted.extend(result.halted)

        report.finished_at = datetime.now(UTC)
        await log.ainfo(
            "distribution_tick_finished",
            templates=len(templates),
            emitted=report.count(OccurrenceState.EMITTED),
            expired=report.count(OccurrenceState.EXPIRED),
            skipped_empty=report.count(OccurrenceState.SKIPPED_EMPTY),
            pending_retry=report.count(OccurrenceState.PENDING_RETRY),
            failed=report.count(OccurrenceState.FAILED),
            halted=len(report.halted),
        )
        return report

    async def run_distribution_now(
        self,
        template_id: str,
        now: datetime | None = None,
    ) -> DistributionReport:
        """手动触发单个模板，与定时 tick 具有相同的幂等保证

        Raises:
            TaskNotFoundError: 模板不存在
        """
        now = _aware(now)
        template = await self._templates.get_template(template_id)
        if template is None:
            raise TaskNotFoundError(template_id)
        await log.ainfo("manual_distribution_triggered", template_id=template_id)
        report = await self._process_template(template, now)
        report.finished_at = datetime.now(UTC)
        return report

    async def preview_occurrences(
        self,
        template_id: str,
        horizon: datetime,
        now: datetime | None = None,
    ) -> list[OccurrencePreview]:
        """(now, horizon] 内将要发生的发生期（只读，不落库）

        Raises:
            TaskNotFoundError: 模板不存在
            ConfigurationError: 周期配置不合法
        """
        now = _aware(now)
        template = await self._templates.get_template(template_id)
        if template is None:
            raise TaskNotFoundError(template_id)
        return await self._template_previews(template, now, horizon)

    async def preview_window(
        self,
        start: datetime,
        end: datetime,
        now: datetime | None = None,
    ) -> list[OccurrencePreview]:
        """全部启用模板在 (max(start, now), end] 内的预览发生期（日历使用）

        配置不合法的模板记录告警并跳过。
        """
        now = _aware(now)
        lower = max(_aware(start), now)
        end = _aware(end)
        previews: list[OccurrencePreview] = []
        if lower >= end:
            return previews
        for template in await self._templates.list_active_templates():
            try:
                previews.extend(await self._template_previews(template, lower, end))
            except ConfigurationError as e:
                await log.awarning(
                    "preview_skipped_invalid_config",
                    template_id=template.template_id,
                    error=str(e),
                )
        previews.sort(key=lambda p: (p.occurs_at, p.template_id, p.rule_id or ""))
        return previews

    async def preview_distribution(self, template_id: str) -> DistributionPreview:
        """分发预览：下一次发放的执行人、任务数与无负责人的采集点

        使用当前轮换游标和待办数量，不推进任何状态。

        Raises:
            TaskNotFoundError: 模板不存在
        """
        template = await self._templates.get_template(template_id)
        if template is None:
            raise TaskNotFoundError(template_id)

        preview = DistributionPreview(template_id=template_id)
        assignees: dict[str, AssigneePreview] = {}
        seen_points: set[str] = set()
        for target in await self._targets(template):
            resolution = await self._resolver.resolve_detailed(target.scope())
            for point in resolution.unassigned_points:
                if point.point_id not in seen_points:
                    seen_points.add(point.point_id)
                    preview.unassigned_points.append(point)
            if not resolution.candidates:
                continue
            state = await self._assignment_state(target, resolution.candidates)
            selection = select(target.strategy, resolution.candidates, state)
            for candidate in selection.assignees:
                entry = assignees.setdefault(
                    candidate.user_id,
                    AssigneePreview(
                        user_id=candidate.user_id,
                        organization_id=candidate.organization_id,
                        department_id=candidate.department_id,
                    ),
                )
                entry.task_count += 1
                if (
                    candidate.collection_point_id
                    and candidate.collection_point_id not in entry.collection_point_ids
                ):
                    entry.collection_point_ids.append(candidate.collection_point_id)

        preview.assignees = sorted(assignees.values(), key=lambda a: a.user_id)
        preview.total_assignees = len(preview.assignees)
        preview.total_tasks = sum(a.task_count for a in preview.assignees)
        return preview

    # ============================================================
    # 模板 / 目标处理
    # ============================================================

    async def _targets(self, template: TaskTemplate) -> list[_Target]:
        rules = await self._templates.list_rules(template.template_id)
        if not rules:
            return [_Target(template, None)]
        return [_Target(template, rule) for rule in rules]

    async def _process_template(self, template: TaskTemplate, now: datetime) -> DistributionReport:
        report = DistributionReport(started_at=now)
        targets = await self._targets(template)
        structlog.contextvars.bind_contextvars(template_id=template.template_id)
        try:
            for target in targets:
                if await self._process_target(target, now, report.outcomes):
                    report.halted.append(target.label)
            await self._update_markers(template, targets, now)
        finally:
            structlog.contextvars.unbind_contextvars("template_id")
        return report

    async def _process_target(
        self,
        target: _Target,
        now: datetime,
        outcomes: list[OccurrenceOutcome],
    ) -> bool:
        """处理一个目标的全部到期发生期，返回是否因配置错误停止"""
        template = target.template
        fingerprint = config_fingerprint(template, target.rule)
        limit = max(1, template.max_backfill_periods)
        fault = await self._occurrences.get_fault(template.template_id, target.rule_key)
        if fault is not None:
            if fault.fingerprint == fingerprint:
                await log.adebug("target_halted_by_config_fault", target=target.label)
                return True
            async with self._stores.write_lock:
                await clear_fault(
                    self._stores.conn,
                    self._stores.occurrence_store,
                    template.template_id,
                    target.rule_key,
                )
            await log.ainfo("config_fault_cleared", target=target.label)

        try:
            cycle = target.cycle()
            scope = target.scope()
            # 截止早于下发时在枚举前停止
            upcoming = next_occurrence(cycle, now)
            if upcoming is not None:
                target.due_at(upcoming)
            due = await self._due_occurrences(target, cycle, now, limit)
        except ConfigurationError as e:
            await self._halt(target, fingerprint, e, now)
            return True

        expired, kept = due[:-limit], due[-limit:]
        if expired:
            await self._record(
                target, cycle, expired, OccurrenceState.EXPIRED, "backfill_window_exceeded", now,
                outcomes,
            )
            await log.awarning(
                "backfill_occurrences_expired",
                target=target.label,
                count=len(expired),
                max_backfill_periods=template.max_backfill_periods,
            )

        for occurs_at in kept:
            key = period_key(cycle, occurs_at)
            due_at = target.due_at(occurs_at)
            if not template.allow_late and due_at < now:
                await self._record(
                    target, cycle, [occurs_at], OccurrenceState.EXPIRED, "late_not_allowed",
                    now, outcomes,
                )
                continue
            try:
                outcomes.append(
                    await self._emit(target, cycle, scope, occurs_at, key, due_at, now)
                )
            except ConfigurationError as e:
                await self._halt(target, fingerprint, e, now, occurs_at, key)
                outcomes.append(
                    OccurrenceOutcome(
                        template_id=template.template_id,
                        rule_id=target.rule_id,
                        period_key=key,
                        occurs_at=occurs_at,
                        state=OccurrenceState.FAILED,
                        reason=str(e),
                    )
                )
                return True
        return False

    async def _due_occurrences(
        self,
        target: _Target,
        cycle: CycleSpec,
        now: datetime,
        limit: int,
    ) -> list[datetime]:
        """最近记录之后到期的发生期 + 未落定（等待重试/失败）的发生期，按时间升序

        回看不超过 2 * limit + 1 个周期：再早的发生期必然落在回填窗口之外，
        不逐个枚举也不落库，只记录跳过日志。
        """
        template_id = target.template.template_id
        latest = await self._occurrences.latest_occurrence(template_id, target.rule_key)
        # 无记录时从生效起点开始（enumerate_occurrences 会截到窗口内）
        start = latest.occurs_at if latest is not None else cycle.window_start or now
        span = period_span(cycle)
        if span is not None:
            horizon = now - span * (2 * limit + 1)
            if start < horizon:
                await log.ainfo(
                    "backfill_history_skipped",
                    target=target.label,
                    skipped_from=start.isoformat(),
                    skipped_until=horizon.isoformat(),
                )
                start = horizon
        due = set(
            enumerate_occurrences(
                cycle, start, now, max_iterations=self._config.max_occurrence_iterations
            )
        )

        for state in (OccurrenceState.PENDING_RETRY, OccurrenceState.FAILED):
            for record in await self._occurrences.list_occurrences(
                template_id, target.rule_key, state
            ):
                if _within_window(cycle, record.occurs_at) and record.occurs_at <= now:
                    due.add(record.occurs_at)
        return sorted(due)

    # ============================================================
    # 单个发生期
    # ============================================================

    async def _emit(
        self,
        target: _Target,
        cycle: CycleSpec,
        scope: ScopeDescriptor,
        occurs_at: datetime,
        key: str,
        due_at: datetime,
        now: datetime,
    ) -> OccurrenceOutcome:
        template = target.template
        outcome = OccurrenceOutcome(
            template_id=template.template_id,
            rule_id=target.rule_id,
            period_key=key,
            occurs_at=occurs_at,
            state=OccurrenceState.EMITTED,
        )

        try:
            candidates = await self._resolver.resolve(scope)
        except TransientCollaboratorError as e:
            return await self._defer(target, outcome, str(e), now)

        if not candidates:
            await log.awarning("empty_scope_skipped", target=target.label, period_key=key)
            await self._record(
                target, cycle, [occurs_at], OccurrenceState.SKIPPED_EMPTY, "empty_scope", now
            )
            return outcome.model_copy(
                update={"state": OccurrenceState.SKIPPED_EMPTY, "reason": "empty_scope"}
            )

        async with self._stores.write_lock:
            state = await self._assignment_state(target, candidates)
            selection = select(target.strategy, candidates, state)
            plan = self._shape(target, selection.assignees)
            tasks, group = self._materialize(target, cycle, plan, key, occurs_at, due_at, now)
            record = OccurrenceRecord(
                template_id=template.template_id,
                rule_key=target.rule_key,
                period_key=key,
                occurs_at=occurs_at,
                state=OccurrenceState.EMITTED,
                attempts=1,
                task_count=len(tasks),
                group_id=group.group_id if group else None,
                updated_at=now,
            )
            cursor_next = (
                selection.next_cursor if target.strategy == AssigneeStrategy.ROTATION else None
            )
            conflict: str | None = None
            try:
                emitted = await emit_occurrence(
                    self._stores.conn,
                    self._stores.occurrence_store,
                    self._stores.task_store,
                    record,
                    tasks,
                    group,
                    cursor_next,
                )
            except CursorConflictError as e:
                emitted = False
                conflict = str(e)

        if conflict is not None:
            return await self._defer(target, outcome, conflict, now)
        if not emitted:
            await log.adebug("duplicate_emission_attempt", target=target.label, period_key=key)
            return outcome.model_copy(update={"duplicate": True})

        await log.ainfo(
            "occurrence_emitted",
            target=target.label,
            period_key=key,
            task_count=len(tasks),
            group_id=record.group_id,
            policy=plan.policy,
        )
        await self._notify(tasks, group)
        return outcome.model_copy(
            update={"task_count": len(tasks), "group_id": record.group_id}
        )

    def _shape(self, target: _Target, assignees: list[CandidateTarget]) -> TaskEmissionPlan:
        rule = target.rule
        try:
            plan = shape(
                target.policy,
                assignees,
                rule.due_policy if rule else None,
                rule.grouping if rule else False,
            )
        except ConfigurationError as e:
            raise ConfigurationError(
                str(e), template_id=target.template.template_id, rule_id=target.rule_id
            ) from e
        for warning in plan.warnings:
            log.warning(
                "config_warning",
                target=target.label,
                code=warning.code,
                message=warning.message,
            )
        return plan

    async def _assignment_state(
        self,
        target: _Target,
        candidates: list[CandidateTarget],
    ) -> AssignmentState:
        match target.strategy:
            case AssigneeStrategy.ROTATION:
                return AssignmentState(
                    cursor=await self._occurrences.get_cursor(target.rule_key)
                )
            case AssigneeStrategy.BALANCED:
                user_ids = sorted({c.user_id for c in candidates})
                return AssignmentState(
                    pending_counts=await self._tasks.pending_count_by_user(user_ids)
                )
            case _:
                return AssignmentState()

    def _materialize(
        self,
        target: _Target,
        cycle: CycleSpec,
        plan: TaskEmissionPlan,
        key: str,
        occurs_at: datetime,
        due_at: datetime,
        now: datetime,
    ) -> tuple[list[GeneratedTask], TaskGroup | None]:
        template = target.template
        period_start, period_end = period_bounds(cycle, occurs_at)
        group: TaskGroup | None = None
        if plan.shared:
            group = TaskGroup(
                group_id=str(ULID()),
                template_id=template.template_id,
                rule_id=target.rule_id,
                period_key=key,
                completion_policy=plan.policy,
                required_count=plan.required_count,
                member_assignee_ids=list(dict.fromkeys(a.user_id for a in plan.assignees)),
                created_at=now,
                updated_at=now,
            )

        tasks = [
            GeneratedTask(
                task_id=str(ULID()),
                template_id=template.template_id,
                rule_id=target.rule_id,
                period_key=key,
                title=task_title(template, key, assignee.commodity),
                task_type=template.task_type,
                priority=template.priority,
                assignee_id=assignee.user_id,
                assignee_org_id=assignee.organization_id,
                assignee_dept_id=assignee.department_id,
                collection_point_id=assignee.collection_point_id,
                commodity=assignee.commodity,
                group_id=group.group_id if group else None,
                period_start=period_start,
                period_end=period_end,
                due_at=due_at,
                created_at=now,
            )
            for assignee in plan.assignees
        ]
        return tasks, group

    async def _notify(self, tasks: list[GeneratedTask], group: TaskGroup | None) -> None:
        # 通知发出即忘：投递失败不影响已提交的发放
        try:
            await self._notifier.tasks_assigned(tasks, group)
        except Exception as e:
            await log.awarning(
                "notifier_failed",
                error_type=type(e).__name__,
                error=str(e),
                task_count=len(tasks),
            )

    async def _defer(
        self,
        target: _Target,
        outcome: OccurrenceOutcome,
        reason: str,
        now: datetime,
    ) -> OccurrenceOutcome:
        await log.awarning(
            "occurrence_pending_retry",
            target=target.label,
            period_key=outcome.period_key,
            reason=reason,
        )
        async with self._stores.write_lock:
            await record_outcome(
                self._stores.conn,
                self._stores.occurrence_store,
                [
                    OccurrenceRecord(
                        template_id=outcome.template_id,
                        rule_key=target.rule_key,
                        period_key=outcome.period_key,
                        occurs_at=outcome.occurs_at,
                        state=OccurrenceState.PENDING_RETRY,
                        reason=reason,
                        attempts=1,
                        updated_at=now,
                    )
                ],
            )
        return outcome.model_copy(
            update={"state": OccurrenceState.PENDING_RETRY, "reason": reason}
        )

    async def _record(
        self,
        target: _Target,
        cycle: CycleSpec,
        occurrences: list[datetime],
        state: OccurrenceState,
        reason: str,
        now: datetime,
        outcomes: list[OccurrenceOutcome] | None = None,
    ) -> None:
        records = [
            OccurrenceRecord(
                template_id=target.template.template_id,
                rule_key=target.rule_key,
                period_key=period_key(cycle, occurs_at),
                occurs_at=occurs_at,
                state=state,
                reason=reason,
                updated_at=now,
            )
            for occurs_at in occurrences
        ]
        async with self._stores.write_lock:
            await record_outcome(self._stores.conn, self._stores.occurrence_store, records)
        if outcomes is not None:
            outcomes.extend(
                OccurrenceOutcome(
                    template_id=r.template_id,
                    rule_id=target.rule_id,
                    period_key=r.period_key,
                    occurs_at=r.occurs_at,
                    state=state,
                    reason=reason,
                )
                for r in records
            )

    async def _halt(
        self,
        target: _Target,
        fingerprint: str,
        error: ConfigurationError,
        now: datetime,
        occurs_at: datetime | None = None,
        key: str | None = None,
    ) -> None:
        template_id = target.template.template_id
        failed = None
        if occurs_at is not None and key is not None:
            failed = OccurrenceRecord(
                template_id=template_id,
                rule_key=target.rule_key,
                period_key=key,
                occurs_at=occurs_at,
                state=OccurrenceState.FAILED,
                reason=str(error),
                attempts=1,
                updated_at=now,
            )
        fault = ConfigFault(
            template_id=template_id,
            rule_key=target.rule_key,
            fingerprint=fingerprint,
            message=str(error),
            created_at=now,
        )
        async with self._stores.write_lock:
            await record_fault(self._stores.conn, self._stores.occurrence_store, fault, failed)
        await log.aerror(
            "config_fault_recorded",
            target=target.label,
            period_key=key,
            error=str(error),
        )

    # ============================================================
    # 预览与参考标记
    # ============================================================

    async def _template_previews(
        self,
        template: TaskTemplate,
        after: datetime,
        until: datetime,
    ) -> list[OccurrencePreview]:
        previews: list[OccurrencePreview] = []
        for target in await self._targets(template):
            cycle = target.cycle()
            for occurs_at in enumerate_occurrences(
                cycle, after, until, max_iterations=self._config.max_occurrence_iterations
            ):
                previews.append(
                    OccurrencePreview(
                        template_id=template.template_id,
                        rule_id=target.rule_id,
                        period_key=period_key(cycle, occurs_at),
                        occurs_at=occurs_at,
                        due_at=target.due_at(occurs_at),
                        state=OccurrenceState.NOT_DUE,
                        task_type=template.task_type,
                        priority=template.priority,
                    )
                )
        previews.sort(key=lambda p: (p.occurs_at, p.rule_id or ""))
        return previews

    async def _update_markers(
        self,
        template: TaskTemplate,
        targets: list[_Target],
        now: datetime,
    ) -> None:
        upcoming = [
            nxt
            for target in targets
            if (nxt := next_occurrence(target.cycle(), now)) is not None
            and _within_window(target.cycle(), nxt)
        ]
        async with self._stores.write_lock:
            try:
                await self._templates.update_run_markers(
                    template.template_id, now, min(upcoming) if upcoming else None
                )
                await self._stores.conn.commit()
            except Exception:
                await self._stores.conn.rollback()
                raise


def _aware(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _within_window(cycle: CycleSpec, instant: datetime) -> bool:
    if cycle.window_start is not None and instant < cycle.window_start:
        return False
    if cycle.active_until is not None and instant > localize(cycle, cycle.active_until):
        return False
    return True
