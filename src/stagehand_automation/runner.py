from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, Mapping, Optional, TypeVar

from . import guards
from .errors import ConnectivityError, FactGatherError, GuardEvaluationError, HandlerError
from .executors import Executor, connection_target, executor_for
from .facts import FactCache
from .handlers import HandlerNotifier
from .inventory import Inventory
from .operations import operation_class
from .planner import PlanBuilder, TagFilter
from .types import (
    ActionResult,
    HostConfig,
    HostResult,
    HostStatus,
    OperationSpec,
    Plan,
    PlanStep,
    Playbook,
    resource_name,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
ExecutorFactory = Callable[..., Executor]
ProgressCallback = Callable[[ActionResult], None]


class ResultStore:
    """Registered step results for one host, visible to later guards and parameters."""

    def __init__(self) -> None:
        self._values: dict[str, dict[str, Any]] = {}

    def register(self, name: str, result: ActionResult) -> None:
        self._values[name] = result.as_register()

    def get(self, name: str) -> Optional[dict[str, Any]]:
        return self._values.get(name)

    def as_dict(self) -> dict[str, dict[str, Any]]:
        return dict(self._values)


class ExecutionEngine:
    """Applies per-host plans across the fleet with bounded parallelism.

    One worker owns one host for the whole plan, so each :class:`HostResult`
    has a single writer. Connectivity problems are retried with exponential
    backoff; an operation that reports a logical failure is never retried.
    """

    def __init__(
        self,
        *,
        executor_factory: ExecutorFactory = executor_for,
        fact_cache: Optional[FactCache] = None,
        dry_run: bool = False,
        retries: int = 3,
        retry_delay: float = 0.5,
        fact_ttl: float = 3600,
        progress_callback: Optional[ProgressCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
        notifier: Optional[HandlerNotifier] = None,
    ):
        self.executor_factory = executor_factory
        self.fact_cache = fact_cache
        self.dry_run = dry_run
        self.retries = max(0, int(retries))
        self.retry_delay = retry_delay
        self.fact_ttl = fact_ttl
        self.progress_callback = progress_callback
        self.sleep = sleep
        self.notifier = notifier or HandlerNotifier()
        self._cancel = threading.Event()
        self._report_lock = threading.Lock()

    def cancel(self) -> None:
        """Stop dispatching hosts; running hosts stop after their current step."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self, plans: Mapping[str, Plan], max_parallel: int = 5) -> dict[str, HostResult]:
        results = {name: HostResult(host=name) for name in plans}
        if not plans:
            return results
        workers = max(1, min(int(max_parallel), len(plans)))
        logger.debug("engine hosts=%s forks=%s dry_run=%s", len(plans), workers, self.dry_run)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stagehand") as pool:
            futures = [pool.submit(self._run_host, plan, results[name]) for name, plan in plans.items()]
            try:
                for future in futures:
                    future.result()
            except KeyboardInterrupt:
                logger.warning("interrupted; cancelling hosts that have not started")
                self.cancel()
        return results

    # Host lifecycle ------------------------------------------------------
    def _run_host(self, plan: Plan, result: HostResult) -> None:
        host = plan.host
        if self._cancel.is_set():
            result.status = HostStatus.CANCELLED
            result.error = "cancelled before start"
            return
        result.status = HostStatus.RUNNING
        try:
            self._execute_plan(plan, result)
        except ConnectivityError as exc:
            result.status = HostStatus.UNREACHABLE
            result.error = str(exc)
        except HandlerError as exc:
            result.status = HostStatus.FAILED
            result.error = str(exc)
        except Exception as exc:  # noqa: BLE001
            logger.error("host=%s aborted: %s", host.name, exc, exc_info=True)
            result.status = HostStatus.FAILED
            result.error = str(exc)
        finally:
            dropped = self.notifier.discard(host.name)
            if dropped:
                logger.debug("host=%s discarded handlers=%s", host.name, ",".join(dropped))
        logger.info("host=%s status=%s", host.name, result.status.value)

    def _execute_plan(self, plan: Plan, result: HostResult) -> None:
        host = plan.host
        executor = self.executor_factory(connection_target(host, plan.config.values), dry_run=self.dry_run)
        self._with_retries(host, executor.check_connection)

        context: dict[str, Any] = dict(plan.config.values)
        if plan.gather_facts and self.fact_cache is not None:
            try:
                context["facts"] = self._with_retries(
                    host, lambda: self.fact_cache.get_or_refresh(host, self.fact_ttl, executor)
                )
            except FactGatherError as exc:
                result.status = HostStatus.FAILED
                result.error = str(exc)
                return
        else:
            context.setdefault("facts", {})

        store = ResultStore()
        for step in plan.steps:
            if self._cancel.is_set():
                result.status = HostStatus.CANCELLED
                result.error = "cancelled"
                return
            if step.flush:
                outcomes = self._flush(plan, executor, context, store)
                failure = next((r for r in outcomes if r.failed and not r.ignored), None)
                for outcome in outcomes:
                    self._record(result, outcome)
                if failure is not None:
                    raise HandlerError(f"handler '{failure.resource or failure.action}' failed: {failure.details}")
                continue

            outcome = self._run_step(plan, step, executor, context, store)
            self._record(result, outcome)
            if outcome.failed and not outcome.ignored:
                result.status = HostStatus.FAILED
                result.error = outcome.details
                return
            if outcome.changed and not outcome.failed:
                for target in step.spec.notify:
                    self.notifier.queue(host.name, target)
        result.status = HostStatus.SUCCEEDED

    def _record(self, result: HostResult, outcome: ActionResult) -> None:
        result.add(outcome)
        logger.debug(
            "action=%s host=%s changed=%s status=%s",
            outcome.action,
            outcome.host,
            outcome.changed,
            outcome.status.value,
        )
        if self.progress_callback is not None:
            with self._report_lock:
                self.progress_callback(outcome)

    # Steps ---------------------------------------------------------------
    def _run_step(
        self,
        plan: Plan,
        step: PlanStep,
        executor: Executor,
        context: Mapping[str, Any],
        store: ResultStore,
    ) -> ActionResult:
        spec = step.spec
        if step.skip_reason:
            outcome = self._skipped(plan.host, spec, f"skipped ({step.skip_reason})")
        else:
            outcome = self._guarded_apply(plan.host, spec, executor, context, store, deferred=step.deferred_guard)
        if spec.register:
            store.register(spec.register, outcome)
        return outcome

    def _guarded_apply(
        self,
        host: HostConfig,
        spec: OperationSpec,
        executor: Executor,
        context: Mapping[str, Any],
        store: ResultStore,
        *,
        deferred: bool,
        handler: bool = False,
    ) -> ActionResult:
        scope = {**context, **store.as_dict()}
        if deferred and spec.when:
            try:
                allowed = guards.evaluate(spec.when, scope)
            except GuardEvaluationError as exc:
                return self._failed(host, spec, str(exc), handler=handler)
            if not allowed:
                return self._skipped(host, spec, "skipped (guard)", handler=handler)
        outcome = self._apply(host, spec, executor, scope)
        outcome.handler = handler
        if outcome.failed and spec.ignore_errors:
            outcome.ignored = True
        return outcome

    def _apply(self, host: HostConfig, spec: OperationSpec, executor: Executor, scope: Mapping[str, Any]) -> ActionResult:
        operation_cls = operation_class(spec.type)
        if operation_cls is None:
            detail = f"unknown operation '{spec.type}'"
            logger.warning(detail)
            return self._failed(host, spec, detail)
        try:
            data = guards.render(spec.data, scope)
            operation = operation_cls(data, context=scope)
            outcome = self._with_retries(host, lambda: operation.apply(host, executor))
        except ConnectivityError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("action=%s host=%s failed: %s", spec.type, host.name, exc, exc_info=True)
            return self._failed(host, spec, str(exc))
        if outcome.resource is None:
            outcome.resource = resource_name(data)
        outcome.task_id = spec.id
        return outcome

    # Handlers ------------------------------------------------------------
    def _flush(
        self,
        plan: Plan,
        executor: Executor,
        context: Mapping[str, Any],
        store: ResultStore,
    ) -> list[ActionResult]:
        host = plan.host

        def run_handler(name: str) -> ActionResult:
            spec = plan.handlers.get(name)
            if spec is None:
                return ActionResult(
                    host=host.name,
                    action="handler",
                    changed=False,
                    details=f"unknown handler '{name}'",
                    failed=True,
                    resource=name,
                    handler=True,
                )
            if self.dry_run:
                return self._skipped(host, spec, "would run", handler=True)
            outcome = self._guarded_apply(
                host, spec, executor, context, store, deferred=bool(spec.when), handler=True
            )
            if spec.register:
                store.register(spec.register, outcome)
            return outcome

        return self.notifier.flush(host.name, run_handler, stop_when=lambda r: r.failed and not r.ignored)

    # Helpers -------------------------------------------------------------
    def _with_retries(self, host: HostConfig, func: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return func()
            except ConnectivityError as exc:
                if attempt >= self.retries or self._cancel.is_set():
                    raise
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(
                    "host=%s connectivity error (attempt %s/%s), retrying in %.2fs: %s",
                    host.name,
                    attempt + 1,
                    self.retries + 1,
                    delay,
                    exc,
                )
                self.sleep(delay)
                attempt += 1

    @staticmethod
    def _skipped(host: HostConfig, spec: OperationSpec, details: str, *, handler: bool = False) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=spec.type,
            changed=False,
            details=details,
            skipped=True,
            resource=resource_name(spec.data),
            task_id=spec.id,
            handler=handler,
        )

    @staticmethod
    def _failed(host: HostConfig, spec: OperationSpec, details: str, *, handler: bool = False) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=spec.type,
            changed=False,
            details=details,
            failed=True,
            resource=resource_name(spec.data),
            task_id=spec.id,
            handler=handler,
            ignored=spec.ignore_errors,
        )


class PlaybookRunner:
    """Resolves every play of a playbook and feeds the plans to the engine.

    All plays are resolved and planned before any host executes, so a bad
    pattern or an undefined guard variable aborts the run up front. Hosts that
    fail or become unreachable in one play are left out of later plays.
    """

    def __init__(
        self,
        inventory: Inventory,
        engine: ExecutionEngine,
        *,
        builder: Optional[PlanBuilder] = None,
        tag_filter: Optional[TagFilter] = None,
        extra_vars: Optional[Mapping[str, Any]] = None,
        limit: Optional[str] = None,
        forks: int = 5,
    ):
        self.inventory = inventory
        self.engine = engine
        self.builder = builder or PlanBuilder()
        self.tag_filter = tag_filter or TagFilter()
        self.extra_vars = dict(extra_vars or {})
        self.limit = limit
        self.forks = forks

    def target_hosts(self, pattern: str) -> list[HostConfig]:
        hosts = self.inventory.select(pattern)
        if self.limit:
            allowed = {host.name for host in self.inventory.select(self.limit)}
            hosts = [host for host in hosts if host.name in allowed]
        return hosts

    def prepare(self, playbook: Playbook) -> list[tuple[str, dict[str, Plan]]]:
        prepared: list[tuple[str, dict[str, Plan]]] = []
        for play in playbook.plays:
            hosts = self.target_hosts(play.hosts)
            if not hosts:
                logger.warning("play '%s': no hosts matched '%s'", play.name, play.hosts)
            plans: dict[str, Plan] = {}
            for host in hosts:
                config = self.inventory.effective_config(
                    host,
                    role_defaults=play.role_defaults(),
                    play_vars=play.vars,
                    extra_vars=self.extra_vars,
                )
                plans[host.name] = self.builder.build(host, config, play, self.tag_filter)
            prepared.append((play.name, plans))
        return prepared

    def run(self, playbook: Playbook) -> dict[str, HostResult]:
        return self.execute(self.prepare(playbook))

    def execute(self, prepared: Iterable[tuple[str, dict[str, Plan]]]) -> dict[str, HostResult]:
        totals: dict[str, HostResult] = {}
        for play_name, plans in prepared:
            active = {
                name: plan
                for name, plan in plans.items()
                if name not in totals
                or totals[name].status not in {HostStatus.FAILED, HostStatus.UNREACHABLE}
            }
            logger.info("play '%s' hosts=%s", play_name, len(active))
            for name, outcome in self.engine.run(active, self.forks).items():
                if name in totals:
                    totals[name].merge(outcome)
                else:
                    totals[name] = outcome
            if self.engine.cancelled:
                break
        return totals
