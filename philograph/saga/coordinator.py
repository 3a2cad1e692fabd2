"""
PhiloGraph - Saga Coordinator

Executes Plans across the three stores and the reasoning gateway with
ordered steps plus compensations. No two-phase commit: each store call is
individually atomic, cross-store consistency comes from compensation.

EXECUTION CONTRACT:
1. Concept locks for plan.concept_ids are held for the whole plan
2. Plan header logged pending
3. Per step: cancel check -> pending entry -> do (per-step timeout,
   UNAVAILABLE retried with backoff) -> committed entry -> cache invalidation.
   A timed-out call is awaited and its late result undone before any retry
4. On failure: failed entry, then every committed step compensated in
   reverse order (compensated entries, caches invalidated again);
   compensation errors are collected, never raised alone
5. Plan header logged with the terminal status

RECOVERY:
recover() compensates plans left with a pending header (crash mid-plan)
from their logged payloads via the CompensationRegistry. The header records
its owner (host, pid, coordinator instance); plans of a live owner are skipped.
"""

from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import timedelta
from functools import partial
import os
import socket
import threading
import time
import uuid

import structlog

from philograph.core.cache import CacheInvalidator
from philograph.core.models import utcnow
from philograph.core.errors import (
    CompensationFailedError,
    PlanFailedError,
    StepTimeoutError,
)
from philograph.saga.locks import ConceptLocks
from philograph.saga.log import (
    PLAN_HEADER_INDEX,
    PLAN_STEP_KIND,
    SagaLogEntry,
    SagaLogStore,
    StepStatus,
)
from philograph.saga.plan import (
    CancelToken,
    Plan,
    PlanResult,
    Step,
    StepCategory,
    StepContext,
    StepOutcome,
)
from philograph.saga.retry import RetryPolicy

logger = structlog.get_logger(__name__)

CompensationHandler = Callable[[Dict[str, Any]], None]


class CompensationRegistry:
    """
    Compensations keyed by step kind, driven by logged payloads.

    Used by recovery, where the in-process step closures no longer exist.
    pending_safe marks handlers whose payload is complete before the step
    ran (pre-assigned ids), so a pending entry can be compensated too.
    """

    def __init__(self):
        self._handlers: Dict[str, Tuple[CompensationHandler, bool]] = {}

    def register(self, step_kind: str, handler: CompensationHandler, pending_safe: bool = False) -> None:
        self._handlers[step_kind] = (handler, pending_safe)

    def register_noop(self, step_kind: str) -> None:
        """Steps with no durable effect (reasoning calls)."""
        self._handlers[step_kind] = (lambda payload: None, True)

    def knows(self, step_kind: str) -> bool:
        return step_kind in self._handlers

    def can_compensate(self, step_kind: str, status: StepStatus) -> bool:
        if step_kind not in self._handlers:
            return False
        if status == StepStatus.COMMITTED:
            return True
        return status == StepStatus.PENDING and self._handlers[step_kind][1]

    def compensate(self, step_kind: str, payload: Dict[str, Any]) -> None:
        handler, _ = self._handlers[step_kind]
        handler(payload)


class SagaCoordinator:
    """
    Runs Plans with saga semantics.

    Usage:
        coordinator = SagaCoordinator(saga_log, locks, invalidator)
        result = coordinator.execute(plan)   # raises PlanFailedError
    """

    def __init__(
        self,
        saga_log: SagaLogStore,
        locks: ConceptLocks,
        invalidator: CacheInvalidator,
        registry: Optional[CompensationRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        store_step_timeout: float = 10.0,
        reasoning_step_timeout: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
        step_workers: int = 16,
        orphan_after: float = 3600.0
    ):
        """
        Args:
            orphan_after: Seconds after which recovery treats an open plan
                started on another host as abandoned
        """
        self.saga_log = saga_log
        self.locks = locks
        self.invalidator = invalidator
        self.registry = registry or CompensationRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeouts = {
            StepCategory.STORE: store_step_timeout,
            StepCategory.REASONING: reasoning_step_timeout,
        }
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=step_workers, thread_name_prefix="saga-step")
        self.orphan_after = orphan_after
        self.owner = {
            'host': socket.gethostname(),
            'pid': os.getpid(),
            'instance': uuid.uuid4().hex,
        }
        self._active: Set[str] = set()
        self._active_lock = threading.Lock()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    # Logging helpers

    def _append(
        self,
        plan_id: str,
        index: int,
        name: str,
        kind: str,
        status: StepStatus,
        payload: Dict[str, Any]
    ) -> None:
        self.saga_log.append(SagaLogEntry(
            plan_id=plan_id,
            step_index=index,
            step_name=name,
            step_kind=kind,
            status=status,
            payload=payload,
        ))

    def _header(self, plan_id: str, kind: str, concept_ids: List[str], status: StepStatus) -> None:
        self._append(
            plan_id,
            PLAN_HEADER_INDEX,
            kind,
            PLAN_STEP_KIND,
            status,
            {'kind': kind, 'concept_ids': list(concept_ids), 'owner': dict(self.owner)},
        )

    # Execution

    def _call(
        self,
        step: Step,
        fn: Callable[[], Any],
        undo: Optional[Callable[[Any], None]] = None
    ) -> Any:
        """
        Run fn on the step executor under the step category's timeout.

        A timed-out call is not abandoned: it is awaited before the caller
        retries or compensates, and whatever it produced late is undone.
        """
        timeout = self.timeouts[step.category]
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            logger.warning("saga.step.timed_out", step=step.name, timeout=timeout)
            unresolved = self._settle(step, future, undo)
            raise StepTimeoutError(f"Step '{step.name}' timed out after {timeout}s", unresolved) from e

    def _settle(
        self,
        step: Step,
        future: Future,
        undo: Optional[Callable[[Any], None]]
    ) -> Optional[CompensationFailedError]:
        """
        Wait for a timed-out call to finish and undo its late result.

        Store adapters bound their own calls (pool and statement timeouts,
        request timeouts), so the wait ends.

        Returns:
            The undo failure, if the late result could not be undone
        """
        if future.cancel():
            return None

        try:
            late = future.result()
        except Exception as e:
            logger.info("saga.step.late_failure", step=step.name, error=str(e))
            return None

        logger.warning("saga.step.late_result", step=step.name, undone=undo is not None)
        if undo is None:
            return None

        try:
            undo(late)
            self.invalidator.invalidate_many(step.touched(late))
        except Exception as e:
            logger.error("saga.step.late_undo_failed", step=step.name, error=str(e))
            return CompensationFailedError(step.name, e)
        return None

    def _run_step(
        self,
        plan: Plan,
        index: int,
        step: Step,
        ctx: StepContext,
        cancel_token: Optional[CancelToken]
    ) -> Tuple[Any, int]:
        log = logger.bind(plan_id=plan.plan_id, step=step.name, step_index=index)
        attempts = 0
        payload: Dict[str, Any] = {}

        try:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            payload = step.payload_for(ctx)
            self._append(plan.plan_id, index, step.name, step.kind, StepStatus.PENDING, payload)

            undo = partial(step.compensate, ctx) if step.compensate is not None else None

            while True:
                attempts += 1
                try:
                    return self._call(step, lambda: step.do(ctx), undo), attempts
                except Exception as e:
                    if not self.retry_policy.should_retry(e, attempts):
                        raise

                    delay = self.retry_policy.delay(attempts)
                    log.warning(
                        "saga.step.retry",
                        retry=attempts,
                        delay=delay,
                        error=str(e),
                    )
                    self._sleep(delay)

                    if cancel_token is not None:
                        cancel_token.raise_if_cancelled()

        except Exception as e:
            log.warning("saga.step.failed", attempts=attempts, error=str(e), error_type=type(e).__name__)
            try:
                self._append(plan.plan_id, index, step.name, step.kind, StepStatus.FAILED, payload)
            except Exception as log_error:
                log.error("saga.log.write_failed", status="failed", error=str(log_error))
            raise

    def execute(self, plan: Plan, cancel_token: Optional[CancelToken] = None) -> PlanResult:
        """
        Execute a plan.

        Returns:
            PlanResult with plan.finalize(ctx) as output

        Raises:
            PlanFailedError: A step failed; prior steps were compensated
        """
        with self._active_lock:
            self._active.add(plan.plan_id)
        try:
            return self._execute(plan, cancel_token)
        finally:
            with self._active_lock:
                self._active.discard(plan.plan_id)

    def _execute(self, plan: Plan, cancel_token: Optional[CancelToken]) -> PlanResult:
        log = logger.bind(plan_id=plan.plan_id, kind=plan.kind)
        ctx = StepContext(plan_id=plan.plan_id, args=dict(plan.args))
        committed: List[Tuple[int, Step, Any]] = []
        outcomes: List[StepOutcome] = []

        with self.locks.hold(plan.concept_ids):
            log.info("saga.plan.started", steps=[s.name for s in plan.steps], concept_ids=plan.concept_ids)
            self._header(plan.plan_id, plan.kind, plan.concept_ids, StepStatus.PENDING)

            for index, step in enumerate(plan.steps):
                try:
                    result, attempts = self._run_step(plan, index, step, ctx, cancel_token)
                except Exception as e:
                    outcomes.append(StepOutcome(step.name, StepStatus.FAILED.value))
                    self._fail(plan, ctx, committed, step.name, e)

                ctx.results[step.name] = result
                committed.append((index, step, result))

                try:
                    undo_payload = step.undo_payload(ctx, result)
                    self._append(plan.plan_id, index, step.name, step.kind, StepStatus.COMMITTED, undo_payload)
                    self.invalidator.invalidate_many(undo_payload['touches'])
                except Exception as e:
                    log.error("saga.step.commit_failed", step=step.name, error=str(e))
                    outcomes.append(StepOutcome(step.name, StepStatus.FAILED.value, attempts))
                    self._fail(plan, ctx, committed, step.name, e)

                outcomes.append(StepOutcome(step.name, StepStatus.COMMITTED.value, attempts))
                log.info("saga.step.committed", step=step.name, step_index=index, attempts=attempts)

            try:
                output = plan.finalize(ctx) if plan.finalize else None
            except Exception as e:
                self._fail(plan, ctx, committed, "finalize", e)

            self._header(plan.plan_id, plan.kind, plan.concept_ids, StepStatus.COMMITTED)
            log.info("saga.plan.completed")

        return PlanResult(plan_id=plan.plan_id, kind=plan.kind, output=output, outcomes=outcomes)

    def _fail(
        self,
        plan: Plan,
        ctx: StepContext,
        committed: List[Tuple[int, Step, Any]],
        step_name: str,
        cause: BaseException
    ) -> None:
        """Compensate committed steps and raise PlanFailedError."""
        errors = self._compensate(plan, ctx, committed)
        if isinstance(cause, StepTimeoutError) and cause.unresolved is not None:
            # The timed-out step's late write survived
            errors.insert(0, cause.unresolved)
        terminal = StepStatus.COMPENSATED if not errors else StepStatus.FAILED

        try:
            self._header(plan.plan_id, plan.kind, plan.concept_ids, terminal)
        except Exception as e:
            # Header stays pending: recovery will revisit this plan
            logger.error("saga.log.write_failed", plan_id=plan.plan_id, status=terminal.value, error=str(e))

        logger.error(
            "saga.plan.failed",
            plan_id=plan.plan_id,
            kind=plan.kind,
            step=step_name,
            error=str(cause),
            compensation_errors=len(errors),
        )
        raise PlanFailedError(plan.plan_id, step_name, cause, errors) from cause

    def _compensate(
        self,
        plan: Plan,
        ctx: StepContext,
        committed: List[Tuple[int, Step, Any]]
    ) -> List[CompensationFailedError]:
        errors: List[CompensationFailedError] = []

        for index, step, result in reversed(committed):
            log = logger.bind(plan_id=plan.plan_id, step=step.name, step_index=index)
            try:
                if step.compensate is not None:
                    self._with_retries(step, lambda: step.compensate(ctx, result))
                undo_payload = step.undo_payload(ctx, result)
                self._append(plan.plan_id, index, step.name, step.kind, StepStatus.COMPENSATED, undo_payload)
                self.invalidator.invalidate_many(undo_payload['touches'])
                log.info("saga.step.compensated")
            except Exception as e:
                log.error("saga.step.compensation_failed", error=str(e))
                errors.append(CompensationFailedError(step.name, e))

        return errors

    def _with_retries(self, step: Step, fn: Callable[[], Any]) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._call(step, fn)
            except Exception as e:
                if not self.retry_policy.should_retry(e, attempt):
                    raise
                self._sleep(self.retry_policy.delay(attempt))

    # Recovery

    def _owner_alive(self, header: SagaLogEntry) -> bool:
        """
        Whether the process that opened a plan may still be running it.

        Headers without an owner, and plans of this coordinator that are not
        executing, are abandoned. Same-host owners are checked by pid;
        other hosts count as alive until orphan_after has passed.
        """
        owner = header.payload.get('owner')
        if not owner:
            return False

        if owner.get('instance') == self.owner['instance']:
            with self._active_lock:
                return header.plan_id in self._active

        if owner.get('host') == self.owner['host']:
            return _pid_alive(owner.get('pid'))

        return utcnow() - header.recorded_at < timedelta(seconds=self.orphan_after)

    def recover(self) -> List[str]:
        """
        Compensate every plan left unfinished by a crash.

        Plans whose owner is still alive are skipped. Each remaining plan is
        re-read under its concept locks, so a plan that finished meanwhile is
        left alone. Committed steps, and pending steps whose payload suffices,
        are compensated in reverse order; other pending steps are marked failed.

        Returns:
            Ids of the plans that were recovered
        """
        recovered = []

        for plan_id in self.saga_log.open_plan_ids():
            header = self.saga_log.latest(plan_id).get(PLAN_HEADER_INDEX)
            if header is None or header.status != StepStatus.PENDING:
                continue

            log = logger.bind(plan_id=plan_id, kind=header.step_name)
            if self._owner_alive(header):
                log.info("saga.recovery.skipped", reason="owner alive", owner=header.payload.get('owner'))
                continue

            concept_ids = list(header.payload.get('concept_ids') or [])
            with self.locks.hold(concept_ids):
                latest = self.saga_log.latest(plan_id)
                header = latest.pop(PLAN_HEADER_INDEX)
                if header.status != StepStatus.PENDING:
                    log.info("saga.recovery.skipped", reason="finished", status=header.status.value)
                    continue

                log.warning("saga.recovery.started", steps=len(latest))
                failures = self._recover_steps(plan_id, latest, log)

                terminal = StepStatus.COMPENSATED if not failures else StepStatus.FAILED
                self._header(plan_id, header.step_name, concept_ids, terminal)

            log.warning("saga.recovery.finished", status=terminal.value, failures=failures)
            recovered.append(plan_id)

        return recovered

    def _recover_steps(self, plan_id: str, latest: Dict[int, SagaLogEntry], log: Any) -> int:
        failures = 0

        for index in sorted(latest, reverse=True):
            entry = latest[index]
            if entry.status not in (StepStatus.COMMITTED, StepStatus.PENDING):
                continue

            if not self.registry.can_compensate(entry.step_kind, entry.status):
                failures += 1
                log.error("saga.recovery.step_not_compensable", step=entry.step_name, status=entry.status.value)
                self._append(plan_id, index, entry.step_name, entry.step_kind, StepStatus.FAILED, entry.payload)
                continue

            try:
                self.registry.compensate(entry.step_kind, entry.payload)
                self._append(plan_id, index, entry.step_name, entry.step_kind, StepStatus.COMPENSATED, entry.payload)
                touched = entry.payload.get('touches') or [entry.payload.get('concept_id')]
                self.invalidator.invalidate_many(c for c in touched if c)
                log.info("saga.recovery.step_compensated", step=entry.step_name)
            except Exception as e:
                failures += 1
                log.error("saga.recovery.compensation_failed", step=entry.step_name, error=str(e))

        return failures


def _pid_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
