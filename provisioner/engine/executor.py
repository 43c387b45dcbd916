"""
Provisioner - Plan Executor

Applies execution plans against a provider. Independent branches of the
plan run concurrently on a bounded worker pool; an operation starts only
after every operation it depends on has completed and recorded state.
"""

from __future__ import annotations
from collections import defaultdict
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import heapq
import logging
import time

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from provisioner.engine.context import RunContext
from provisioner.engine.planner import record_outputs
from provisioner.engine.references import Reference, lookup_path, render
from provisioner.errors import (
    ProvisionerError,
    ResourceNotFoundError,
    StateCorruptionError,
    TransientProviderError,
    UnresolvedReferenceError,
)
from provisioner.models import (
    OperationResult,
    OperationStatus,
    PlanAction,
    PlanEntry,
    RunStatus,
    RunSummary,
    StateRecord,
    format_address,
)
from provisioner.providers.base import Provider
from provisioner.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """Exception raised when a plan cannot be executed at all."""

    def __init__(self, message: str, run_id: str):
        self.message = message
        self.run_id = run_id
        super().__init__(self.message)


class PlanExecutor:
    """
    Executes plans.

    Responsibilities:
    - Dispatch ready operations to a bounded worker pool
    - Render attributes from the State Store at apply time
    - Retry transient provider errors with exponential backoff
    - Record state right after each confirmed provider call
    - Skip dependents of failed operations, continue independent branches
    - Stop dispatching on cancellation, letting in-flight calls finish

    Error Handling:
    - Each operation is wrapped in try/except
    - A failed operation blocks only its transitive dependents
    - All results are captured regardless of status
    """

    # Extra time the watchdog grants a provider to enforce its own timeout
    WATCHDOG_GRACE_SECONDS = 0.25

    def __init__(
        self,
        provider: Provider,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize executor.

        Args:
            provider: Provider API to apply operations against
            settings: Worker, retry and timeout settings
        """
        self.provider = provider
        self.settings = settings or get_settings()
        self.logger = logging.getLogger(__name__)
        self._progress_callback: Optional[Callable[[str, int, str], None]] = None

    def set_progress_callback(self, callback: Callable[[str, int, str], None]) -> None:
        """
        Set callback for progress updates.

        Args:
            callback: Function(run_id, percent, address)
        """
        self._progress_callback = callback

    def _report_progress(self, run_id: str, percent: int, address: str) -> None:
        """Report progress via callback if set."""
        if self._progress_callback:
            self._progress_callback(run_id, percent, address)

    def execute(self, ctx: RunContext) -> RunSummary:
        """
        Execute the plan of a run.

        Args:
            ctx: Run context holding the plan and State Store

        Returns:
            RunSummary with per-operation results
        """
        if ctx.plan is None:
            raise ExecutionError("Run has no plan", run_id=ctx.run_id)

        plan = ctx.plan
        started_at = datetime.utcnow()
        entries: Dict[str, PlanEntry] = {e.address: e for e in plan.entries}
        position = {e.address: i for i, e in enumerate(plan.entries)}
        results: Dict[str, OperationResult] = {
            e.address: OperationResult(address=e.address, action=e.action)
            for e in plan.entries
        }

        waiting: Dict[str, Set[str]] = {
            e.address: {d for d in e.depends_on if d in entries}
            for e in plan.entries
        }
        dependents: Dict[str, List[str]] = defaultdict(list)
        for address, deps in waiting.items():
            for dep in deps:
                dependents[dep].append(address)

        ready: List[Tuple[int, str]] = [
            (position[a], a) for a, deps in waiting.items() if not deps
        ]
        heapq.heapify(ready)

        self.logger.info(
            f"Starting execution: {ctx.run_id} with {len(entries)} operations "
            f"({self.settings.max_workers} workers)"
        )
        self.provider.connect()

        running: Dict[Future, Tuple[str, float]] = {}
        abandoned = False
        finished = 0
        pool = ThreadPoolExecutor(
            max_workers=self.settings.max_workers,
            thread_name_prefix="provisioner",
        )

        def release(address: str) -> None:
            for dependent in dependents[address]:
                waiting[dependent].discard(address)
                if not waiting[dependent] and results[dependent].status == OperationStatus.PENDING:
                    heapq.heappush(ready, (position[dependent], dependent))

        try:
            while ready or running:
                # Dispatch everything whose dependencies are satisfied
                while ready and not ctx.cancelled and len(running) < self.settings.max_workers:
                    _, address = heapq.heappop(ready)
                    entry = entries[address]

                    if entry.action == PlanAction.NOOP:
                        results[address].status = OperationStatus.COMPLETED
                        results[address].provider_id = entry.provider_id
                        finished += 1
                        release(address)
                        continue

                    results[address].status = OperationStatus.RUNNING
                    self.logger.info(f"Dispatching {entry.action.value}: {address}")
                    future = pool.submit(self._apply_entry, ctx, entry)
                    running[future] = (address, time.monotonic())

                if not running:
                    break

                done, _ = wait(
                    list(running),
                    timeout=self._next_deadline(running),
                    return_when=FIRST_COMPLETED,
                )

                for future in done:
                    address, _ = running.pop(future)
                    try:
                        outcome = future.result()
                    except Exception as e:
                        self.logger.exception(f"Operation error: {address}")
                        outcome = results[address]
                        outcome.status = OperationStatus.FAILED
                        outcome.error_message = str(e)
                        outcome.completed_at = datetime.utcnow()

                    results[address] = outcome
                    finished += 1
                    self._report_progress(
                        ctx.run_id, int(finished / max(len(entries), 1) * 100), address
                    )

                    if outcome.status == OperationStatus.COMPLETED:
                        self.logger.info(f"Operation completed: {entries[address].action.value} {address}")
                        release(address)
                    else:
                        self.logger.error(f"Operation failed: {address} - {outcome.error_message}")
                        self._block_dependents(address, dependents, results)

                if self._expire_overdue(running, results, dependents):
                    abandoned = True
        finally:
            # Abandoned calls keep running in the background and still record state
            pool.shutdown(wait=not abandoned)
            self._cleanup()

        for result in results.values():
            if result.status == OperationStatus.PENDING:
                result.status = (
                    OperationStatus.CANCELLED if ctx.cancelled else OperationStatus.SKIPPED
                )

        summary = self._summarize(ctx, started_at, [results[e.address] for e in plan.entries])
        self._report_progress(ctx.run_id, 100, "Complete")
        self.logger.info(
            f"Execution finished: {ctx.run_id} - {summary.status.value} "
            f"({summary.completed_operations} applied, {summary.failed_operations} failed, "
            f"{summary.skipped_operations} skipped, {summary.cancelled_operations} cancelled)"
        )
        return summary

    # =========================================================================
    # SCHEDULING HELPERS
    # =========================================================================

    def _block_dependents(
        self,
        address: str,
        dependents: Dict[str, List[str]],
        results: Dict[str, OperationResult],
    ) -> None:
        """Mark every transitive dependent of a failed operation as skipped."""
        stack = list(dependents[address])
        while stack:
            dependent = stack.pop()
            result = results[dependent]
            if result.status != OperationStatus.PENDING:
                continue
            result.status = OperationStatus.SKIPPED
            result.blocked_by = address
            result.error_message = f"Skipped: dependency '{address}' failed"
            stack.extend(dependents[dependent])

    def _watchdog_limit(self) -> Optional[float]:
        timeout = self.settings.operation_timeout_seconds
        if timeout is None:
            return None
        return timeout + self.WATCHDOG_GRACE_SECONDS

    def _next_deadline(self, running: Dict[Future, Tuple[str, float]]) -> Optional[float]:
        """Seconds until the oldest in-flight operation becomes overdue."""
        limit = self._watchdog_limit()
        if limit is None:
            return None
        oldest = min(started for _, started in running.values())
        return max(0.01, oldest + limit - time.monotonic())

    def _expire_overdue(
        self,
        running: Dict[Future, Tuple[str, float]],
        results: Dict[str, OperationResult],
        dependents: Dict[str, List[str]],
    ) -> bool:
        """
        Fail operations that exceeded the per-operation timeout.

        Returns:
            True if any in-flight call was abandoned
        """
        limit = self._watchdog_limit()
        if limit is None:
            return False

        abandoned = False
        now = time.monotonic()
        for future, (address, started) in list(running.items()):
            if now - started <= limit:
                continue
            running.pop(future)
            result = results[address]
            result.status = OperationStatus.FAILED
            result.error_message = (
                f"Operation timed out after {self.settings.operation_timeout_seconds}s"
            )
            result.completed_at = datetime.utcnow()
            self.logger.error(f"Operation timed out: {address}")
            self._block_dependents(address, dependents, results)
            future.add_done_callback(
                lambda f, a=address: self.logger.warning(f"Abandoned operation finished late: {a}")
            )
            abandoned = True
        return abandoned

    # =========================================================================
    # OPERATIONS (run on worker threads)
    # =========================================================================

    def _apply_entry(self, ctx: RunContext, entry: PlanEntry) -> OperationResult:
        """
        Apply a single plan entry.

        Args:
            ctx: Run context
            entry: Create, update or delete entry

        Returns:
            OperationResult with execution outcome
        """
        result = OperationResult(
            address=entry.address,
            action=entry.action,
            status=OperationStatus.RUNNING,
            started_at=datetime.utcnow(),
            provider_id=entry.provider_id,
        )

        try:
            if entry.action == PlanAction.CREATE:
                self._create(ctx, entry, result)
            elif entry.action == PlanAction.UPDATE:
                self._update(ctx, entry, result)
            elif entry.action == PlanAction.DELETE:
                self._delete(ctx, entry, result)
            result.status = OperationStatus.COMPLETED
        except ProvisionerError as e:
            result.status = OperationStatus.FAILED
            result.error_message = str(e)

        result.completed_at = datetime.utcnow()
        result.duration_seconds = (result.completed_at - result.started_at).total_seconds()
        return result

    def _create(self, ctx: RunContext, entry: PlanEntry, result: OperationResult) -> None:
        attributes = self._render_for_apply(ctx, entry.address)
        response = self._call_provider(
            result,
            self.provider.create,
            entry.resource_type,
            attributes,
            address=entry.address,
            timeout=self.settings.operation_timeout_seconds,
        )

        now = datetime.utcnow()
        ctx.state.put(
            StateRecord(
                address=entry.address,
                resource_type=entry.resource_type,
                name=entry.name,
                key=entry.key,
                provider_id=response.provider_id,
                attributes=attributes,
                outputs=response.outputs,
                dependencies=ctx.graph.dependencies(entry.address),
                created_at=now,
                updated_at=now,
            )
        )
        result.provider_id = response.provider_id

    def _update(self, ctx: RunContext, entry: PlanEntry, result: OperationResult) -> None:
        prior = ctx.state.get(entry.address)
        if prior is None:
            raise StateCorruptionError(
                f"Planned update of '{entry.address}' but it has no state record"
            )

        attributes = self._render_for_apply(ctx, entry.address)
        response = self._call_provider(
            result,
            self.provider.update,
            entry.resource_type,
            prior.provider_id,
            attributes,
            address=entry.address,
            timeout=self.settings.operation_timeout_seconds,
        )

        ctx.state.put(
            prior.model_copy(
                update={
                    "provider_id": response.provider_id,
                    "attributes": attributes,
                    "outputs": response.outputs,
                    "dependencies": ctx.graph.dependencies(entry.address),
                    "updated_at": datetime.utcnow(),
                }
            )
        )
        result.provider_id = response.provider_id

    def _delete(self, ctx: RunContext, entry: PlanEntry, result: OperationResult) -> None:
        record = ctx.state.get(entry.address)
        if record is None:
            self.logger.warning(f"Nothing to delete, no state record: {entry.address}")
            return

        try:
            self._call_provider(
                result,
                self.provider.delete,
                record.resource_type,
                record.provider_id,
                address=entry.address,
                timeout=self.settings.operation_timeout_seconds,
            )
        except ResourceNotFoundError:
            self.logger.warning(f"Resource already gone: {entry.address} ({record.provider_id})")

        ctx.state.delete(entry.address)

    def _render_for_apply(self, ctx: RunContext, address: str) -> Dict[str, Any]:
        """Render attributes with dependency values read from the State Store."""
        node = ctx.graph.nodes[address]

        def state_value(target: str, ref: Reference) -> Any:
            record = ctx.state.get(target)
            if record is None:
                raise UnresolvedReferenceError(
                    f"Dependency '{target}' of '{address}' has no state record",
                    source=address,
                    target=str(ref),
                )
            return lookup_path(record_outputs(record), ref.path, str(ref))

        def resolve(ref: Reference) -> Any:
            if ref.is_splat:
                keys = ctx.graph.families[ref.family].keys
                return [
                    state_value(format_address(ref.resource_type, ref.name, key), ref)
                    for key in keys
                ]
            return state_value(ref.address, ref)

        return render(node.attributes, resolve)

    def _call_provider(self, result: OperationResult, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Call the provider, retrying transient errors with exponential backoff."""
        retryer = Retrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.retry_backoff_seconds,
                max=self.settings.retry_backoff_max_seconds,
            ),
            before_sleep=self._log_retry,
            reraise=True,
        )

        def attempt() -> Any:
            result.attempts += 1
            return fn(*args, **kwargs)

        return retryer(attempt)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.warning(
            f"Transient provider error (attempt {retry_state.attempt_number}/"
            f"{self.settings.max_attempts}): {error}"
        )

    # =========================================================================
    # SUMMARY
    # =========================================================================

    def _summarize(
        self,
        ctx: RunContext,
        started_at: datetime,
        results: List[OperationResult],
    ) -> RunSummary:
        completed_at = datetime.utcnow()
        summary = RunSummary(
            run_id=ctx.run_id,
            project_name=ctx.project_name,
            status=RunStatus.EXECUTING,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=(completed_at - started_at).total_seconds(),
            total_operations=len(results),
            results=results,
        )

        for r in results:
            if r.status == OperationStatus.COMPLETED:
                if r.action == PlanAction.NOOP:
                    summary.unchanged_operations += 1
                else:
                    summary.completed_operations += 1
            elif r.status == OperationStatus.FAILED:
                summary.failed_operations += 1
                summary.errors.append(f"{r.address}: {r.error_message}")
            elif r.status == OperationStatus.SKIPPED:
                summary.skipped_operations += 1
            elif r.status == OperationStatus.CANCELLED:
                summary.cancelled_operations += 1

        if summary.failed_operations or summary.skipped_operations:
            summary.status = RunStatus.PARTIAL_FAILURE
        elif summary.cancelled_operations:
            summary.status = RunStatus.CANCELLED
        else:
            summary.status = RunStatus.COMPLETED
        return summary

    def _cleanup(self) -> None:
        """Cleanup resources after execution."""
        try:
            self.provider.disconnect()
        except Exception as e:
            self.logger.warning(f"Error disconnecting provider {self.provider.name}: {e}")
        self.logger.debug("Executor cleanup complete")


# Factory function
def create_executor(
    provider: Provider,
    settings: Optional[Settings] = None,
) -> PlanExecutor:
    """
    Create a plan executor instance.

    Args:
        provider: Provider API
        settings: Engine settings

    Returns:
        Configured PlanExecutor
    """
    return PlanExecutor(provider=provider, settings=settings)
