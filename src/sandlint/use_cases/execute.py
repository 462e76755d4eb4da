"""Execution Coordinator: run the work list against pooled sandboxes."""

import logging
from collections.abc import Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

from sandlint.domain.cancellation import CancellationToken
from sandlint.domain.entities import (
    FailureKind,
    InvocationFailure,
    InvocationOutcome,
    LintRequest,
    WorkItem,
)
from sandlint.domain.errors import (
    DecodeError,
    RunCancelled,
    SandboxFault,
    SandboxTimeout,
    SandboxTrap,
)
from sandlint.domain.protocols import TelemetryPort
from sandlint.domain.rule_set import RuleSet
from sandlint.infrastructure.sandbox.pool import SandboxPool
from sandlint.infrastructure.wire.codec import WireCodec

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class ExecutionOutcome:
    """
    One slot per work item, indexed by ``WorkItem.index``.

    ``None`` marks an item that was never started because the run was
    cancelled.
    """

    outcomes: tuple[InvocationOutcome | None, ...]
    completed: bool = True

    @property
    def skipped(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome is None)


class ExecutionCoordinator:
    """Schedules work items on a thread pool and records typed results."""

    def __init__(
        self,
        pool: SandboxPool,
        codec: WireCodec,
        workers: int,
        default_timeout: float,
        telemetry: TelemetryPort,
    ) -> None:
        self._pool = pool
        self._codec = codec
        self._workers = workers
        self._default_timeout = default_timeout
        self._telemetry = telemetry

    def run(
        self,
        work_list: Sequence[WorkItem],
        source: str,
        rule_set: RuleSet,
        file_path: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> ExecutionOutcome:
        cancel = cancel or CancellationToken()
        slots: list[InvocationOutcome | None] = [None] * len(work_list)
        if not work_list:
            return ExecutionOutcome(outcomes=(), completed=not cancel.cancelled)
        source_length = len(source.encode("utf-8"))

        cut_short = False
        executor = ThreadPoolExecutor(
            max_workers=self._workers, thread_name_prefix="sandlint-worker"
        )
        try:
            pending: set[Future[InvocationOutcome | None]] = {
                executor.submit(
                    self._execute, item, source, source_length, rule_set, file_path, cancel
                )
                for item in work_list
            }
            while pending and not cancel.cancelled:
                done, pending = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                self._collect(done, slots)
            if pending:
                cut_short = True
                self._telemetry.warning(f"Run cancelled: {cancel.reason or 'cancelled'}")
                for future in pending:
                    future.cancel()
                self._drain({f for f in pending if not f.cancelled()}, slots)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        completed = not cut_short and all(slot is not None for slot in slots)
        return ExecutionOutcome(outcomes=tuple(slots), completed=completed)

    def _drain(
        self,
        running: "set[Future[InvocationOutcome | None]]",
        slots: list[InvocationOutcome | None],
    ) -> None:
        """
        Interrupt leased sandboxes until every started call has returned.

        A worker can lease an instance and arm its deadline after an interrupt
        round, so the signal is repeated every poll interval.
        """
        while running:
            interrupted = self._pool.interrupt_in_flight()
            logger.debug("interrupted %d in-flight sandbox call(s)", interrupted)
            done, running = wait(running, timeout=POLL_INTERVAL)
            self._collect(done, slots)

    @staticmethod
    def _collect(
        futures: "Sequence[Future[InvocationOutcome | None]] | set[Future[InvocationOutcome | None]]",
        slots: list[InvocationOutcome | None],
    ) -> None:
        for future in futures:
            outcome = future.result()
            if outcome is not None:
                slots[outcome.item.index] = outcome

    def _execute(
        self,
        item: WorkItem,
        source: str,
        source_length: int,
        rule_set: RuleSet,
        file_path: str | None,
        cancel: CancellationToken,
    ) -> InvocationOutcome | None:
        if cancel.cancelled:
            return None
        module = rule_set.get(item.rule_id)
        manifest = module.manifest
        timeout = (
            manifest.timeout_ms / 1000.0 if manifest.timeout_ms else self._default_timeout
        )
        request = LintRequest(
            node=item.node, config=module.settings.options, source=source, file_path=file_path
        )
        try:
            with self._pool.lease(item.rule_id, cancel) as handle:
                raw = self._codec.lint(handle.instance, request, timeout)
        except RunCancelled:
            return None
        except SandboxFault as exc:
            return self._failure(item, self._failure_kind(exc, cancel), str(exc))

        try:
            response = self._codec.decode_response(raw, manifest, source_length)
        except DecodeError as exc:
            return self._failure(item, FailureKind.DECODE_ERROR, str(exc))
        return InvocationOutcome(item=item, response=response)

    @staticmethod
    def _failure_kind(exc: SandboxFault, cancel: CancellationToken) -> FailureKind:
        """Faults caused by interrupting a cancelled run are reported as cancellations."""
        if cancel.cancelled and isinstance(exc, (SandboxTimeout, SandboxTrap)):
            return FailureKind.CANCELLED
        return FailureKind(exc.kind)

    def _failure(self, item: WorkItem, kind: FailureKind, detail: str) -> InvocationOutcome:
        self._telemetry.debug(
            f"{item.rule_id} failed on {item.node.type.value} "
            f"[{item.node.range.start}, {item.node.range.end}): {kind.value}: {detail}"
        )
        return InvocationOutcome(
            item=item,
            failure=InvocationFailure(
                index=item.index,
                rule_id=item.rule_id,
                node_type=item.node.type,
                node_range=item.node.range,
                kind=kind,
                detail=detail,
            ),
        )
