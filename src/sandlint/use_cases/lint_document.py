"""Use Case: Lint Document - dispatch, execute and aggregate one run."""

import hashlib

from sandlint.domain.cancellation import CancellationToken
from sandlint.domain.config import EngineConfig
from sandlint.domain.entities import Node
from sandlint.domain.protocols import TelemetryPort
from sandlint.domain.report import LintReport, RunFingerprint
from sandlint.domain.rule_set import RuleSet
from sandlint.infrastructure.sandbox.pool import SandboxPool
from sandlint.infrastructure.wire.codec import WireCodec
from sandlint.use_cases.aggregate import DiagnosticAggregator
from sandlint.use_cases.dispatch import NodeDispatcher
from sandlint.use_cases.execute import ExecutionCoordinator


class LintDocumentUseCase:
    """Run every loaded rule over one parsed document."""

    def __init__(
        self,
        rule_set: RuleSet,
        config: EngineConfig,
        codec: WireCodec,
        telemetry: TelemetryPort,
        aggregator: DiagnosticAggregator | None = None,
    ) -> None:
        self.rule_set = rule_set
        self.config = config
        self.codec = codec
        self.telemetry = telemetry
        self.aggregator = aggregator or DiagnosticAggregator()

    def execute(
        self,
        root: Node,
        source: str,
        file_path: str | None = None,
        apply_fixes: bool | None = None,
        cancel: CancellationToken | None = None,
    ) -> LintReport:
        """
        Lint ``source`` whose parse tree is ``root``.

        Configuration problems (bad options, malformed tree) raise before any
        rule runs. Per-invocation failures are reported, never raised.

        Args:
            root: Parsed document tree.
            source: Full document text the tree was parsed from.
            file_path: Passed through to rules and the report.
            apply_fixes: Override ``EngineConfig.apply_fixes`` for this run.
            cancel: Run-level cancellation token.
        """
        self.rule_set.validate()
        encoded = source.encode("utf-8")
        work_list = NodeDispatcher(self.rule_set.manifests).build_work_list(root, len(encoded))
        self.telemetry.step(
            f"Dispatching {len(work_list)} invocation(s) across {len(self.rule_set)} rule(s)"
        )

        with SandboxPool(self.rule_set.factories, self.config.instances_per_rule) as pool:
            coordinator = ExecutionCoordinator(
                pool=pool,
                codec=self.codec,
                workers=self.config.workers,
                default_timeout=self.config.default_timeout,
                telemetry=self.telemetry,
            )
            execution = coordinator.run(work_list, source, self.rule_set, file_path, cancel)

        fingerprint = RunFingerprint(
            content_hash=hashlib.sha256(encoded).hexdigest(),
            config_hash=self.config.fingerprint(),
            rule_versions=self.rule_set.rule_versions(),
        )
        report = self.aggregator.aggregate(
            execution.outcomes,
            source,
            apply_fixes=self.config.apply_fixes if apply_fixes is None else apply_fixes,
            completed=execution.completed,
            severity_overrides=self.rule_set.severity_overrides,
            file_path=file_path,
            fingerprint=fingerprint,
        )
        if report.failures:
            self.telemetry.warning(f"{len(report.failures)} rule invocation(s) failed")
        if not report.completed:
            self.telemetry.warning(f"Run incomplete: {report.skipped} invocation(s) not started")
        return report
