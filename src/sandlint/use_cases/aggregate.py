"""Diagnostic Aggregator & Fix Resolver."""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import replace

from sandlint.domain.entities import Diagnostic, Fix, InvocationFailure, InvocationOutcome, Severity, Span
from sandlint.domain.report import FixStatus, LintReport, ReportedDiagnostic, RunFingerprint

logger = logging.getLogger(__name__)


class FixResolver:
    """Chooses a conflict-free subset of fixes and applies it in one pass."""

    @staticmethod
    def resolve(diagnostics: Sequence[Diagnostic]) -> list[FixStatus]:
        """
        Status per diagnostic, aligned with ``diagnostics`` (presentation order).

        Candidates are visited by ``(fix.start, fix.end, presentation index)``
        and accepted greedily unless they overlap an already accepted fix.
        The visit order is total, so the same input always gives the same
        partition.
        """
        statuses = [FixStatus.NONE] * len(diagnostics)
        candidates = sorted(
            ((i, d.fix) for i, d in enumerate(diagnostics) if d.fix is not None),
            key=lambda pair: (pair[1].span.start, pair[1].span.end, pair[0]),
        )
        accepted: list[Span] = []
        for i, fix in candidates:
            span = fix.span
            if any(span.overlaps(other) for other in accepted):
                statuses[i] = FixStatus.CONFLICT
            else:
                statuses[i] = FixStatus.ACCEPTED
                accepted.append(span)
        return statuses

    @staticmethod
    def apply(source: str, fixes: Sequence[Fix]) -> str:
        """Rewrite ``source`` with pairwise disjoint fixes, left to right over UTF-8 bytes."""
        data = source.encode("utf-8")
        out = bytearray()
        cursor = 0
        for fix in sorted(fixes, key=lambda f: (f.span.start, f.span.end)):
            if fix.span.start < cursor:
                raise ValueError(
                    f"fix [{fix.span.start}, {fix.span.end}) overlaps a previous fix ending at {cursor}"
                )
            out += data[cursor : fix.span.start]
            out += fix.text.encode("utf-8")
            cursor = fix.span.end
        out += data[cursor:]
        # A span that splits a multi-byte character leaves replacement characters.
        return out.decode("utf-8", errors="replace")


class DiagnosticAggregator:
    """Merges per-invocation outcomes into one ``LintReport``."""

    def __init__(self, resolver: FixResolver | None = None) -> None:
        self._resolver = resolver or FixResolver()

    def aggregate(
        self,
        outcomes: Sequence[InvocationOutcome | None],
        source: str,
        apply_fixes: bool = False,
        completed: bool = True,
        severity_overrides: Mapping[str, Severity] | None = None,
        file_path: str | None = None,
        fingerprint: RunFingerprint | None = None,
    ) -> LintReport:
        """
        ``outcomes`` must be in work-list order; ``None`` slots are skipped items.

        Never re-invokes rules. Fixes that only become valid after another fix
        is applied are the caller's business (re-run on ``report.output``).
        """
        overrides = severity_overrides or {}
        merged: list[Diagnostic] = []
        failures: list[InvocationFailure] = []
        skipped = 0
        for outcome in outcomes:
            if outcome is None:
                skipped += 1
            elif outcome.failure is not None:
                failures.append(outcome.failure)
            elif outcome.response is not None:
                for diagnostic in outcome.response.diagnostics:
                    severity = overrides.get(diagnostic.rule_id)
                    if severity is not None and severity is not diagnostic.severity:
                        diagnostic = replace(diagnostic, severity=severity)
                    merged.append(diagnostic)

        ordered = sorted(merged, key=lambda d: (d.span.start, d.span.end, d.rule_id))
        statuses = self._resolver.resolve(ordered)
        reported = tuple(
            ReportedDiagnostic(diagnostic=d, fix_status=s) for d, s in zip(ordered, statuses)
        )

        output = None
        if apply_fixes:
            accepted = [entry.diagnostic.fix for entry in reported if entry.fix_applied]
            output = self._resolver.apply(source, [fix for fix in accepted if fix is not None])
            logger.debug("applied %d fix(es)", len(accepted))

        return LintReport(
            diagnostics=reported,
            failures=tuple(failures),
            output=output,
            completed=completed,
            skipped=skipped,
            file_path=file_path,
            fingerprint=fingerprint,
        )
