"""Final report of one lint run."""

from dataclasses import dataclass, field
from enum import Enum

from sandlint.domain.entities import Diagnostic, InvocationFailure, Severity
from sandlint.domain.json_value import JsonValue


class FixStatus(Enum):
    """What happened to a diagnostic's proposed fix."""

    NONE = "none"          # diagnostic carries no fix
    ACCEPTED = "accepted"  # fix is part of the conflict-free set
    CONFLICT = "conflict"  # fix overlaps an earlier accepted fix; not applied


@dataclass(frozen=True)
class ReportedDiagnostic:
    diagnostic: Diagnostic
    fix_status: FixStatus = FixStatus.NONE

    @property
    def fix_applied(self) -> bool:
        return self.fix_status is FixStatus.ACCEPTED

    def to_dict(self) -> dict[str, JsonValue]:
        out = self.diagnostic.to_dict()
        out["fix_status"] = self.fix_status.value
        return out


@dataclass(frozen=True)
class RunFingerprint:
    """
    Inputs a persistent result cache would key on.

    The engine computes these but never stores results itself.
    """

    content_hash: str
    config_hash: str
    rule_versions: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, JsonValue]:
        return {
            "content_hash": self.content_hash,
            "config_hash": self.config_hash,
            "rule_versions": dict(self.rule_versions),
        }


@dataclass(frozen=True)
class LintSummary:
    errors: int = 0
    warnings: int = 0
    infos: int = 0
    failures: int = 0
    conflicts: int = 0
    fixes_accepted: int = 0
    completed: bool = True

    @property
    def total_diagnostics(self) -> int:
        return self.errors + self.warnings + self.infos

    def to_dict(self) -> dict[str, JsonValue]:
        return {
            "errors": self.errors,
            "warnings": self.warnings,
            "infos": self.infos,
            "failures": self.failures,
            "conflicts": self.conflicts,
            "fixes_accepted": self.fixes_accepted,
            "completed": self.completed,
        }


@dataclass(frozen=True)
class LintReport:
    """
    Diagnostics, failed invocations and fix conflicts for one document.

    ``diagnostics`` is in presentation order ``(span.start, span.end, rule_id)``.
    ``failures`` is in work-list order. ``output`` holds the rewritten source
    when fixes were requested, else ``None``. ``completed`` is False for a
    cancelled run; ``skipped`` counts work items never started.
    """

    diagnostics: tuple[ReportedDiagnostic, ...] = ()
    failures: tuple[InvocationFailure, ...] = ()
    output: str | None = None
    completed: bool = True
    skipped: int = 0
    file_path: str | None = None
    fingerprint: RunFingerprint | None = field(default=None, compare=False)

    @property
    def conflicts(self) -> tuple[ReportedDiagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.fix_status is FixStatus.CONFLICT)

    @property
    def accepted_fixes(self) -> tuple[ReportedDiagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.fix_status is FixStatus.ACCEPTED)

    def has_errors(self) -> bool:
        """Error-severity diagnostics or failed invocations make a run fail."""
        if self.failures:
            return True
        return any(d.diagnostic.severity is Severity.ERROR for d in self.diagnostics)

    def summary(self) -> LintSummary:
        counts = {severity: 0 for severity in Severity}
        for entry in self.diagnostics:
            counts[entry.diagnostic.severity] += 1
        return LintSummary(
            errors=counts[Severity.ERROR],
            warnings=counts[Severity.WARNING],
            infos=counts[Severity.INFO],
            failures=len(self.failures),
            conflicts=len(self.conflicts),
            fixes_accepted=len(self.accepted_fixes),
            completed=self.completed,
        )

    def to_dict(self) -> dict[str, JsonValue]:
        out: dict[str, JsonValue] = {
            "file_path": self.file_path,
            "completed": self.completed,
            "skipped": self.skipped,
            "summary": self.summary().to_dict(),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "failures": [f.to_dict() for f in self.failures],
            "conflicts": [d.to_dict() for d in self.conflicts],
        }
        if self.output is not None:
            out["output"] = self.output
        if self.fingerprint is not None:
            out["fingerprint"] = self.fingerprint.to_dict()
        return out
