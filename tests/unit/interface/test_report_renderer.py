import json

from sandlint.domain.entities import (
    Diagnostic,
    FailureKind,
    Fix,
    InvocationFailure,
    NodeType,
    Severity,
    Span,
)
from sandlint.domain.report import FixStatus, LintReport, ReportedDiagnostic
from sandlint.interface.report_renderer import ReportRenderer


def _report(**kwargs) -> LintReport:
    warning = Diagnostic(
        rule_id="no-todo",
        message="TODO left in text",
        span=Span(4, 8),
        severity=Severity.WARNING,
        fix=Fix(Span(4, 8), ""),
    )
    info = Diagnostic(rule_id="spelling", message="check spelling", span=Span(10, 12), severity=Severity.INFO)
    failure = InvocationFailure(
        index=0,
        rule_id="slow",
        node_type=NodeType.PARAGRAPH,
        node_range=Span(0, 20),
        kind=FailureKind.TIMEOUT,
        detail="exceeded 50 ms",
    )
    defaults: dict = {
        "diagnostics": (
            ReportedDiagnostic(warning, FixStatus.CONFLICT),
            ReportedDiagnostic(info),
        ),
        "failures": (failure,),
        "file_path": "README.md",
    }
    defaults.update(kwargs)
    return LintReport(**defaults)


class TestRenderText:
    def test_lines_and_summary(self) -> None:
        lines = ReportRenderer.render_text(_report())
        assert lines == [
            "README.md:4-8: warning: TODO left in text [no-todo] (fix conflicts with another fix)",
            "README.md:10-12: info: check spelling [spelling]",
            "README.md: rule slow failed on Paragraph [0, 20): timeout: exceeded 50 ms",
            "2 diagnostic(s): 0 error(s), 1 warning(s), 1 info, 1 failure(s), 1 fix conflict(s) [complete]",
        ]

    def test_incomplete_run_without_path(self) -> None:
        lines = ReportRenderer.render_text(
            LintReport(completed=False, skipped=3)
        )
        assert lines == [
            "0 diagnostic(s): 0 error(s), 0 warning(s), 0 info, 0 failure(s), 0 fix conflict(s) [incomplete, 3 skipped]"
        ]


class TestRenderJson:
    def test_round_trips_through_json(self) -> None:
        data = json.loads(ReportRenderer.render_json(_report(output="fixed")))
        assert data["file_path"] == "README.md"
        assert data["summary"]["conflicts"] == 1
        assert data["conflicts"][0]["rule_id"] == "no-todo"
        assert data["failures"][0]["kind"] == "timeout"
        assert data["output"] == "fixed"
        assert "fingerprint" not in data
