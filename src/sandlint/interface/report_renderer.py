"""Render a LintReport for the terminal or as JSON."""

import json

from sandlint.domain.report import FixStatus, LintReport


class ReportRenderer:
    """Formats reports. No top-level functions."""

    @staticmethod
    def render_text(report: LintReport) -> list[str]:
        name = report.file_path or "<source>"
        lines: list[str] = []
        for entry in report.diagnostics:
            d = entry.diagnostic
            suffix = ""
            if entry.fix_status is FixStatus.ACCEPTED:
                suffix = " (fixable)"
            elif entry.fix_status is FixStatus.CONFLICT:
                suffix = " (fix conflicts with another fix)"
            lines.append(
                f"{name}:{d.span.start}-{d.span.end}: {d.severity.value}: {d.message} "
                f"[{d.rule_id}]{suffix}"
            )
        for failure in report.failures:
            lines.append(
                f"{name}: rule {failure.rule_id} failed on {failure.node_type.value} "
                f"[{failure.node_range.start}, {failure.node_range.end}): "
                f"{failure.kind.value}: {failure.detail}"
            )
        summary = report.summary()
        status = "complete" if summary.completed else f"incomplete, {report.skipped} skipped"
        lines.append(
            f"{summary.total_diagnostics} diagnostic(s): {summary.errors} error(s), "
            f"{summary.warnings} warning(s), {summary.infos} info, "
            f"{summary.failures} failure(s), {summary.conflicts} fix conflict(s) [{status}]"
        )
        return lines

    @staticmethod
    def render_json(report: LintReport) -> str:
        return json.dumps(report.to_dict(), indent=2, ensure_ascii=False)
