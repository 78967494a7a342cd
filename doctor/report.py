"""Deterministic Markdown renderer for coordinated reports.

Output depends only on the report: same report, same text.
"""

from __future__ import annotations

from typing import List

from doctor.core.models import CoordinatedReport, Diagnosis, ExpertOutcome


def _render_diagnosis(d: Diagnosis, lines: List[str]) -> None:
    for issue in d.criticals + d.warnings + d.issues:
        where = f" [{issue.node}]" if issue.node else ""
        lines.append(f"- **{issue.severity}** `{issue.category}`{where}: {issue.message}")
    for ins in d.insights:
        lines.append(f"- _insight_ `{ins.category}`: {ins.message}")


def _render_outcome(name: str, o: ExpertOutcome, lines: List[str]) -> None:
    if o.health is not None:
        head = f"{o.health.score}/100 {o.health.level} ({o.health.status})"
    else:
        head = o.contribution.replace("_", " ")
    lines.append(f"### {name} ({o.tool}): {head}")
    lines.append("")
    if o.error:
        lines.append(f"- degraded: {o.error}")
    elif o.diagnosis.status == "not_applicable":
        lines.append(f"- not applicable: {o.diagnosis.summary}")
    else:
        lines.append(o.diagnosis.summary)
        lines.append("")
        _render_diagnosis(o.diagnosis, lines)
    lines.append("")


def render_report(report: CoordinatedReport) -> str:
    agg = report.aggregate
    overall = f"{agg.score}/100 {agg.level} ({agg.status})" if agg else "unknown (no successful analyses)"
    lines: List[str] = [
        "# StarRocks diagnosis",
        "",
        f"- Generated: {report.created_at.strftime('%Y-%m-%d %H:%M:%SZ')}",
        f"- Scope: {', '.join(report.scope)}",
        f"- Overall: {overall}",
        "",
        "## Experts",
        "",
    ]
    for name, o in report.outcomes.items():
        _render_outcome(name, o, lines)

    if report.correlations:
        lines += ["## Cross-module findings", ""]
        for c in report.correlations:
            lines.append(f"- **{c.impact_level}** `{c.rule_name}` ({', '.join(c.affected_experts)}): {c.explanation}")
        lines.append("")

    if report.recommendations:
        lines += ["## Recommendations", ""]
        for r in report.recommendations:
            tag = " (cross-module)" if r.is_cross_module else ""
            lines.append(f"{r.execution_order}. [{r.priority}] {r.title}{tag}")
            for a in r.actions:
                lines.append(f"   - {a}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"
