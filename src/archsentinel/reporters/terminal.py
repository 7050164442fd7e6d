from __future__ import annotations

from collections import defaultdict
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from archsentinel import __version__
from archsentinel.analytics import Dashboard, FeedbackDocument
from archsentinel.session import SessionResult, ViolationOutcome

_SEVERITY_ICON = {"CRITICAL": "✖", "HIGH": "✖", "MEDIUM": "⚠", "LOW": "ℹ"}
_SEVERITY_STYLE = {"CRITICAL": "bold red", "HIGH": "red", "MEDIUM": "yellow", "LOW": "dim"}
_SEVERITY_RANK = {"CRITICAL": 0, "HIGH": 1, "MEDIUM": 2, "LOW": 3}
_STATUS_STYLE = {"passed": "bold green", "fixed": "bold cyan", "failed": "bold red"}


def render_session(
    result: SessionResult,
    *,
    project_root: Path,
    console: Console,
    show_details: bool = True,
) -> None:
    header = Text()
    header.append("ArchSentinel ", style="bold")
    header.append(f"v{__version__}", style="dim")
    header.append(f"  {project_root.name}", style="dim")

    console.print(
        Panel(
            header,
            subtitle=f"Checked {result.files_scanned} files",
            border_style="cyan",
        )
    )

    if show_details:
        by_file: dict[str, list[ViolationOutcome]] = defaultdict(list)
        for o in result.outcomes:
            by_file[o.violation.path].append(o)

        for file_path in sorted(by_file):
            console.print(Text(file_path, style="bold"))
            for o in sorted(by_file[file_path], key=_sort_key):
                _print_outcome(console, o)
            console.print()

        if result.diagnostics:
            console.print(Text("Diagnostics", style="bold"))
            for d in result.diagnostics:
                console.print(f"  {d.kind}  {d.path or '-'}  {d.message}", style="dim")
            console.print()

    _print_summary(result, console=console)


def _print_outcome(console: Console, o: ViolationOutcome) -> None:
    v = o.violation
    icon = "✔" if o.fixed else _SEVERITY_ICON.get(v.severity, "•")
    style = "green" if o.fixed else _SEVERITY_STYLE.get(v.severity, "")

    line = Text()
    line.append(f"  {icon} ", style=style)
    line.append(v.rule_id, style="bold")
    line.append(f"  [{v.severity}]", style=style)
    line.append(f"  {v.message}")
    console.print(line)

    if o.fix_description:
        console.print(f"     fix: {o.fix_description}", style="dim")
    console.print(f"     → {o.reason}", style="dim")
    if v.suggestion and not o.fixed:
        console.print(f"     → {v.suggestion}", style="dim")


def _print_summary(result: SessionResult, *, console: Console) -> None:
    console.print(Text("─" * 60, style="dim"))
    console.print(Text(f"Status: {result.status.upper()}", style=_STATUS_STYLE.get(result.status, "bold")))
    console.print(
        Text(
            f"Violations: {result.violations_found}  Auto-fixed: {result.auto_fixed}  "
            f"Duration: {result.duration_ms} ms",
            style="dim",
        )
    )
    console.print(Text(f"Next action: {result.next_action}", style="dim"))
    console.print(Text("─" * 60, style="dim"))


def _sort_key(o: ViolationOutcome) -> tuple[int, str]:
    return _SEVERITY_RANK.get(o.violation.severity, 4), o.violation.rule_id


def render_feedback(doc: FeedbackDocument, *, console: Console) -> None:
    score = doc.score
    console.print(
        Panel(
            Text(f"Agent feedback: {doc.agent_name}", style="bold"),
            subtitle=f"{doc.period.start:%Y-%m-%d} → {doc.period.end:%Y-%m-%d}",
            border_style="cyan",
        )
    )
    console.print(
        Text(
            f"Learning score: {score.score:.1f}/100  "
            f"(this week {score.violations_this_period}, previous week {score.violations_prior_period}, "
            f"improvement {score.improvement:.1f}%)",
            style="bold",
        )
    )
    console.print()

    if not doc.items:
        console.print(Text("No violations recorded in the last 7 days.", style="green"))
        return

    for rank, item in enumerate(doc.items, start=1):
        console.print(Text(f"{rank}. {item.rule_id} ({item.count} occurrences)", style="bold"))
        console.print(f"   {item.template.what_went_wrong}")
        for reason in item.template.why_it_matters:
            console.print(f"   - {reason}", style="dim")
        console.print(f"   Tip: {item.template.prevention_tip}", style="italic")
        console.print()

    if doc.prompt_recommendations:
        console.print(Text("Recommended prompt rules", style="bold"))
        for rule in doc.prompt_recommendations:
            console.print(f"  {rule}")


def render_dashboard(dash: Dashboard, *, console: Console) -> None:
    console.print(
        Panel(
            Text("ArchSentinel learning dashboard", style="bold"),
            subtitle=f"generated {dash.generated_at:%Y-%m-%d %H:%M} UTC",
            border_style="cyan",
        )
    )
    console.print(
        Text(
            f"Last 30 days: {dash.total_violations} violations, {dash.auto_fixed} auto-fixed "
            f"({dash.fix_rate * 100:.1f}%), {dash.active_agents} active agents",
            style="bold",
        )
    )

    agents = Table(title="Agent performance (7 days)", header_style="bold", box=None)
    agents.add_column("Agent")
    agents.add_column("Violations", justify="right")
    agents.add_column("Auto-fixed", justify="right")
    agents.add_column("Fix rate", justify="right")
    agents.add_column("Score", justify="right")
    for summary, score in zip(dash.agents, dash.scores, strict=True):
        agents.add_row(
            summary.agent_name,
            str(summary.violations),
            str(summary.auto_fixed),
            f"{summary.fix_rate * 100:.1f}%",
            f"{score.score:.1f}",
        )
    console.print(agents)

    patterns = Table(title="Top violation patterns", header_style="bold", box=None)
    patterns.add_column("Rule", style="bold")
    patterns.add_column("Count", justify="right")
    patterns.add_column("Last seen")
    patterns.add_column("Fix rate", justify="right")
    for p in dash.patterns:
        patterns.add_row(
            p.rule_id,
            str(p.occurrence_count),
            f"{p.last_seen:%Y-%m-%d}",
            f"{p.auto_fix_success_rate * 100:.1f}%",
        )
    console.print(patterns)

    trend = Table(title="Daily trend (7 days)", header_style="bold", box=None)
    trend.add_column("Date")
    trend.add_column("Violations", justify="right")
    trend.add_column("Auto-fixed", justify="right")
    for day in dash.trend:
        trend.add_row(day.date, str(day.violations), str(day.auto_fixed))
    console.print(trend)
