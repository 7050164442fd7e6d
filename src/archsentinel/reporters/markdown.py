from __future__ import annotations

from archsentinel.analytics import Dashboard, FeedbackDocument


def render_feedback_markdown(doc: FeedbackDocument) -> str:
    """The per-agent feedback file handed back to the coding agent."""

    score = doc.score
    lines: list[str] = []
    lines.append(f"# Architecture Feedback for {doc.agent_name}")
    lines.append("")
    lines.append(f"- Generated: {doc.generated_at:%Y-%m-%d %H:%M} UTC")
    lines.append(f"- Period: {doc.period.start:%Y-%m-%d} to {doc.period.end:%Y-%m-%d}")
    lines.append(f"- Learning score: **{score.score:.1f}/100**")
    lines.append(
        f"- Violations: {score.violations_this_period} this week, "
        f"{score.violations_prior_period} the week before ({score.improvement:.1f}% improvement)"
    )
    lines.append("")

    lines.append("## Top Violations This Week")
    lines.append("")
    if not doc.items:
        lines.append("No violations recorded. Keep following the layering rules.")
        lines.append("")
        return "\n".join(lines)

    for rank, item in enumerate(doc.items, start=1):
        t = item.template
        lines.append(f"### {rank}. {item.rule_id} ({item.count} occurrences)")
        lines.append("")
        lines.append(f"**What went wrong**: {t.what_went_wrong}")
        lines.append("")
        lines.append("**Why it matters**:")
        for reason in t.why_it_matters:
            lines.append(f"- {reason}")
        lines.append("")
        if t.correct_pattern:
            lines.append("**Correct pattern**:")
            lines.append("")
            lines.append("```java")
            lines.append(t.correct_pattern.rstrip("\n"))
            lines.append("```")
            lines.append("")
        lines.append(f"**Prevention tip**: {t.prevention_tip}")
        lines.append("")

    if doc.prompt_recommendations:
        lines.append("## Recommended Prompt Updates")
        lines.append("")
        lines.append("Add these rules to the agent's prompt:")
        lines.append("")
        for idx, rule in enumerate(doc.prompt_recommendations, start=1):
            lines.append(f"{idx}. {rule}")
        lines.append("")

    return "\n".join(lines)


def render_dashboard_markdown(dash: Dashboard) -> str:
    lines: list[str] = []
    lines.append("# ArchSentinel learning dashboard")
    lines.append("")
    lines.append(f"- Generated: {dash.generated_at:%Y-%m-%d %H:%M} UTC")
    lines.append(f"- Violations (30 days): {dash.total_violations}")
    lines.append(f"- Auto-fixed: {dash.auto_fixed} ({dash.fix_rate * 100:.1f}%)")
    lines.append(f"- Active agents: {dash.active_agents}")
    lines.append("")

    lines.append("## Agent performance (7 days)")
    lines.append("")
    lines.append("| Agent | Violations | Auto-fixed | Fix rate | Learning score |")
    lines.append("| --- | ---: | ---: | ---: | ---: |")
    for summary, score in zip(dash.agents, dash.scores, strict=True):
        lines.append(
            f"| {_md_escape_cell(summary.agent_name)} | {summary.violations} | {summary.auto_fixed} "
            f"| {summary.fix_rate * 100:.1f}% | {score.score:.1f} |"
        )
    lines.append("")

    lines.append("## Top violation patterns")
    lines.append("")
    lines.append("| Rule | Count | Last seen | Fix rate |")
    lines.append("| --- | ---: | --- | ---: |")
    for p in dash.patterns:
        lines.append(
            f"| `{p.rule_id}` | {p.occurrence_count} | {p.last_seen:%Y-%m-%d} | {p.auto_fix_success_rate * 100:.1f}% |"
        )
    lines.append("")

    lines.append("## Daily trend")
    lines.append("")
    lines.append("| Date | Violations | Auto-fixed |")
    lines.append("| --- | ---: | ---: |")
    for day in dash.trend:
        lines.append(f"| {day.date} | {day.violations} | {day.auto_fixed} |")
    lines.append("")
    return "\n".join(lines)


def _md_escape_cell(text: str) -> str:
    # Markdown tables break on pipes/newlines.
    return text.replace("\\", "\\\\").replace("|", "\\|").replace("\n", " ").strip()
