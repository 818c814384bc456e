"""Rich rendering of goal reports, skills and memory status."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from colony.memory.records import Skill
from colony.orchestrator import GoalReport

console = Console()

_STATUS_STYLE = {
    "done": "green",
    "succeeded": "green",
    "completed": "green",
    "partial": "yellow",
    "running": "cyan",
    "failed": "red",
    "aborted": "red",
    "cancelled": "magenta",
}


def _styled(value: str) -> str:
    style = _STATUS_STYLE.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def goal_table(report: GoalReport) -> Table:
    """Per-task rows for one goal."""
    table = Table(title=f"Goal {report.goal_id[:8]}")
    table.add_column("Task", style="cyan")
    table.add_column("Specialization")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Skill", style="dim")

    for task in report.tasks:
        table.add_row(
            task["id"][:8],
            task["specialization"],
            _styled(task["status"]),
            str(task["attempts"]),
            task.get("skill") or "",
        )
    return table


def goal_summary(report: GoalReport) -> str:
    """One-line status, retries and task counts of a goal."""
    session = report.session_status.value if report.session_status else "-"
    counts = ", ".join(f"{k}={v}" for k, v in report.counts.items() if v)
    return (
        f"goal {_styled(report.status.value)} | session {_styled(session)} | "
        f"retries {report.retries} | {counts or 'no tasks finished'}"
    )


def skills_table(skills: list[Skill]) -> Table:
    table = Table(title="Skills")
    table.add_column("Name", style="cyan")
    table.add_column("Success", justify="right", style="green")
    table.add_column("Uses", justify="right")
    table.add_column("Evidence", justify="right")
    table.add_column("Version", justify="right", style="dim")
    table.add_column("Status")

    for skill in skills:
        status = skill.status.value
        if skill.merged_into:
            status = f"merged → {skill.merged_into}"
        table.add_row(
            skill.name,
            f"{skill.success_rate:.0%}",
            str(skill.usage_count),
            str(len(skill.provenance)),
            f"v{skill.version}",
            status,
        )
    return table


def stats_table(stats: dict[str, int]) -> Table:
    table = Table(title="Colony Memory")
    table.add_column("Layer", style="cyan")
    table.add_column("Records", style="green", justify="right")
    for layer, count in stats.items():
        table.add_row(layer, str(count))
    return table


def render_goal(report: GoalReport, out: Console | None = None) -> None:
    out = out or console
    out.print(goal_table(report))
    out.print(goal_summary(report))
    if report.failure:
        out.print(f"[red]Failure:[/red] {escape(str(report.failure))}")


def render_skills(skills: list[Skill], out: Console | None = None) -> None:
    if not skills:
        (out or console).print("[dim]No skills promoted yet.[/dim]")
        return
    (out or console).print(skills_table(skills))
