# ABOUTME: CLI that renders learning-analytics dashboards from an exported data directory.
# ABOUTME: Prints headline metrics with rich and exports full views as JSON plus tables.

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd
import typer
from rich.console import Console
from rich.table import Table

from src.common.errors import AnalyticsError
from src.common.schemas import Identity, QueryFilters
from src.lms_analytics.config import load_config
from src.lms_analytics.export import TABLE_FORMATS, export_view
from src.lms_analytics.service import MetricsService
from src.lms_analytics.store import DirectoryStore

console = Console()
app = typer.Typer(help="Render learning-analytics dashboards for students, courses, instructors, and admins.")

_HEADLINES = {
    "student": ("coursesEnrolled", "coursesCompleted", "completionRate", "averageProgress", "averageQuizScore",
                "totalTimeSpent", "currentStreak", "engagementLevel", "isStruggling"),
    "course": ("totalEnrollments", "newEnrollments", "activeStudents", "completionRate", "averageProgress",
               "averageRating", "revenue", "netRevenue"),
    "instructor": ("totalCourses", "totalStudents", "totalRevenue", "averageCourseRating", "studentCompletionRate",
                   "engagementRate", "strugglingStudents", "inactiveStudents"),
}


def _build_service(data_dir: Path, config: Optional[Path]) -> MetricsService:
    try:
        store = DirectoryStore(data_dir)
        engine_config = load_config(config)
    except (FileNotFoundError, AnalyticsError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    return MetricsService(store, store, engine_config)


def _parse_now(now: Optional[str]) -> Optional[datetime]:
    if now is None:
        return None
    try:
        return pd.Timestamp(now).to_pydatetime()
    except ValueError as exc:
        raise typer.BadParameter(f"Cannot parse timestamp '{now}'", param_hint="--now") from exc


def _query(service, kind, subject_id, time_range, course_id, instructor_id, role, user_id, now):
    identity = Identity(role=role, user_id=user_id or "") if role else None
    try:
        return service.get_metrics(
            kind,
            subject_id,
            time_range,
            QueryFilters(course_id=course_id, instructor_id=instructor_id),
            identity=identity,
            now=_parse_now(now),
        )
    except AnalyticsError as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        service.close()


@app.command()
def metrics(
    kind: str = typer.Argument(..., help="student, course, instructor, or admin."),
    subject_id: str = typer.Argument("platform", help="Subject identifier (ignored for admin)."),
    data_dir: Path = typer.Option(Path("data/lms"), "--data-dir", help="Directory with events/courses/users exports."),
    time_range: str = typer.Option("30days", "--time-range", help="7days, 30days, 90days, or 1year."),
    course_id: Optional[str] = typer.Option(None, "--course-id", help="Restrict to one course."),
    instructor_id: Optional[str] = typer.Option(None, "--instructor-id", help="Restrict admin views to one instructor."),
    role: Optional[str] = typer.Option(None, "--role", help="Caller role for access checks."),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Caller id for access checks."),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluate as of this ISO timestamp."),
    config: Optional[Path] = typer.Option(None, "--config", help="Analytics config YAML."),
    as_json: bool = typer.Option(False, "--json", help="Print the full view as JSON."),
) -> None:
    """
    Print the headline metrics and insights for one subject.
    """
    service = _build_service(data_dir, config)
    view = _query(service, kind, subject_id, time_range, course_id, instructor_id, role, user_id, now)
    payload = view.to_dict()
    if as_json:
        typer.echo(json.dumps(payload, indent=2))
        return

    console.rule(f"[bold blue]{kind.title()} analytics: {subject_id} ({time_range})[/bold blue]")
    table = Table(show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    row_source = payload["overview"] if kind == "admin" else payload
    keys = _HEADLINES.get(kind) or tuple(row_source)
    for key in keys:
        table.add_row(key, str(row_source.get(key)))
    console.print(table)

    for insight in payload.get("insights", []):
        color = {"high": "red", "medium": "yellow"}.get(insight["severity"], "green")
        console.print(f"[{color}]{insight['code']}[/{color}] {insight['message']}")


@app.command()
def export(
    kind: str = typer.Argument(..., help="student, course, instructor, or admin."),
    subject_id: str = typer.Argument("platform", help="Subject identifier (ignored for admin)."),
    data_dir: Path = typer.Option(Path("data/lms"), "--data-dir", help="Directory with events/courses/users exports."),
    output_dir: Path = typer.Option(Path("reports"), "--output-dir", help="Directory to write artifacts."),
    time_range: str = typer.Option("30days", "--time-range", help="7days, 30days, 90days, or 1year."),
    table_format: str = typer.Option("parquet", "--format", help="parquet or csv."),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluate as of this ISO timestamp."),
    config: Optional[Path] = typer.Option(None, "--config", help="Analytics config YAML."),
) -> None:
    """Write the full view as a JSON summary plus tables."""
    if table_format not in TABLE_FORMATS:
        raise typer.BadParameter(f"Expected one of: {', '.join(TABLE_FORMATS)}", param_hint="--format")
    service = _build_service(data_dir, config)
    view = _query(service, kind, subject_id, time_range, None, None, None, None, now)
    written = export_view(view, output_dir, table_format)
    for name, path in written.items():
        typer.echo(f"[report] {name}: {path}")


if __name__ == "__main__":
    app()
