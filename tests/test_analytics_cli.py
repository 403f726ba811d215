# ABOUTME: Verifies the analytics report CLI exposes metrics and export commands.
# ABOUTME: Runs both commands against a directory-backed store built from the sample records.

import json

from typer.testing import CliRunner

from scripts import analytics_report

runner = CliRunner()


def test_cli_has_metrics_and_export_commands():
    app = analytics_report.app
    command_names = {cmd.name or cmd.callback.__name__ for cmd in app.registered_commands}
    assert {"metrics", "export"} <= command_names


def test_metrics_json_for_course(data_dir):
    result = runner.invoke(
        analytics_report.app,
        ["metrics", "course", "C1", "--data-dir", str(data_dir), "--now", "2024-03-15T12:00:00Z", "--json"],
    )
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["subjectKind"] == "course"
    assert payload["totalEnrollments"] == 2
    assert payload["revenue"] == 100.0


def test_metrics_table_for_admin(data_dir):
    result = runner.invoke(
        analytics_report.app,
        ["metrics", "admin", "--data-dir", str(data_dir), "--now", "2024-03-15T12:00:00Z"],
    )
    assert result.exit_code == 0, result.output
    assert "totalCourses" in result.output


def test_access_denied_exits_nonzero(data_dir):
    result = runner.invoke(
        analytics_report.app,
        ["metrics", "student", "S1", "--data-dir", str(data_dir), "--role", "student", "--user-id", "S2"],
    )
    assert result.exit_code == 1
    assert "AccessDenied" in result.output


def test_invalid_range_exits_nonzero(data_dir):
    result = runner.invoke(
        analytics_report.app,
        ["metrics", "student", "S1", "--data-dir", str(data_dir), "--time-range", "2weeks"],
    )
    assert result.exit_code == 1
    assert "InvalidRange" in result.output


def test_export_writes_artifacts(data_dir, tmp_path):
    out = tmp_path / "reports"
    result = runner.invoke(
        analytics_report.app,
        ["export", "student", "S1", "--data-dir", str(data_dir), "--output-dir", str(out),
         "--format", "csv", "--now", "2024-03-15T12:00:00Z"],
    )
    assert result.exit_code == 0, result.output
    assert "[report] summary" in result.output
    assert (out / "student_summary.json").exists()
    assert (out / "student_course_progress.csv").exists()
