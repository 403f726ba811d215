# ABOUTME: Tests exporting aggregate views to a JSON summary plus CSV or parquet tables.
# ABOUTME: Nested sections and row collections each become their own table.

import json

import pandas as pd
import pytest

from src.lms_analytics.export import export_view, view_tables


def test_course_export_writes_summary_and_tables(service, tmp_path):
    view = service.get_metrics("course", "C1", "30days")
    written = export_view(view, tmp_path / "out", table_format="csv")

    summary = json.loads(written["summary"].read_text(encoding="utf-8"))
    assert summary["subjectKind"] == "course"
    assert summary["courseId"] == "C1"
    assert summary["ratingDistribution"]["5"] == 1

    trend = pd.read_csv(written["enrollment_trend"])
    assert len(trend) == 30
    assert {"date", "enrollments", "dropouts"} <= set(trend.columns)
    lessons = pd.read_csv(written["struggling_areas"])
    assert list(lessons["lessonId"]) == ["L3"]


def test_admin_tables_include_nested_sections(service, tmp_path):
    view = service.get_metrics("admin", "platform", "30days")
    tables = view_tables(view)
    assert "revenue_analytics_monthly_revenue" in tables
    assert "instructor_rankings" in tables

    written = export_view(view, tmp_path)
    frame = pd.read_parquet(written["course_performance"])
    assert list(frame["courseId"]) == ["C1", "C3", "C2"]


def test_list_fields_are_flattened(service):
    view = service.get_metrics("instructor", "I1", "30days")
    students = view_tables(view)["students"].set_index("studentId")
    assert "Lesson L3" in students.loc["S2", "strugglingReasons"]
    assert students.loc["S1", "strugglingReasons"] == ""


def test_unknown_format_rejected(service, tmp_path):
    view = service.get_metrics("course", "C1", "7days")
    with pytest.raises(ValueError):
        export_view(view, tmp_path, table_format="xlsx")
