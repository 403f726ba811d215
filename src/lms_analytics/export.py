# ABOUTME: Writes an aggregate view as a JSON summary plus one CSV or parquet table per row collection.
# ABOUTME: Produces report artifacts for dashboards and offline analysis.

from __future__ import annotations

import json
import logging
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict

import pandas as pd

from .views import AggregateView, to_jsonable

logger = logging.getLogger(__name__)

TABLE_FORMATS = ("parquet", "csv")


def view_tables(view: AggregateView) -> Dict[str, pd.DataFrame]:
    """One DataFrame per tuple-valued field of the view (and of its nested sections)."""

    tables: Dict[str, pd.DataFrame] = {}
    _collect(view, "", tables)
    return tables


def export_view(view: AggregateView, output_dir: Path, table_format: str = "parquet") -> Dict[str, Path]:
    """
    Export one view.

    Generates artifacts:
    1. ``<kind>_summary.json``: the full camelCase view
    2. ``<kind>_<table>.<format>``: every non-empty row collection as a table

    Returns the written paths keyed by artifact name.
    """

    if table_format not in TABLE_FORMATS:
        raise ValueError(f"Unsupported table format '{table_format}'. Expected one of: {', '.join(TABLE_FORMATS)}.")
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    kind = view.subject_kind

    written: Dict[str, Path] = {}
    summary_path = output_dir / f"{kind}_summary.json"
    summary_path.write_text(json.dumps(view.to_dict(), indent=2), encoding="utf-8")
    written["summary"] = summary_path

    for name, table in view_tables(view).items():
        if table.empty:
            continue
        path = output_dir / f"{kind}_{name}.{table_format}"
        if table_format == "csv":
            table.to_csv(path, index=False)
        else:
            table.to_parquet(path, index=False)
        written[name] = path

    logger.info("Exported %s view to %s (%d artifacts)", kind, output_dir, len(written))
    return written


def _collect(obj: Any, prefix: str, tables: Dict[str, pd.DataFrame]) -> None:
    for f in fields(obj):
        value = getattr(obj, f.name)
        name = f"{prefix}{f.name}"
        if isinstance(value, tuple) and value and not isinstance(value[0], str):
            tables[name] = pd.DataFrame([_flat_row(to_jsonable(item)) for item in value])
        elif hasattr(value, "__dataclass_fields__"):
            _collect(value, f"{name}_", tables)


def _flat_row(row: Dict[str, Any]) -> Dict[str, Any]:
    flat = {}
    for key, value in row.items():
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            flat[key] = "; ".join(value)
        elif isinstance(value, (list, dict)):
            flat[key] = json.dumps(value)
        else:
            flat[key] = value
    return flat
