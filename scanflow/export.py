from __future__ import annotations

import csv
import io
import json
import logging
from pathlib import Path
from typing import Any, Iterable, List, Sequence

import pandas as pd

from .file_queue import FileStatus, ScannedFile
from .schema import Region, dedupe_names

logger = logging.getLogger(__name__)

META_COLUMNS = ("document_name", "status", "sync_status", "error")


def project_rows(
    files: Iterable[ScannedFile],
    regions: Sequence[Region],
    *,
    placeholder: str = "",
) -> List[List[str]]:
    """
    One row per completed file, one column per region in registry order.

    Fields missing from a file's data (e.g. a region added after it ran) get
    the placeholder.
    """
    names = [r.name for r in regions]
    rows: List[List[str]] = []
    for f in files:
        if f.status is not FileStatus.COMPLETED or f.extracted_data is None:
            continue
        rows.append([f.extracted_data.get(name) or placeholder for name in names])
    return rows


def _completed(files: Iterable[ScannedFile]) -> List[ScannedFile]:
    return [f for f in files if f.status is FileStatus.COMPLETED and f.extracted_data is not None]


def to_csv(files: Iterable[ScannedFile], regions: Sequence[Region]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow([r.name for r in regions])
    writer.writerows(project_rows(files, regions))
    return buffer.getvalue()


def to_json(files: Iterable[ScannedFile]) -> str:
    data = [{"fileName": f.name, "data": f.extracted_data} for f in _completed(files)]
    return json.dumps(data, indent=2, ensure_ascii=False)


def to_markdown(files: Iterable[ScannedFile], regions: Sequence[Region]) -> str:
    headers = [r.name for r in regions]
    lines = [
        "# OCR Extraction Report",
        "",
        f"| File Name | {' | '.join(headers)} |",
        f"| :--- | {'|'.join(' :--- ' for _ in headers)} |",
    ]
    completed = _completed(files)
    for f, row in zip(completed, project_rows(completed, regions, placeholder="-")):
        cells = [cell.replace("|", "\\|") for cell in row]
        lines.append(f"| {f.name} | {' | '.join(cells)} |")
    return "\n".join(lines) + "\n"


def to_dataframe(files: Iterable[ScannedFile], regions: Sequence[Region]) -> pd.DataFrame:
    """
    Flatten every file (not only completed ones) into a DataFrame.

    Columns: document_name, status, sync_status, error, <fields...>. A field
    whose name clashes with a metadata column is suffixed, e.g. "status (2)".
    """
    names = [r.name for r in regions]
    columns = dedupe_names([*META_COLUMNS, *names])[len(META_COLUMNS):]
    rows: List[dict[str, Any]] = []
    for f in files:
        row: dict[str, Any] = {
            "document_name": f.name,
            "status": f.status.value,
            "sync_status": f.sync_status.value,
            "error": f.error,
        }
        data = f.extracted_data or {}
        for name, column in zip(names, columns):
            row[column] = data.get(name)
        rows.append(row)
    return pd.DataFrame(rows, columns=[*META_COLUMNS, *columns])


def to_excel(files: Iterable[ScannedFile], regions: Sequence[Region], output_path: Path) -> None:
    """
    Write results to an Excel file with sheet 'extractions'.
    """
    df = to_dataframe(files, regions)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Writing results to %s", output_path)
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name="extractions", index=False)


EXPORT_FORMATS = ("xlsx", "csv", "json", "md")


def write_export(
    files: Iterable[ScannedFile], regions: Sequence[Region], output_path: Path, fmt: str
) -> Path:
    files = list(files)
    if fmt == "xlsx":
        to_excel(files, regions, output_path)
        return output_path
    if fmt == "csv":
        text = to_csv(files, regions)
    elif fmt == "json":
        text = to_json(files)
    elif fmt == "md":
        text = to_markdown(files, regions)
    else:
        raise ValueError(f"Unsupported export format: {fmt}")
    output_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Writing results to %s", output_path)
    output_path.write_text(text, encoding="utf-8")
    return output_path
