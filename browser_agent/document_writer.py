"""
Tabular document rendering for the generateDocument action.

- "excel": CSV, CRLF line endings, UTF-8 with BOM so spreadsheet apps
  detect the encoding
- "word":  a standalone HTML page with a bordered table
"""

import csv
import html
import io
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .utils.logger import get_logger


logger = get_logger(__name__)


DOC_TYPE_EXCEL = "excel"
DOC_TYPE_WORD = "word"
DEFAULT_FILENAMES = {DOC_TYPE_EXCEL: "export.csv", DOC_TYPE_WORD: "document.html"}
UTF8_BOM = "\ufeff"


def normalize_rows(data: Any) -> List[Dict[str, Any]]:
    """Coerce the LLM's data argument into a list of row dicts."""
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, (list, tuple)):
        return []
    rows = []
    for item in data:
        if isinstance(item, dict):
            rows.append(item)
        elif item is not None:
            rows.append({"value": item})
    return rows


def collect_columns(rows: Sequence[Dict[str, Any]]) -> List[str]:
    """Column names in order of first appearance across all rows."""
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns


def _cell(value: Any) -> str:
    return "" if value is None else str(value)


def render_csv(rows: Sequence[Dict[str, Any]]) -> str:
    """Header row plus one line per row, prefixed with a BOM."""
    columns = collect_columns(rows)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    if columns:
        writer.writerow(columns)
    for row in rows:
        writer.writerow([_cell(row.get(column)) for column in columns])
    return UTF8_BOM + buffer.getvalue()


def render_html(rows: Sequence[Dict[str, Any]], title: str = "Document") -> str:
    columns = collect_columns(rows)
    parts = [
        f'<!DOCTYPE html><html><head><meta charset="UTF-8"><title>{html.escape(title)}</title></head><body>',
        f"<h1>{html.escape(title)}</h1>",
    ]
    if columns:
        parts.append('<table border="1" style="border-collapse: collapse; width: 100%;">')
        parts.append("<tr>" + "".join(f'<th style="padding: 8px;">{html.escape(c)}</th>' for c in columns) + "</tr>")
        for row in rows:
            cells = "".join(
                f'<td style="padding: 8px;">{html.escape(_cell(row.get(c)))}</td>' for c in columns
            )
            parts.append(f"<tr>{cells}</tr>")
        parts.append("</table>")
    parts.append("</body></html>")
    return "".join(parts)


def write_document(
    data: Any,
    doc_type: str = DOC_TYPE_EXCEL,
    filename: Optional[str] = None,
    output_dir: str = "exports",
) -> Dict[str, Any]:
    """
    Render and save a document.

    Args:
        data: List of row dicts (a single dict or scalars are tolerated)
        doc_type: "excel" for CSV, "word" for HTML
        filename: Target file name; defaults per type
        output_dir: Directory the file is written into

    Returns:
        Result dict {success, type, filename, path, item_count, message}
    """
    doc_type = doc_type if doc_type in DEFAULT_FILENAMES else DOC_TYPE_EXCEL
    filename = Path(filename or DEFAULT_FILENAMES[doc_type]).name
    rows = normalize_rows(data)

    content = render_csv(rows) if doc_type == DOC_TYPE_EXCEL else render_html(rows)

    try:
        out_dir = Path(output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / filename
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
    except OSError as e:
        logger.error(f"[DocumentWriter] Failed to write {filename}: {e}")
        return {"success": False, "error": str(e)}

    label = "CSV" if doc_type == DOC_TYPE_EXCEL else "HTML"
    logger.info(f"[DocumentWriter] Wrote {label} {path} ({len(rows)} rows)")
    return {
        "success": True,
        "type": doc_type,
        "filename": filename,
        "path": str(path),
        "item_count": len(rows),
        "message": f"{label} file generated: {filename}",
    }
