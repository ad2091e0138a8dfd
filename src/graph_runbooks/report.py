from __future__ import annotations

import html
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .normalize.schema import Report, ReportRow, Severity, resolve_output_paths
from .util.serialization import sanitize_for_json

NO_DATA_TEXT = "No records found"

ROW_STYLES = {
    Severity.NOMINAL: "",
    Severity.WARNING: "background-color:#fff3cd;",
    Severity.ERROR: "background-color:#e2e3e5;",
    Severity.CRITICAL: "background-color:#f8d7da;",
}

_DOCUMENT_CSS = (
    "body{font-family:Segoe UI,Arial,sans-serif;font-size:13px;color:#222;}"
    "h1{font-size:18px;margin-bottom:4px;}"
    "p.meta{color:#666;margin-top:0;}"
    "table{border-collapse:collapse;width:100%;}"
    "th,td{border:1px solid #ccc;padding:4px 8px;text-align:left;vertical-align:top;}"
    "th{background-color:#0b5394;color:#fff;}"
    "tr.no-data td{text-align:center;font-style:italic;}"
)


def _html_cell(value: Any) -> str:
    # Escape markup and keep line breaks visible inside the cell.
    text = html.escape(str(value if value is not None else "").strip(), quote=True)
    return text.replace("\n", "<br>")


def _row_html(row: ReportRow) -> str:
    style = ROW_STYLES.get(row.severity, "")
    attrs = f' class="{row.severity.value}"'
    if style:
        attrs += f' style="{style}"'
    cells = "".join(f"<td>{_html_cell(c)}</td>" for c in row.cells)
    return f"<tr{attrs}>{cells}</tr>"


def _html_table(columns: Sequence[str], rows: Sequence[ReportRow]) -> List[str]:
    out: List[str] = ["<table>"]
    out.append("<thead><tr>" + "".join(f"<th>{_html_cell(c)}</th>" for c in columns) + "</tr></thead>")
    out.append("<tbody>")
    if not rows:
        span = max(len(columns), 1)
        out.append(f'<tr class="no-data"><td colspan="{span}">{NO_DATA_TEXT}</td></tr>')
    else:
        for r in rows:
            out.append(_row_html(r))
    out.append("</tbody>")
    out.append("</table>")
    return out


def render_report_html(report: Report) -> str:
    """
    Render a report as a self-contained HTML document (inline CSS, no external
    assets) suitable for both an email body and a file attachment.
    """
    title = _html_cell(report.title)
    lines: List[str] = [
        "<!DOCTYPE html>",
        '<html><head><meta charset="utf-8">',
        f"<title>{title}</title>",
        f"<style>{_DOCUMENT_CSS}</style>",
        "</head><body>",
        f"<h1>{title}</h1>",
        f'<p class="meta">Generated {_html_cell(report.generated_at)}</p>',
    ]
    if report.summary:
        lines.append('<ul class="summary">')
        for key, value in report.summary.items():
            lines.append(f"<li>{_html_cell(key)}: {_html_cell(value)}</li>")
        lines.append("</ul>")
    lines.extend(_html_table(report.columns, report.rows))
    for note in report.notes:
        lines.append(f'<p class="note">{_html_cell(note)}</p>')
    lines.append("</body></html>")
    return "\n".join(lines) + "\n"


def write_report_html(outdir: Path, report: Report, html_text: Optional[str] = None) -> Path:
    paths = resolve_output_paths(outdir)
    paths.root.mkdir(parents=True, exist_ok=True)
    text = html_text if html_text is not None else render_report_html(report)
    paths.report_html.write_text(text, encoding="utf-8")
    return paths.report_html


def write_run_summary(outdir: Path, summary: Dict[str, Any]) -> Path:
    paths = resolve_output_paths(outdir)
    paths.root.mkdir(parents=True, exist_ok=True)
    paths.run_summary_json.write_text(
        json.dumps(sanitize_for_json(summary), sort_keys=True, indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    return paths.run_summary_json
