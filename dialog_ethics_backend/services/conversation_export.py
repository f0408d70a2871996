"""
Conversation Export Service

Exports the cutoff-filtered conversation with its analyses.
Supports CSV (spreadsheets), JSON (tooling), and Markdown or PDF reports
(human review). The PDF is the Markdown report laid out with reportlab.
"""

import csv
import json
import re
from datetime import datetime
from io import BytesIO, StringIO
from typing import Any, Dict, List, Optional, Union

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from dialog_ethics_backend.models import Role, Severity
from dialog_ethics_backend.services.conversation_store import ConversationStore

EXPORT_FORMATS = ("csv", "json", "markdown", "pdf")

EXPORT_MEDIA_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
    "markdown": "text/markdown",
    "pdf": "application/pdf",
}

EXPORT_EXTENSIONS = {"csv": "csv", "json": "json", "markdown": "md", "pdf": "pdf"}

REPORT_TITLE = "Conversation Analysis Report"

_HEADING = re.compile(r"^(#{1,3}) (.*)$")
_BOLD_LABEL = re.compile(r"^\*\*(.+?)\*\*\s*(.*)$")
_CELL_SEPARATOR = re.compile(r"(?<!\\)\|")
_DIVIDER_CELL = re.compile(r"^-+$")


def build_export_rows(store: ConversationStore) -> List[Dict[str, Any]]:
    """
    One row per cutoff-filtered message.

    Every registry category gets a `severity_<id>` column and every principle a
    `score_<id>` / `reasoning_<id>` pair, so rows share one stable set of keys.
    """
    rows = []
    for index, message in enumerate(store.filtered_messages()):
        analysis = message.flagging_analysis
        row: Dict[str, Any] = {
            "message_index": index,
            "id": message.id,
            "timestamp": message.created_at.isoformat(),
            "role": message.role.value,
            "content": message.content,
            "flag_categories": "; ".join(flag.category for flag in message.flags),
            "flag_severities": "; ".join(flag.severity.value for flag in message.flags),
            "flag_reasons": "; ".join(flag.reason for flag in message.flags),
        }
        for category_id in store.category_registry.ids():
            severity = message.severity_breakdown.get(category_id, Severity.NONE)
            row[f"severity_{category_id}"] = severity.value
        row["flagging_reasoning"] = analysis.reasoning if analysis else ""
        row["analysis_status"] = analysis.status.value if analysis else ""

        scoring = message.principle_scoring
        for principle in store.principle_registry:
            score = scoring.score_for(principle.id) if scoring else None
            row[f"score_{principle.id}"] = score.score if score else ""
            row[f"reasoning_{principle.id}"] = score.reasoning if score else ""
        rows.append(row)
    return rows


def export_columns(store: ConversationStore) -> List[str]:
    columns = [
        "message_index", "id", "timestamp", "role", "content",
        "flag_categories", "flag_severities", "flag_reasons",
    ]
    columns.extend(f"severity_{category_id}" for category_id in store.category_registry.ids())
    columns.extend(["flagging_reasoning", "analysis_status"])
    for principle in store.principle_registry:
        columns.extend([f"score_{principle.id}", f"reasoning_{principle.id}"])
    return columns


def export_csv(store: ConversationStore) -> str:
    output = StringIO()
    writer = csv.DictWriter(output, fieldnames=export_columns(store))
    writer.writeheader()
    for row in build_export_rows(store):
        writer.writerow(row)
    return output.getvalue()


def export_json(store: ConversationStore, summary: Optional[str] = None) -> str:
    payload = {
        "exportedAt": datetime.now().isoformat(),
        "cutoff": store.cutoff,
        "categorySet": store.category_registry.name,
        "summary": summary,
        "messages": [message.to_dict() for message in store.filtered_messages()],
        "flags": [flag.to_dict() for flag in store.filtered_flags()],
        "visualization": [series.to_dict() for series in store.visualization_series()],
        "rows": build_export_rows(store),
    }
    return json.dumps(payload, indent=2)


def _table_cell(value: Any) -> str:
    return str(value).replace("|", "\\|").replace("\n", " ")


def export_markdown(
    store: ConversationStore,
    summary: Optional[str] = None,
    context: Optional[str] = None,
) -> str:
    """
    Human-readable analysis report

    Format:
    # Conversation Analysis Report
    ## Analysis Summary
    ## Conversation Statistics
    ## Context Information      (only when context was given)
    ## Conversation Messages
    ## Flagged Content Analysis (only when something was flagged)
    ## Principle Scoring Analysis
    """
    messages = store.filtered_messages()
    flags = store.filtered_flags()
    user_count = sum(1 for m in messages if m.role == Role.USER)

    lines = [
        f"# {REPORT_TITLE}",
        "",
        f"**Generated on:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Category set:** {store.category_registry.name}",
        "",
        "## Analysis Summary",
        "",
        summary or "No summary was generated for this export.",
        "",
        "## Conversation Statistics",
        "",
        f"- Total Messages: {len(messages)}",
        f"- User Messages: {user_count}",
        f"- Assistant Messages: {len(messages) - user_count}",
        f"- Flagged Items: {len(flags)}",
        "",
    ]

    if context and context.strip():
        lines.extend(["## Context Information", "", context.strip(), ""])

    lines.extend(["## Conversation Messages", ""])
    for index, message in enumerate(messages, 1):
        lines.extend([
            f"### {index}. {message.role.value.title()} - {message.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            message.content,
            "",
        ])
        if message.flagging_analysis:
            lines.extend([f"**Analysis:** {message.flagging_analysis.reasoning}", ""])

    if flags:
        category_ids = store.category_registry.ids()
        header = ["#", "Analysis"] + [store.category_registry.display_name(c) for c in category_ids]
        lines.extend([
            "## Flagged Content Analysis",
            "",
            "| " + " | ".join(header) + " |",
            "| " + " | ".join("---" for _ in header) + " |",
        ])
        flagged_ids = {flag.message_id for flag in flags}
        for index, message in enumerate(messages, 1):
            if message.id not in flagged_ids:
                continue
            reasoning = message.flagging_analysis.reasoning if message.flagging_analysis else "No analysis"
            cells = [str(index), _table_cell(reasoning)] + [
                message.severity_breakdown.get(c, Severity.NONE).value for c in category_ids
            ]
            lines.append("| " + " | ".join(cells) + " |")
        lines.append("")

    lines.extend(["## Principle Scoring Analysis", ""])
    any_scores = False
    for series in store.visualization_series():
        points = sorted(
            [("User", p) for p in series.user_scores] + [("Assistant", p) for p in series.assistant_scores],
            key=lambda item: item[1].message_index,
        )
        if not points:
            continue
        any_scores = True
        average = sum(p.score for _, p in points) / len(points)
        lines.extend([
            f"### {series.principle_name} (average {average:+.1f})",
            "",
            "| Message | Role | Score | Reasoning |",
            "| --- | --- | --- | --- |",
        ])
        for role_label, point in points:
            lines.append(
                f"| {point.message_index + 1} | {role_label} | {point.score:+d} | {_table_cell(point.reasoning)} |"
            )
        lines.append("")
    if not any_scores:
        lines.extend(["No principle scores are available yet.", ""])

    return "\n".join(lines)


def _pdf_text(value: str) -> str:
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _table_row(line: str) -> List[str]:
    cells = _CELL_SEPARATOR.split(line.strip().strip("|"))
    return [cell.strip().replace("\\|", "|") for cell in cells]


def _page_footer(canvas, doc):
    canvas.saveState()
    width, _ = letter
    page = f"Page {doc.page}"
    canvas.setFont("Helvetica", 8)
    canvas.drawString(0.8 * inch, 0.55 * inch, REPORT_TITLE)
    canvas.drawString(width - 0.8 * inch - stringWidth(page, "Helvetica", 8), 0.55 * inch, page)
    canvas.restoreState()


def export_pdf(
    store: ConversationStore,
    summary: Optional[str] = None,
    context: Optional[str] = None,
) -> bytes:
    """
    The Markdown report as a PDF document.

    Headings, bullet items, bold labels and pipe tables from the Markdown
    become reportlab flowables; every other line is a body paragraph.
    """
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        leftMargin=0.8 * inch,
        rightMargin=0.8 * inch,
        topMargin=0.9 * inch,
        bottomMargin=0.9 * inch,
        title=REPORT_TITLE,
    )
    styles = getSampleStyleSheet()
    body = ParagraphStyle("ReportBody", parent=styles["Normal"], fontSize=10, leading=14)
    cell = ParagraphStyle("ReportCell", parent=body, fontSize=7, leading=9)
    headings = {1: styles["Title"], 2: styles["Heading2"], 3: styles["Heading3"]}

    story = []
    table_rows: List[List[str]] = []

    def flush_table():
        if not table_rows:
            return
        columns = max(len(row) for row in table_rows)
        data = [
            [Paragraph(_pdf_text(value), cell) for value in row + [""] * (columns - len(row))]
            for row in table_rows
        ]
        table = Table(data, colWidths=[doc.width / columns] * columns, repeatRows=1)
        table.setStyle(TableStyle([
            ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
            ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ]))
        story.extend([table, Spacer(1, 8)])
        table_rows.clear()

    for line in export_markdown(store, summary=summary, context=context).split("\n"):
        if line.startswith("|"):
            row = _table_row(line)
            if not all(_DIVIDER_CELL.match(value) for value in row):
                table_rows.append(row)
            continue
        flush_table()

        if not line.strip():
            continue
        heading = _HEADING.match(line)
        label = _BOLD_LABEL.match(line)
        if heading:
            story.append(Paragraph(_pdf_text(heading.group(2)), headings[len(heading.group(1))]))
        elif line.startswith("- "):
            story.append(Paragraph(_pdf_text(line[2:]), body, bulletText="\u2022"))
        elif label:
            story.append(Paragraph(f"<b>{_pdf_text(label.group(1))}</b> {_pdf_text(label.group(2))}", body))
        else:
            story.append(Paragraph(_pdf_text(line), body))
    flush_table()

    doc.build(story, onFirstPage=_page_footer, onLaterPages=_page_footer)
    return buffer.getvalue()


def export_conversation(
    store: ConversationStore,
    format: str = "csv",
    summary: Optional[str] = None,
    context: Optional[str] = None,
) -> Union[str, bytes]:
    if format == "csv":
        return export_csv(store)
    elif format == "json":
        return export_json(store, summary=summary)
    elif format == "markdown":
        return export_markdown(store, summary=summary, context=context)
    elif format == "pdf":
        return export_pdf(store, summary=summary, context=context)
    else:
        raise ValueError(f"Unsupported format: {format}")
