#!/usr/bin/env python3
"""
CourtRoom Report Generator
===========================
Turns message snapshots into shareable session reports.

Outputs:
  1. HTML report (pure, all user text escaped)
  2. PDF session report (reportlab)
  3. Remote HTML report via the hosted renderer function

Usage:
    from courtroom_docs import render_report_html, render_report_pdf
    html = render_report_html(messages, theme="dark")
    pdf_bytes = render_report_pdf(messages)

Version: 1.0 — October 2026
"""

from __future__ import annotations

import html
import io
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
from reportlab.lib.colors import HexColor
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import (
    HRFlowable, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle,
)

from courtroom_types import Message, Severity, Theme, UpstreamError

logger = logging.getLogger("courtroom-docs")

DEFAULT_TITLE = "CourtRoom Messages"
DEFAULT_HEADING = "CourtRoom Session Report"
LEVELS = [s.value for s in Severity]


# ── Brand Colors ──
ACCENT       = HexColor("#2563eb")
TEXT_DARK    = HexColor("#1a1a1a")
TEXT_LIGHT   = HexColor("#6e7681")
BORDER       = HexColor("#d0d7de")
LEVEL_COLORS = {
    "info": HexColor("#3b82f6"),
    "warning": HexColor("#f59e0b"),
    "urgent": HexColor("#ef4444"),
}


# ============================================================================
# SNAPSHOT NORMALIZATION
# ============================================================================

def _snapshot(item: Any) -> Dict[str, Any]:
    if isinstance(item, Message):
        return item.to_dict()
    if hasattr(item, "model_dump"):
        return item.model_dump(by_alias=True)
    return dict(item)


def _level(snap: Dict[str, Any]) -> str:
    level = str(snap.get("level") or "info").lower()
    return level if level in LEVELS else "info"


def _format_timestamp(raw: Any) -> str:
    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        # Epoch milliseconds, as the widget records them.
        try:
            ts = datetime.fromtimestamp(raw / 1000, timezone.utc)
        except (OverflowError, OSError, ValueError):
            return "Just now"
    elif raw:
        try:
            ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            return "Just now"
    else:
        return "Just now"
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%d %H:%M:%S UTC")


def count_by_level(snapshots: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    counts = {level: 0 for level in LEVELS}
    for snap in snapshots:
        counts[_level(snap)] += 1
    return counts


# ============================================================================
# HTML REPORT
# ============================================================================

def _styles(dark: bool) -> str:
    bg, fg = ("#1a1a1a", "#e0e0e0") if dark else ("#f5f5f5", "#333")
    panel = "#2a2a2a" if dark else "white"
    card = "#363636" if dark else "#f9f9f9"
    stat = "#363636" if dark else "#f0f7ff"
    accent = "#4a9eff" if dark else "#2563eb"
    muted = "#888" if dark else "#666"
    rule = "#444" if dark else "#e0e0e0"
    return f"""
    body {{ font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; margin: 0;
           padding: 20px; background: {bg}; color: {fg}; line-height: 1.6; }}
    .container {{ max-width: 1200px; margin: 0 auto; background: {panel};
                 padding: 30px; border-radius: 12px; }}
    h1 {{ color: {accent}; border-bottom: 3px solid {accent}; padding-bottom: 15px; margin-top: 0; }}
    .timestamp, .message-time, .stat-label, .no-messages, .footer {{ color: {muted}; }}
    .stats {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(200px, 1fr));
             gap: 15px; margin-bottom: 30px; }}
    .stat-card {{ background: {stat}; padding: 20px; border-radius: 8px; text-align: center; }}
    .stat-value {{ font-size: 32px; font-weight: 700; color: {accent}; }}
    .message {{ background: {card}; padding: 15px 20px; margin-bottom: 15px;
               border-radius: 8px; border-left: 4px solid {accent}; }}
    .message-header {{ display: flex; justify-content: space-between; align-items: center; }}
    .message-from {{ font-weight: 600; color: {accent}; text-transform: capitalize; }}
    .message-level {{ padding: 4px 10px; border-radius: 4px; font-size: 12px;
                     font-weight: 600; text-transform: uppercase; color: white; }}
    .level-info {{ background: #3b82f6; }}
    .level-warning {{ background: #f59e0b; }}
    .level-urgent {{ background: #ef4444; }}
    .resolved {{ opacity: 0.6; }}
    .no-messages {{ text-align: center; padding: 50px 20px; font-style: italic; }}
    .footer {{ margin-top: 40px; padding-top: 20px; border-top: 1px solid {rule};
              text-align: center; font-size: 14px; }}
    """


def _message_html(snap: Dict[str, Any]) -> str:
    level = _level(snap)
    sender = html.escape(str(snap.get("from") or "System"), quote=True)
    text = html.escape(str(snap.get("text") or ""), quote=True)
    classes = "message resolved" if snap.get("resolved") else "message"
    return (
        f'<div class="{classes}">'
        f'<div class="message-header">'
        f'<span class="message-from">{sender}</span>'
        f'<span class="message-level level-{level}">{level}</span>'
        f"</div>"
        f'<div class="message-text">{text}</div>'
        f'<div class="message-time">{_format_timestamp(snap.get("timestamp"))}</div>'
        f"</div>"
    )


def render_report_html(
    messages: Iterable[Any],
    theme: str = "light",
    title: str = DEFAULT_TITLE,
    heading: str = DEFAULT_HEADING,
    generated_at: Optional[datetime] = None,
) -> str:
    """
    Render a standalone HTML report for a list of message snapshots.

    Snapshots may be Message objects or dicts with ``text``, ``from``,
    ``level`` and ``timestamp``. Unknown themes fall back to light, unknown
    levels to info. No state is kept between calls.
    """
    snaps = [_snapshot(m) for m in messages]
    theme_value = theme if theme in (Theme.LIGHT.value, Theme.DARK.value) else Theme.LIGHT.value
    generated = _format_timestamp(generated_at or datetime.now(timezone.utc))
    counts = count_by_level(snaps)

    if snaps:
        body = "".join(_message_html(s) for s in snaps)
    else:
        body = '<div class="no-messages">No messages to display</div>'

    stats = "".join(
        f'<div class="stat-card"><div class="stat-value">{value}</div>'
        f'<div class="stat-label">{label}</div></div>'
        for value, label in (
            (len(snaps), "Total Messages"),
            (counts["info"], "Info"),
            (counts["warning"], "Warnings"),
            (counts["urgent"], "Urgent"),
        )
    )

    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '  <meta charset="UTF-8">\n'
        '  <meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
        f"  <title>{html.escape(title, quote=True)}</title>\n"
        f"  <style>{_styles(theme_value == Theme.DARK.value)}</style>\n"
        "</head>\n"
        "<body>\n"
        '  <div class="container">\n'
        f"    <h1>{html.escape(heading, quote=True)}</h1>\n"
        f'    <div class="timestamp">Generated: {generated}</div>\n'
        f'    <div class="stats">{stats}</div>\n'
        f'    <div class="messages">{body}</div>\n'
        '    <div class="footer">\n'
        f"      <p>Theme: {theme_value} | Total Messages: {len(snaps)}</p>\n"
        "    </div>\n"
        "  </div>\n"
        "</body>\n"
        "</html>"
    )


# ============================================================================
# PDF REPORT
# ============================================================================

def _build_styles():
    """Paragraph styles for the PDF session report."""
    base = getSampleStyleSheet()
    return {
        "brand": ParagraphStyle(
            "brand",
            parent=base["Normal"],
            fontName="Helvetica-Bold",
            fontSize=18,
            textColor=ACCENT,
            leading=22,
            spaceAfter=6,
        ),
        "tagline": ParagraphStyle(
            "tagline",
            parent=base["Normal"],
            fontName="Helvetica",
            fontSize=8,
            textColor=TEXT_LIGHT,
            leading=10,
            spaceAfter=16,
        ),
        "cell": ParagraphStyle(
            "cell",
            parent=base["Normal"],
            fontName="Helvetica",
            fontSize=9,
            textColor=TEXT_DARK,
            leading=12,
        ),
        "cell_bold": ParagraphStyle(
            "cell_bold",
            parent=base["Normal"],
            fontName="Helvetica-Bold",
            fontSize=9,
            textColor=TEXT_DARK,
            leading=12,
        ),
        "empty": ParagraphStyle(
            "empty",
            parent=base["Normal"],
            fontName="Helvetica-Oblique",
            fontSize=11,
            textColor=TEXT_LIGHT,
            alignment=TA_CENTER,
            spaceBefore=24,
        ),
        "footer": ParagraphStyle(
            "footer",
            parent=base["Normal"],
            fontName="Helvetica",
            fontSize=8,
            textColor=TEXT_LIGHT,
            alignment=TA_CENTER,
        ),
    }


def _summary_table(styles, snaps: List[Dict[str, Any]]) -> Table:
    counts = count_by_level(snaps)
    resolved = sum(1 for s in snaps if s.get("resolved"))
    row = [
        Paragraph(f"Total: <b>{len(snaps)}</b>", styles["cell"]),
        Paragraph(f"Info: <b>{counts['info']}</b>", styles["cell"]),
        Paragraph(f"Warning: <b>{counts['warning']}</b>", styles["cell"]),
        Paragraph(f"Urgent: <b>{counts['urgent']}</b>", styles["cell"]),
        Paragraph(f"Resolved: <b>{resolved}</b>", styles["cell"]),
    ]
    table = Table([row], colWidths=[1.4 * inch] * 5)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, -1), HexColor("#f6f8fa")),
        ("BOX", (0, 0), (-1, -1), 0.5, BORDER),
        ("INNERGRID", (0, 0), (-1, -1), 0.5, BORDER),
        ("TOPPADDING", (0, 0), (-1, -1), 6),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
    ]))
    return table


def _message_table(styles, snaps: List[Dict[str, Any]]) -> Table:
    rows = [[
        Paragraph("From", styles["cell_bold"]),
        Paragraph("Message", styles["cell_bold"]),
        Paragraph("Level", styles["cell_bold"]),
        Paragraph("Time", styles["cell_bold"]),
        Paragraph("Resolved", styles["cell_bold"]),
    ]]
    level_styles = []
    for i, snap in enumerate(snaps, start=1):
        level = _level(snap)
        # Paragraph parses a markup subset, so user text is escaped here too.
        rows.append([
            Paragraph(html.escape(str(snap.get("from") or "System")), styles["cell"]),
            Paragraph(html.escape(str(snap.get("text") or "")), styles["cell"]),
            Paragraph(level.upper(), styles["cell_bold"]),
            Paragraph(_format_timestamp(snap.get("timestamp")), styles["cell"]),
            Paragraph("yes" if snap.get("resolved") else "no", styles["cell"]),
        ])
        level_styles.append(("TEXTCOLOR", (2, i), (2, i), LEVEL_COLORS[level]))

    table = Table(
        rows,
        colWidths=[0.9 * inch, 3.0 * inch, 0.8 * inch, 1.6 * inch, 0.7 * inch],
        repeatRows=1,
    )
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), HexColor("#f6f8fa")),
        ("BOX", (0, 0), (-1, -1), 0.5, BORDER),
        ("INNERGRID", (0, 0), (-1, -1), 0.5, BORDER),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ] + level_styles))
    return table


def render_report_pdf(
    messages: Iterable[Any],
    title: str = DEFAULT_HEADING,
    generated_at: Optional[datetime] = None,
) -> bytes:
    """
    Build the PDF session report.

    Returns:
        PDF as bytes (can be streamed directly in an HTTP response).
    """
    snaps = [_snapshot(m) for m in messages]
    styles = _build_styles()
    generated = _format_timestamp(generated_at or datetime.now(timezone.utc))

    story = [
        Paragraph(html.escape(title), styles["brand"]),
        Paragraph(f"CourtRoom Simulator  |  Generated {generated}", styles["tagline"]),
        HRFlowable(width="100%", thickness=1.5, color=ACCENT, spaceAfter=16),
        _summary_table(styles, snaps),
        Spacer(1, 16),
    ]
    if snaps:
        story.append(_message_table(styles, snaps))
    else:
        story.append(Paragraph("No messages to display", styles["empty"]))
    story.append(Spacer(1, 30))
    story.append(HRFlowable(width="100%", thickness=0.5, color=BORDER, spaceAfter=8))
    story.append(Paragraph(f"Total Messages: {len(snaps)}", styles["footer"]))

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        topMargin=0.6 * inch,
        bottomMargin=0.6 * inch,
        title=title,
        author="CourtRoom Simulator",
    )
    doc.build(story)
    pdf_bytes = buffer.getvalue()
    buffer.close()
    return pdf_bytes


# ============================================================================
# REMOTE RENDERER
# ============================================================================

class RemoteRenderer:
    """
    Client for the hosted HTML renderer function.

    The function answers either with a JSON envelope ``{"body": "<html>"}``
    or with the HTML document itself.
    """

    def __init__(self, url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def render(self, messages: Iterable[Any], theme: str = "light") -> str:
        payload = {
            "messages": [_snapshot(m) for m in messages],
            "theme": theme or "light",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Renderer returned {e.response.status_code}")
            raise UpstreamError(f"Renderer returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"Renderer unreachable: {e}")
            raise UpstreamError(f"Renderer unreachable: {e}") from e

        if "application/json" in resp.headers.get("content-type", ""):
            try:
                data = resp.json()
            except ValueError as e:
                raise UpstreamError("Renderer returned malformed JSON") from e
            body = data.get("body") if isinstance(data, dict) else None
            if not isinstance(body, str):
                raise UpstreamError("Renderer response has no HTML body")
            return body
        return resp.text
