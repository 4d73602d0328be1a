"""
Precision Search - HTML Email Rendering

Renders an HTML email body into a fixed-format PDF document so a
mail-only invoice can be stored and connected like any other file.
"""

import io
import logging
import re
from datetime import datetime
from typing import Optional
from xml.sax.saxutils import escape

from bs4 import BeautifulSoup
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer

logger = logging.getLogger(__name__)

_SUBJECT_UNSAFE = re.compile(r"[^a-zA-Z0-9\s]")


def html_to_text_blocks(html: str) -> list:
    """Visible text of the body, one entry per non-empty line."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head", "title", "meta"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    text = soup.get_text("\n")
    return [line.strip() for line in text.splitlines() if line.strip()]


def render_html_to_pdf(
    html: str,
    subject: Optional[str] = None,
    sender: Optional[str] = None,
    date: Optional[datetime] = None,
) -> bytes:
    """
    Render an email body as an A4 PDF with a subject/from/date header.

    Output is deterministic for the same input, so re-rendering the same
    message produces the same content hash.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=18 * mm,
        bottomMargin=18 * mm,
        title=subject or "Email invoice",
        author=sender or "",
        creator="precision-search",
        invariant=1,
    )
    styles = getSampleStyleSheet()

    story = []
    if subject:
        story.append(Paragraph(escape(subject), styles["Heading2"]))
    meta = []
    if sender:
        meta.append(f"From: {escape(sender)}")
    if date:
        meta.append(f"Date: {date.strftime('%Y-%m-%d %H:%M')} UTC")
    if meta:
        story.append(Paragraph("<br/>".join(meta), styles["Normal"]))
    story.append(Spacer(1, 6 * mm))

    for block in html_to_text_blocks(html):
        story.append(Paragraph(escape(block), styles["BodyText"]))

    doc.build(story)
    return buffer.getvalue()


def html_invoice_filename(subject: Optional[str], date: Optional[datetime]) -> str:
    """'Your order #123 - ACME!' on 2024-01-15 -> 'Your order 123  ACME_2024-01-15.pdf'"""
    cleaned = _SUBJECT_UNSAFE.sub("", subject or "").strip()[:50] or "invoice"
    suffix = date.strftime("%Y-%m-%d") if date else "undated"
    return f"{cleaned}_{suffix}.pdf"
