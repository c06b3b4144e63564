"""PDF rendering of journal entries."""

from __future__ import annotations

import base64
import io
import re
from typing import Optional
from xml.sax.saxutils import escape

from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.platypus import (
    HRFlowable,
    Image,
    ListFlowable,
    ListItem,
    Paragraph,
    Preformatted,
    SimpleDocTemplate,
    Spacer,
)

from agenda.clock import to_datetime
from agenda.errors import RenderError
from agenda.logging_config import get_logger
from agenda.modules.schedules.selection import Entry

logger = get_logger(__name__)

TOP_MARGIN = 20 * mm
RIGHT_MARGIN = 15 * mm
BOTTOM_MARGIN = 20 * mm
LEFT_MARGIN = 15 * mm
FRAME_WIDTH = A4[0] - LEFT_MARGIN - RIGHT_MARGIN
MAX_IMAGE_HEIGHT = (A4[1] - TOP_MARGIN - BOTTOM_MARGIN) * 0.8

_DATA_URI = re.compile(r"^data:image/[\w.+-]+;base64,(?P<data>.+)$", re.DOTALL)
_BLOCK_TAGS = {"p", "div", "section", "article", "h1", "h2", "h3", "h4", "h5", "h6",
               "ul", "ol", "blockquote", "pre", "hr", "img", "figure", "table"}
_INLINE_WRAP = {
    "strong": ("<b>", "</b>"),
    "b": ("<b>", "</b>"),
    "em": ("<i>", "</i>"),
    "i": ("<i>", "</i>"),
    "u": ("<u>", "</u>"),
    "s": ("<strike>", "</strike>"),
    "strike": ("<strike>", "</strike>"),
    "del": ("<strike>", "</strike>"),
    "code": ('<font face="Courier">', "</font>"),
    "sub": ("<sub>", "</sub>"),
    "sup": ("<super>", "</super>"),
}


def _format_ms(ms: int) -> str:
    return to_datetime(ms).strftime("%Y-%m-%d %H:%M UTC")


def _draw_footer(canvas, doc) -> None:
    canvas.saveState()
    canvas.setFont("Helvetica", 9)
    canvas.setFillColor(colors.grey)
    canvas.drawCentredString(A4[0] / 2, BOTTOM_MARGIN / 2, f"Page {canvas.getPageNumber()}")
    canvas.restoreState()


class DocumentRenderer:
    """Turns a list of entries into a single PDF document."""

    def __init__(self, title: str = "Journal Export") -> None:
        self.title = title
        base = getSampleStyleSheet()
        self.styles = {
            "title": base["Title"],
            "subtitle": ParagraphStyle("Subtitle", parent=base["Normal"], alignment=TA_CENTER,
                                       textColor=colors.grey, spaceAfter=4),
            "entry_title": base["Heading2"],
            "meta": ParagraphStyle("Meta", parent=base["Normal"], fontSize=8,
                                   textColor=colors.grey, spaceAfter=6),
            "body": ParagraphStyle("Body", parent=base["Normal"], leading=14, spaceAfter=6),
            "quote": ParagraphStyle("Quote", parent=base["Normal"], leftIndent=12,
                                    textColor=colors.HexColor("#555555"), fontName="Helvetica-Oblique",
                                    spaceAfter=6),
            "code": ParagraphStyle("Code", parent=base["Code"], fontSize=8, leading=10,
                                   backColor=colors.HexColor("#f4f4f4"), spaceAfter=6),
            "placeholder": ParagraphStyle("Placeholder", parent=base["Normal"],
                                          textColor=colors.grey, spaceAfter=6),
            "h1": base["Heading3"],
            "h2": base["Heading3"],
            "h3": base["Heading4"],
            "h4": base["Heading5"],
            "h5": base["Heading6"],
            "h6": base["Heading6"],
        }

    @staticmethod
    def file_name(now_ms: int) -> str:
        return f"journal-export-{to_datetime(now_ms).strftime('%Y-%m-%d')}.pdf"

    def render(self, entries: list[Entry], generated_at: int) -> bytes:
        """Render ``entries`` newest-first. Raises RenderError on any failure."""
        if not entries:
            raise RenderError("There are no entries to render")
        try:
            story = self._cover(len(entries), generated_at)
            ordered = sorted(entries, key=lambda e: e.created_at, reverse=True)
            for index, entry in enumerate(ordered):
                if index:
                    story.append(HRFlowable(width="100%", thickness=0.5, color=colors.lightgrey,
                                            spaceBefore=6, spaceAfter=10))
                story.extend(self._entry(entry))

            buffer = io.BytesIO()
            doc = SimpleDocTemplate(
                buffer,
                pagesize=A4,
                topMargin=TOP_MARGIN,
                rightMargin=RIGHT_MARGIN,
                bottomMargin=BOTTOM_MARGIN,
                leftMargin=LEFT_MARGIN,
                title=self.title,
                author="agenda",
            )
            doc.build(story, onFirstPage=_draw_footer, onLaterPages=_draw_footer)
        except RenderError:
            raise
        except Exception as exc:
            logger.error("pdf_render_failed", error=str(exc), entries=len(entries))
            raise RenderError(f"Failed to render PDF: {exc}") from exc

        pdf = buffer.getvalue()
        logger.info("pdf_rendered", entries=len(entries), size=len(pdf))
        return pdf

    def _cover(self, count: int, generated_at: int) -> list:
        noun = "entry" if count == 1 else "entries"
        return [
            Paragraph(escape(self.title), self.styles["title"]),
            Paragraph(f"{count} {noun}", self.styles["subtitle"]),
            Paragraph(f"Generated {_format_ms(generated_at)}", self.styles["subtitle"]),
            Spacer(1, 8 * mm),
        ]

    def _entry(self, entry: Entry) -> list:
        flowables = [
            Paragraph(escape(entry.title.strip() or "Untitled entry"), self.styles["entry_title"]),
            Paragraph(f"Created {_format_ms(entry.created_at)}", self.styles["meta"]),
        ]
        flowables.extend(self.html_to_flowables(entry.content))
        return flowables

    # ── HTML conversion ──────────────────────────────────────────────

    def html_to_flowables(self, html: str) -> list:
        """Convert editor HTML into ReportLab flowables."""
        soup = BeautifulSoup(html or "", "html.parser")
        return self._blocks(soup.children, self.styles["body"])

    def _blocks(self, nodes, style: ParagraphStyle) -> list:
        flowables: list = []
        pending: list = []

        def flush() -> None:
            if pending:
                flowables.extend(self._paragraph(pending, style))
                pending.clear()

        for node in nodes:
            if isinstance(node, Tag) and node.name in _BLOCK_TAGS:
                flush()
                flowables.extend(self._block(node, style))
            elif isinstance(node, (Tag, NavigableString)):
                pending.append(node)
        flush()
        return flowables

    def _block(self, tag: Tag, style: ParagraphStyle) -> list:
        name = tag.name
        if name in ("h1", "h2", "h3", "h4", "h5", "h6"):
            return self._paragraph(tag.children, self.styles[name])
        if name in ("ul", "ol"):
            return [self._list(tag, style)]
        if name == "blockquote":
            return self._blocks(tag.children, self.styles["quote"])
        if name == "pre":
            return [Preformatted(tag.get_text(), self.styles["code"])]
        if name == "hr":
            return [HRFlowable(width="100%", thickness=0.5, color=colors.lightgrey)]
        if name == "img":
            return [self._image(tag)]
        if name == "table":
            rows = [" | ".join(c.get_text(" ", strip=True) for c in tr.find_all(["td", "th"]))
                    for tr in tag.find_all("tr")]
            return [Paragraph(escape(row), style) for row in rows if row.strip()]
        # p, div, section, article, figure
        if any(isinstance(c, Tag) and c.name in _BLOCK_TAGS for c in tag.children):
            return self._blocks(tag.children, style)
        return self._paragraph(tag.children, style)

    def _list(self, tag: Tag, style: ParagraphStyle) -> ListFlowable:
        items = []
        for li in tag.find_all("li", recursive=False):
            content = self._blocks(li.children, style) or [Paragraph("", style)]
            items.append(ListItem(content))
        bullet = "1" if tag.name == "ol" else "bullet"
        return ListFlowable(items, bulletType=bullet, leftIndent=14)

    def _paragraph(self, nodes, style: ParagraphStyle) -> list:
        images: list = []
        markup = "".join(self._inline(node, images) for node in nodes).strip()
        while markup.endswith("<br/>"):
            markup = markup[:-5].rstrip()
        flowables: list = [Paragraph(markup, style)] if markup else []
        return flowables + images

    def _inline(self, node, images: list) -> str:
        if isinstance(node, Comment):
            return ""
        if isinstance(node, NavigableString):
            return escape(str(node))
        if not isinstance(node, Tag):
            return ""
        if node.name == "br":
            return "<br/>"
        if node.name == "img":
            images.append(self._image(node))
            return ""
        inner = "".join(self._inline(child, images) for child in node.children)
        if node.name in _INLINE_WRAP:
            start, end = _INLINE_WRAP[node.name]
            return f"{start}{inner}{end}" if inner else ""
        if node.name == "a" and node.get("href"):
            href = escape(node["href"], {'"': "&quot;"})
            return f'<link href="{href}" color="blue"><u>{inner}</u></link>'
        return inner

    def _image(self, tag: Tag):
        alt = tag.get("alt") or "image"
        match = _DATA_URI.match((tag.get("src") or "").strip())
        if match is None:
            return self._placeholder(alt)
        try:
            raw = base64.b64decode(match.group("data"), validate=False)
            width, height = ImageReader(io.BytesIO(raw)).getSize()
        except Exception as exc:
            logger.warning("pdf_image_unreadable", alt=alt, error=str(exc))
            return self._placeholder(alt)
        if not width or not height:
            return self._placeholder(alt)
        scale = min(1.0, FRAME_WIDTH / width, MAX_IMAGE_HEIGHT / height)
        return Image(io.BytesIO(raw), width=width * scale, height=height * scale)

    def _placeholder(self, alt: Optional[str]) -> Paragraph:
        return Paragraph(escape(f"[image: {alt}]"), self.styles["placeholder"])
