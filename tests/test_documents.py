"""Tests for PDF rendering of journal entries."""

from __future__ import annotations

import base64
import struct
import zlib
from unittest.mock import patch

import pytest
from reportlab.platypus import HRFlowable, Image, ListFlowable, Paragraph, Preformatted

from agenda.errors import RenderError
from agenda.modules.documents.service import FRAME_WIDTH, DocumentRenderer
from agenda.modules.schedules.selection import Entry

from conftest import START_MS, make_entries


def _png(width: int, height: int) -> bytes:
    """A solid-colour RGB PNG."""

    def chunk(kind: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))

    rows = b"".join(b"\x00" + b"\x10\x80\xf0" * width for _ in range(height))
    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", header)
        + chunk(b"IDAT", zlib.compress(rows))
        + chunk(b"IEND", b"")
    )


def _data_uri(width: int, height: int) -> str:
    return "data:image/png;base64," + base64.b64encode(_png(width, height)).decode()


@pytest.fixture
def renderer() -> DocumentRenderer:
    return DocumentRenderer()


class TestRender:
    """Tests for whole-document rendering."""

    def test_render_produces_pdf(self, renderer: DocumentRenderer) -> None:
        pdf = renderer.render(make_entries(3), generated_at=START_MS)
        assert pdf.startswith(b"%PDF")
        assert len(pdf) > 1000

    def test_file_name_uses_generation_date(self) -> None:
        assert DocumentRenderer.file_name(START_MS) == "journal-export-2023-11-14.pdf"

    def test_empty_entries_rejected(self, renderer: DocumentRenderer) -> None:
        with pytest.raises(RenderError, match="no entries"):
            renderer.render([], generated_at=START_MS)

    def test_entries_rendered_newest_first(self, renderer: DocumentRenderer) -> None:
        entries = make_entries(4)
        seen: list[str] = []
        original = DocumentRenderer._entry

        def spy(self, entry):
            seen.append(entry.id)
            return original(self, entry)

        with patch.object(DocumentRenderer, "_entry", spy):
            renderer.render(entries, generated_at=START_MS)
        assert seen == ["entry-3", "entry-2", "entry-1", "entry-0"]

    def test_build_failure_becomes_render_error(self, renderer: DocumentRenderer) -> None:
        with patch("agenda.modules.documents.service.SimpleDocTemplate.build", side_effect=OSError("disk full")):
            with pytest.raises(RenderError, match="disk full"):
                renderer.render(make_entries(1), generated_at=START_MS)

    def test_long_entry_spans_pages(self, renderer: DocumentRenderer) -> None:
        body = "".join(f"<p>Paragraph {i} with enough words to wrap a line or two.</p>" for i in range(200))
        entry = Entry(id="long", title="Long", content=body, created_at=START_MS)
        pdf = renderer.render([entry], generated_at=START_MS)
        assert pdf.startswith(b"%PDF")

    def test_untitled_and_markup_heavy_entries(self, renderer: DocumentRenderer) -> None:
        entry = Entry(
            id="x",
            title="   ",
            content='<h2>Plan</h2><ul><li>one</li><li><b>two</b></li></ul><pre>a < b</pre><hr>'
                    '<blockquote>quoted & "escaped"</blockquote><img src="https://example.org/x.png">',
            created_at=START_MS,
        )
        assert renderer.render([entry], generated_at=START_MS).startswith(b"%PDF")


class TestHtmlConversion:
    """Tests for editor HTML to flowables."""

    def test_block_elements(self, renderer: DocumentRenderer) -> None:
        flowables = renderer.html_to_flowables(
            "<h1>Title</h1><p>Body</p><ol><li>a</li><li>b</li></ol><pre>code\n  indented</pre><hr/>"
        )
        kinds = [type(f) for f in flowables]
        assert kinds == [Paragraph, Paragraph, ListFlowable, Preformatted, HRFlowable]

    def test_inline_markup(self, renderer: DocumentRenderer) -> None:
        [para] = renderer.html_to_flowables(
            '<p><strong>bold</strong> <em>it</em> <u>u</u> <s>gone</s> <code>x</code> '
            'H<sub>2</sub>O <a href="https://example.org/?a=1&b=2">link</a></p>'
        )
        text = para.text
        assert "<b>bold</b>" in text
        assert "<i>it</i>" in text
        assert "<strike>gone</strike>" in text
        assert '<font face="Courier">x</font>' in text
        assert "<sub>2</sub>" in text
        assert 'href="https://example.org/?a=1&amp;b=2"' in text

    def test_text_is_escaped(self, renderer: DocumentRenderer) -> None:
        [para] = renderer.html_to_flowables("<p>1 &lt; 2 &amp; 3 &gt; 0</p>")
        assert "1 &lt; 2 &amp; 3 &gt; 0" in para.text

    def test_plain_text_and_comments(self, renderer: DocumentRenderer) -> None:
        [para] = renderer.html_to_flowables("just text<!-- hidden --><br>")
        assert para.text == "just text"

    def test_empty_content(self, renderer: DocumentRenderer) -> None:
        assert renderer.html_to_flowables("") == []
        assert renderer.html_to_flowables("<p>  </p>") == []

    def test_table_rows_become_paragraphs(self, renderer: DocumentRenderer) -> None:
        flowables = renderer.html_to_flowables(
            "<table><tr><th>Day</th><th>Mood</th></tr><tr><td>Mon</td><td>ok</td></tr></table>"
        )
        assert [f.text for f in flowables] == ["Day | Mood", "Mon | ok"]


class TestImages:
    """Tests for embedded and remote images."""

    def test_data_uri_image_is_embedded(self, renderer: DocumentRenderer) -> None:
        [image] = renderer.html_to_flowables(f'<img src="{_data_uri(40, 20)}" alt="dot">')
        assert isinstance(image, Image)
        assert image.drawWidth == 40
        assert image.drawHeight == 20

    def test_wide_image_is_scaled_to_frame(self, renderer: DocumentRenderer) -> None:
        [image] = renderer.html_to_flowables(f'<img src="{_data_uri(2000, 100)}">')
        assert image.drawWidth == pytest.approx(FRAME_WIDTH)
        assert image.drawHeight == pytest.approx(100 * FRAME_WIDTH / 2000)

    def test_inline_image_follows_paragraph(self, renderer: DocumentRenderer) -> None:
        flowables = renderer.html_to_flowables(f'<p>before <img src="{_data_uri(4, 4)}"> after</p>')
        assert [type(f) for f in flowables] == [Paragraph, Image]

    def test_remote_image_gets_placeholder(self, renderer: DocumentRenderer) -> None:
        [placeholder] = renderer.html_to_flowables('<img src="https://example.org/cat.png" alt="cat">')
        assert isinstance(placeholder, Paragraph)
        assert placeholder.text == "[image: cat]"

    def test_broken_data_uri_gets_placeholder(self, renderer: DocumentRenderer) -> None:
        [placeholder] = renderer.html_to_flowables('<img src="data:image/png;base64,bm90IGFuIGltYWdl">')
        assert placeholder.text == "[image: image]"

    def test_pdf_with_image_renders(self, renderer: DocumentRenderer) -> None:
        entry = Entry(id="img", title="Photo", content=f'<p><img src="{_data_uri(8, 8)}"></p>', created_at=START_MS)
        assert renderer.render([entry], generated_at=START_MS).startswith(b"%PDF")
