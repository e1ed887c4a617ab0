"""
Document Renderer - populated letter text to PDF and DOCX.

Both formats share one line classification:
    "# "      document title
    "## "     section heading
    "### "    sub-heading (DOCX only; PDF renders it as body text)
    "date:"   distinguished date line (case-insensitive, after trimming)
    blank     flushes the current paragraph
    other     body text, consecutive lines form one paragraph

DOCX renders inline **bold** spans as bold runs. PDF paragraphs are plain
styled blocks; markup characters are escaped, not interpreted.

Every document carries the practice branding header and a
"{template name} - Generated on {DD/MM/YYYY}" footer. Rendering either returns
the complete buffer or raises; partial buffers are never handed back.
"""
import io
import re
import logging
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Dict, Iterable, List, Optional, Tuple
from xml.sax.saxutils import escape

# PDF generation
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, HRFlowable
from reportlab.lib.enums import TA_JUSTIFY, TA_RIGHT

# DOCX generation
from docx import Document
from docx.shared import Pt, RGBColor
from docx.enum.text import WD_ALIGN_PARAGRAPH

from models.letters import OutputFormat
from services.letter_errors import DocxGenerationFailed, PdfGenerationFailed
from utils.letter_settings import get_practice_name

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS & BRANDING
# ============================================================================

BRAND_TEAL = (0, 184, 169)      # #00B8A9
BRAND_TEAL_HEX = "#00B8A9"
BRAND_NAVY = (11, 29, 58)       # #0B1D3A
BRAND_NAVY_HEX = "#0B1D3A"
RULE_GREY = (204, 204, 204)     # #CCCCCC
FOOTER_GREY = (128, 128, 128)

DOCX_SEPARATOR = "─" * 80
BOLD_SPAN = re.compile(r"(\*\*[^*]+\*\*)")


class LineKind(str, Enum):
    TITLE = "TITLE"
    HEADING = "HEADING"
    SUBHEADING = "SUBHEADING"
    DATE = "DATE"
    BLANK = "BLANK"
    BODY = "BODY"


def classify_line(line: str) -> Tuple[LineKind, str]:
    """Classify one line of populated text. Returns the kind and display text."""
    stripped = line.strip()
    if not stripped:
        return LineKind.BLANK, ""
    if stripped.startswith("### "):
        return LineKind.SUBHEADING, stripped[4:].strip()
    if stripped.startswith("## "):
        return LineKind.HEADING, stripped[3:].strip()
    if stripped.startswith("# "):
        return LineKind.TITLE, stripped[2:].strip()
    if stripped.lower().startswith("date:"):
        return LineKind.DATE, stripped
    return LineKind.BODY, line


def footer_text(template_name: str, generated_at: Optional[datetime] = None) -> str:
    generated_at = generated_at or datetime.now(timezone.utc)
    return f"{template_name} - Generated on {generated_at.strftime('%d/%m/%Y')}"


class _LetterCanvas(canvas.Canvas):
    """Canvas that defers page decoration until the page count is known."""

    def __init__(self, *args, header: str = "", footer: str = "", **kwargs):
        super().__init__(*args, **kwargs)
        self._header = header
        self._footer = footer
        self._saved_pages: List[dict] = []

    def showPage(self):
        self._saved_pages.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total = len(self._saved_pages)
        for state in self._saved_pages:
            self.__dict__.update(state)
            self._draw_decorations(total)
            super().showPage()
        super().save()

    def _draw_decorations(self, total: int):
        width, height = A4
        self.saveState()
        self.setFont("Helvetica-Bold", 10)
        self.setFillColor(colors.HexColor(BRAND_TEAL_HEX))
        self.drawRightString(width - 20 * mm, height - 15 * mm, self._header)
        self.setFont("Helvetica", 8)
        self.setFillColor(colors.HexColor("#888888"))
        self.drawCentredString(width / 2, 12 * mm, self._footer)
        self.drawRightString(width - 20 * mm, 12 * mm, f"Page {self._pageNumber} of {total}")
        self.restoreState()


class DocumentRenderer:
    """Renders populated letter text into PDF and DOCX buffers."""

    def render(
        self,
        text: str,
        template_name: str,
        formats: Iterable[OutputFormat],
    ) -> Dict[OutputFormat, bytes]:
        """Render every requested format. Order of the result follows the request."""
        documents: Dict[OutputFormat, bytes] = {}
        for output_format in formats:
            output_format = OutputFormat(output_format)
            if output_format in documents:
                continue
            if output_format == OutputFormat.PDF:
                documents[output_format] = self.render_pdf(text, template_name)
            else:
                documents[output_format] = self.render_docx(text, template_name)
        return documents

    # ========================================================================
    # PDF RENDERING
    # ========================================================================

    def render_pdf(self, text: str, template_name: str) -> bytes:
        buffer = io.BytesIO()
        try:
            doc = SimpleDocTemplate(
                buffer,
                pagesize=A4,
                rightMargin=20*mm,
                leftMargin=20*mm,
                topMargin=25*mm,
                bottomMargin=20*mm,
                title=template_name,
            )
            styles = self._pdf_styles()
            practice_name = get_practice_name()

            story = [
                Paragraph(escape(practice_name), styles['BrandHeader']),
                HRFlowable(width="100%", thickness=1, color=colors.HexColor(BRAND_TEAL_HEX)),
                Spacer(1, 12),
            ]
            story.extend(self._pdf_story(text, styles))
            story.append(Spacer(1, 20))
            story.append(HRFlowable(width="100%", thickness=1, color=colors.HexColor('#CCCCCC')))

            canvasmaker = partial(
                _LetterCanvas,
                header=practice_name,
                footer=footer_text(template_name),
            )
            doc.build(story, canvasmaker=canvasmaker)
            return buffer.getvalue()
        except Exception as e:
            logger.error(f"PDF generation failed for '{template_name}': {e}", exc_info=True)
            raise PdfGenerationFailed(f"Failed to generate PDF document: {e}")
        finally:
            buffer.close()

    def _pdf_styles(self):
        styles = getSampleStyleSheet()

        styles.add(ParagraphStyle(
            name='BrandHeader',
            parent=styles['Normal'],
            fontSize=14,
            fontName='Helvetica-Bold',
            textColor=colors.HexColor(BRAND_NAVY_HEX),
            alignment=TA_RIGHT,
            spaceAfter=6,
        ))

        styles.add(ParagraphStyle(
            name='BrandTitle',
            parent=styles['Title'],
            fontSize=18,
            textColor=colors.HexColor(BRAND_NAVY_HEX),
            spaceAfter=12,
        ))

        styles.add(ParagraphStyle(
            name='BrandHeading',
            parent=styles['Heading2'],
            fontSize=14,
            textColor=colors.HexColor(BRAND_TEAL_HEX),
            spaceBefore=12,
            spaceAfter=6,
        ))

        styles.add(ParagraphStyle(
            name='LetterDate',
            parent=styles['Normal'],
            fontSize=10,
            alignment=TA_RIGHT,
            spaceAfter=12,
        ))

        styles.add(ParagraphStyle(
            name='BrandBody',
            parent=styles['Normal'],
            fontSize=10,
            leading=14,
            alignment=TA_JUSTIFY,
            spaceAfter=8,
        ))
        return styles

    def _pdf_story(self, text: str, styles) -> List:
        story = []
        paragraph: List[str] = []

        def flush():
            if paragraph:
                body = "<br/>".join(escape(line) for line in paragraph)
                story.append(Paragraph(body, styles['BrandBody']))
                paragraph.clear()

        for line in text.split("\n"):
            kind, content = classify_line(line)
            if kind == LineKind.BLANK:
                flush()
            elif kind == LineKind.TITLE:
                flush()
                story.append(Paragraph(escape(content), styles['BrandTitle']))
            elif kind == LineKind.HEADING:
                flush()
                story.append(Paragraph(escape(content), styles['BrandHeading']))
            elif kind == LineKind.DATE:
                flush()
                story.append(Paragraph(escape(content), styles['LetterDate']))
            else:
                # Sub-headings have no PDF style of their own
                paragraph.append(line)
        flush()
        return story

    # ========================================================================
    # DOCX RENDERING
    # ========================================================================

    def render_docx(self, text: str, template_name: str) -> bytes:
        buffer = io.BytesIO()
        try:
            doc = Document()
            self._add_docx_header(doc)
            self._add_docx_content(doc, text)
            self._add_docx_footer(doc, template_name)
            doc.save(buffer)
            return buffer.getvalue()
        except Exception as e:
            logger.error(f"DOCX generation failed for '{template_name}': {e}", exc_info=True)
            raise DocxGenerationFailed(f"Failed to generate Word document: {e}")
        finally:
            buffer.close()

    def _add_separator(self, doc: Document):
        para = doc.add_paragraph()
        run = para.add_run(DOCX_SEPARATOR)
        run.font.size = Pt(6)
        run.font.color.rgb = RGBColor(*RULE_GREY)

    def _add_docx_header(self, doc: Document):
        """Practice branding at the top of the letter."""
        header_para = doc.add_paragraph()
        header_run = header_para.add_run(get_practice_name())
        header_run.bold = True
        header_run.font.size = Pt(14)
        header_run.font.color.rgb = RGBColor(*BRAND_NAVY)
        header_para.alignment = WD_ALIGN_PARAGRAPH.RIGHT
        self._add_separator(doc)

    def _add_docx_content(self, doc: Document, text: str):
        for line in text.split("\n"):
            kind, content = classify_line(line)
            if kind == LineKind.BLANK:
                doc.add_paragraph()
            elif kind == LineKind.TITLE:
                doc.add_heading(content, level=1)
            elif kind == LineKind.HEADING:
                doc.add_heading(content, level=2)
            elif kind == LineKind.SUBHEADING:
                doc.add_heading(content, level=3)
            elif kind == LineKind.DATE:
                para = doc.add_paragraph()
                para.add_run(content)
                para.alignment = WD_ALIGN_PARAGRAPH.RIGHT
            elif "**" in line:
                self._add_bold_runs(doc, line)
            else:
                doc.add_paragraph(line)

    def _add_bold_runs(self, doc: Document, line: str):
        para = doc.add_paragraph()
        for part in BOLD_SPAN.split(line):
            if not part:
                continue
            if BOLD_SPAN.fullmatch(part):
                para.add_run(part[2:-2]).bold = True
            else:
                para.add_run(part)

    def _add_docx_footer(self, doc: Document, template_name: str):
        doc.add_paragraph()
        self._add_separator(doc)

        footer_para = doc.add_paragraph()
        footer_run = footer_para.add_run(footer_text(template_name))
        footer_run.font.size = Pt(8)
        footer_run.font.color.rgb = RGBColor(*FOOTER_GREY)
        footer_para.alignment = WD_ALIGN_PARAGRAPH.CENTER


# Singleton
document_renderer = DocumentRenderer()
