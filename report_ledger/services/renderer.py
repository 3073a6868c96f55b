"""
Artifact Renderer - PDF rendering of report packets.

The PDF is a presentation of the frozen payload. Its bytes are hashed into
``artifact_hash`` as a second commitment, but verification of the report
content always goes through the payload, never through the PDF.
"""

import io
from typing import Any, Protocol, Sequence
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import (
    PageBreak,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from ..models import ReportRun, ReportSignature
from .entity_store import to_iso

PDF_CONTENT_TYPE = "application/pdf"

MARGIN = 0.75 * inch

SLATE_900 = "#0f172a"
SLATE_700 = "#334155"
SLATE_500 = "#64748b"
SLATE_200 = "#e2e8f0"
SLATE_100 = "#f1f5f9"

# (key, parent sample style, overrides)
STYLE_SPECS = (
    ("title", "Title", {"fontSize": 24, "spaceAfter": 20, "alignment": TA_CENTER, "color": SLATE_900}),
    ("subtitle", "Normal", {"fontSize": 13, "spaceAfter": 10, "alignment": TA_CENTER, "color": SLATE_500}),
    ("heading1", "Heading2", {"fontSize": 15, "spaceBefore": 16, "spaceAfter": 8, "color": SLATE_900}),
    ("body", "Normal", {"fontSize": 10, "leading": 14, "spaceAfter": 6, "alignment": TA_JUSTIFY, "color": SLATE_700}),
    ("body_small", "Normal", {"fontSize": 8.5, "spaceAfter": 3, "color": SLATE_500}),
    ("hash", "Code", {"fontSize": 7.5, "alignment": TA_CENTER, "spaceBefore": 6, "color": "#047857"}),
)


class ArtifactRenderer(Protocol):
    content_type: str

    def render(
        self,
        payload: dict[str, Any],
        signatures: Sequence[ReportSignature],
        run: ReportRun,
    ) -> bytes: ...


def _text(value: Any) -> str:
    if value is None or value == "":
        return "-"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    return escape(str(value))


def _label(key: str) -> str:
    return key.replace("_", " ").capitalize()


class PdfArtifactRenderer:
    """Renders a report packet to PDF with ReportLab."""

    content_type = PDF_CONTENT_TYPE

    def __init__(self):
        self.styles = self._create_styles()

    def _create_styles(self) -> dict[str, ParagraphStyle]:
        sample = getSampleStyleSheet()
        styles = {}
        for key, parent, options in STYLE_SPECS:
            options = dict(options)
            color = options.pop("color")
            styles[key] = ParagraphStyle(
                f"Report{key.title()}",
                parent=sample[parent],
                textColor=colors.HexColor(color),
                **options,
            )
        return styles

    def render(
        self,
        payload: dict[str, Any],
        signatures: Sequence[ReportSignature],
        run: ReportRun,
    ) -> bytes:
        """Render the packet; identical inputs give identical bytes."""
        buffer = io.BytesIO()
        title = payload["meta"]["packet_title"]
        organization = payload["organization"]["name"]

        doc = SimpleDocTemplate(
            buffer,
            pagesize=letter,
            leftMargin=MARGIN,
            rightMargin=MARGIN,
            topMargin=MARGIN + 0.25 * inch,
            bottomMargin=MARGIN + 0.25 * inch,
            title=title,
            author=organization,
            invariant=1,  # Fixed creation date and document id
        )

        story = []
        story.extend(self._build_cover_page(payload, run))
        story.append(PageBreak())

        for section in payload["sections"]:
            story.extend(self._build_section(section))

        story.append(PageBreak())
        story.extend(self._build_signatures(signatures))
        story.extend(self._build_verification_section(payload, run))

        def _page(canvas, doc_):
            self._add_page_header(canvas, doc_, organization, title, run)

        doc.build(story, onFirstPage=_page, onLaterPages=_page)
        pdf_bytes = buffer.getvalue()
        buffer.close()
        return pdf_bytes

    # =========================================================================
    # STORY BUILDERS
    # =========================================================================

    def _build_cover_page(self, payload: dict[str, Any], run: ReportRun) -> list:
        elements = [Spacer(1, 2 * inch)]
        elements.append(Paragraph(_text(payload["meta"]["packet_title"]), self.styles["title"]))
        elements.append(
            Paragraph(f"<b>{_text(payload['organization']['name'])}</b>", self.styles["subtitle"])
        )
        elements.append(Spacer(1, 1.5 * inch))

        elements.append(self._kv_table({
            "reference": run.reference,
            "report_run": str(run.id),
            "job": payload["meta"]["job_id"],
            "generated": to_iso(run.generated_at),
            "builder_version": payload["builder_version"],
        }))
        return elements

    def _build_section(self, section: dict[str, Any]) -> list:
        elements = [Paragraph(_text(section["title"]), self.styles["heading1"])]
        if section["empty"]:
            elements.append(Paragraph("<i>No data recorded.</i>", self.styles["body_small"]))
            return elements

        data = section["data"]
        kind = section["type"]
        if kind == "table_of_contents":
            for i, entry in enumerate(data["sections"], start=1):
                elements.append(Paragraph(f"{i}. {_text(entry['title'])}", self.styles["body"]))
        elif kind == "risk_score":
            elements.append(self._kv_table({
                "overall_score": data["overall_score"],
                "risk_level": data["risk_level"],
            }))
            if data["factors"]:
                elements.append(Spacer(1, 0.15 * inch))
                elements.append(self._rows_table(data["factors"]))
        elif kind == "mitigations":
            elements.append(self._rows_table(
                data["items"], columns=("title", "completed", "completed_at")
            ))
        elif kind == "evidence_photos":
            elements.append(self._rows_table(
                data["photos"], columns=("name", "category", "created_at")
            ))
        elif kind == "attachments_index":
            elements.append(self._rows_table(
                data["documents"], columns=("name", "type", "created_at")
            ))
        elif kind == "audit_timeline":
            elements.append(self._rows_table(
                data["events"], columns=("created_at", "action", "resource_type")
            ))
        else:
            elements.append(self._kv_table(data))
        return elements

    def _build_signatures(self, signatures: Sequence[ReportSignature]) -> list:
        elements = [Paragraph("Signatures", self.styles["heading1"])]
        active = [sig for sig in signatures if sig.is_active]
        if not active:
            elements.append(
                Paragraph("<i>No signatures recorded at time of rendering.</i>", self.styles["body_small"])
            )
            return elements

        rows = [["Role", "Signer", "Title", "Signed"]]
        for sig in active:
            rows.append([
                sig.signature_role.value,
                _text(sig.signer_name),
                _text(sig.signer_title),
                to_iso(sig.signed_at),
            ])
        elements.append(self._grid(rows))
        for sig in active:
            elements.append(
                Paragraph(f"{sig.signature_role.value}: {sig.signature_hash}", self.styles["hash"])
            )
        return elements

    def _build_verification_section(self, payload: dict[str, Any], run: ReportRun) -> list:
        elements = [Paragraph("Integrity &amp; Verification", self.styles["heading1"])]
        explanation = """
        The content of this report is committed to by the SHA-256 hash below, computed
        over the canonical serialization of the report data at generation time. The
        report can be verified at any time by rebuilding it from source records and
        comparing hashes; any change to the underlying data produces a different hash.
        """
        elements.append(Paragraph(explanation, self.styles["body"]))
        elements.append(Paragraph("<b>Data Hash (SHA-256):</b>", self.styles["body"]))
        elements.append(Paragraph(run.data_hash, self.styles["hash"]))
        elements.append(Spacer(1, 0.3 * inch))
        elements.append(
            Paragraph(
                f"<b>Report Run:</b> {run.id}<br/>"
                f"<b>Packet:</b> {_text(payload['packet_type'])} "
                f"(builder v{payload['builder_version']})<br/>"
                f"<b>Generated:</b> {to_iso(run.generated_at)}",
                self.styles["body_small"],
            )
        )
        return elements

    # =========================================================================
    # TABLE HELPERS
    # =========================================================================

    def _kv_table(self, data: dict[str, Any]) -> Table:
        rows = [
            [_label(key), Paragraph(_text(value), self.styles["body_small"])]
            for key, value in data.items()
            if not isinstance(value, (dict, list))
        ]
        table = Table(rows or [["", ""]], colWidths=[2.2 * inch, 4.5 * inch])
        table.setStyle(
            TableStyle([
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("TEXTCOLOR", (0, 0), (0, -1), colors.HexColor(SLATE_500)),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
            ])
        )
        return table

    def _rows_table(
        self,
        items: Sequence[dict[str, Any]],
        columns: Sequence[str] | None = None,
    ) -> Table:
        if columns is None:
            columns = [
                key for key in (items[0].keys() if items else [])
                if not isinstance(items[0][key], (dict, list))
            ]
        rows = [[_label(column) for column in columns]]
        for item in items:
            rows.append([
                Paragraph(_text(item.get(column)), self.styles["body_small"])
                for column in columns
            ])
        return self._grid(rows)

    def _grid(self, rows: list[list[Any]]) -> Table:
        table = Table(rows, repeatRows=1)
        table.setStyle(
            TableStyle([
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor(SLATE_100)),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor(SLATE_200)),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ])
        )
        return table

    def _add_page_header(self, canvas, doc, organization: str, title: str, run: ReportRun):
        width, height = letter
        left, right = MARGIN, width - MARGIN

        canvas.saveState()
        canvas.setFont("Helvetica", 8)
        canvas.setFillColor(colors.HexColor(SLATE_500))
        canvas.setStrokeColor(colors.HexColor(SLATE_200))

        top = height - 0.5 * inch
        canvas.drawString(left, top, f"{organization} | {title}")
        canvas.drawRightString(right, top, f"Run {str(run.id)[:8]}")
        canvas.line(left, top - 0.1 * inch, right, top - 0.1 * inch)

        canvas.line(left, 0.7 * inch, right, 0.7 * inch)
        canvas.drawString(left, 0.5 * inch, f"Data hash {run.data_hash[:16]}")
        canvas.drawRightString(right, 0.5 * inch, f"Page {doc.page}")
        canvas.restoreState()
