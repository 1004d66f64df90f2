from __future__ import annotations

import io
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable
from xml.sax.saxutils import escape

import structlog
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas
from reportlab.platypus import (
    Flowable,
    HRFlowable,
    Image,
    PageBreak,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from crm_bridge.schemas.contact import ContactProfile
from crm_bridge.schemas.records import (
    EnrichedAudio,
    EnrichedFile,
    EnrichedImage,
    EnrichedRecord,
    EnrichedText,
)
from crm_bridge.utils.media import decode_data_uri
from crm_bridge.utils.time import format_local, resolve_timezone, utc_now

logger = structlog.get_logger(__name__)

IMAGE_MAX_WIDTH = 400
IMAGE_MAX_HEIGHT = 300

IMAGE_UNAVAILABLE = "[Imagem não disponível]"
FILE_UNAVAILABLE = "[Arquivo não disponível]"
AUDIO_MISSING_TRANSCRIPT = "[Transcrição indisponível]"
PDF_REFERENCE_NOTE = "Documento PDF completo anexado ao Deal no Pipedrive"
FILE_REFERENCE_NOTE = "Documento anexado ao Deal no Pipedrive"

CONTACT_LABELS = (
    ("email", "Email"),
    ("phone", "Telefone"),
    ("company", "Empresa"),
    ("national_id", "CPF"),
    ("process_reference", "Processo"),
    ("profession", "Profissão"),
)


@dataclass
class Transcript:
    profile: ContactProfile
    records: list[EnrichedRecord]
    generated_at: datetime = field(default_factory=utc_now)

    def counts(self) -> dict[str, int]:
        result = {"text": 0, "image": 0, "audio": 0, "file": 0}
        for record in self.records:
            result[record.kind] += 1
        return result

    @property
    def contact_name(self) -> str:
        return self.profile.name or "Cliente"


def assemble(records: Iterable[EnrichedRecord], profile: ContactProfile) -> Transcript:
    # sorted() is stable, so records sharing a timestamp keep their bucket order
    ordered = sorted(records, key=lambda record: record.created_at)
    return Transcript(profile=profile, records=ordered)


def file_label(record: EnrichedFile) -> str:
    name = record.record.file_name
    extension = record.record.extension
    if extension and not name.lower().endswith(f".{extension.lower()}"):
        return f"{name}.{extension}"
    return name


def audio_text(record: EnrichedAudio) -> str:
    return record.transcript.strip() or AUDIO_MISSING_TRANSCRIPT


def render_text(transcript: Transcript, timezone: str) -> str:
    """Flat rendering used as the CRM note when the PDF cannot be delivered."""
    profile = transcript.profile
    lines = ["Histórico de Conversa", "", f"Nome: {profile.name or 'Não informado'}"]
    for attr, label in CONTACT_LABELS:
        value = getattr(profile, attr)
        if value:
            lines.append(f"{label}: {value}")
    lines.extend(["", "---", ""])

    for record in transcript.records:
        stamp = format_local(record.created_at, timezone)
        sender = record.record.sender_name
        if isinstance(record, EnrichedAudio):
            lines.append(f"[{stamp}] {sender} (áudio): {record.record.file_name}")
            lines.append(f'    Transcrição: "{audio_text(record)}"')
        elif isinstance(record, EnrichedImage):
            lines.append(f"[{stamp}] {sender} (imagem): {record.record.file_name}")
            if not record.succeeded:
                lines.append(f"    {IMAGE_UNAVAILABLE}")
        elif isinstance(record, EnrichedFile):
            lines.append(f"[{stamp}] {sender} (arquivo): {file_label(record)}")
            if not record.succeeded:
                lines.append(f"    {FILE_UNAVAILABLE}")
        else:
            lines.append(f"[{stamp}] {sender}: {record.record.content}")
        lines.append("")

    counts = transcript.counts()
    summary = f"Resumo da conversa: {len(transcript.records)} registros no total"
    for kind, label in (
        ("text", "mensagens de texto"),
        ("image", "imagens"),
        ("audio", "áudios"),
        ("file", "arquivos"),
    ):
        if counts[kind]:
            summary += f", {counts[kind]} {label}"
    lines.extend(["---", summary])
    return "\n".join(lines)


class NumberedCanvas(canvas.Canvas):
    """Defers page output until the total page count is known."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._saved_page_states: list[dict] = []

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            self.setFont("Helvetica", 8)
            self.drawCentredString(A4[0] / 2, 1.2 * cm, f"Página {self._pageNumber} de {total}")
            super().showPage()
        super().save()


def _styles() -> dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle(
            "TranscriptTitle", parent=base["Title"], fontName="Helvetica-Bold", fontSize=20
        ),
        "section": ParagraphStyle(
            "TranscriptSection",
            parent=base["Heading2"],
            fontName="Helvetica-Bold",
            fontSize=16,
            alignment=TA_CENTER,
        ),
        "heading": ParagraphStyle(
            "TranscriptHeading", parent=base["Heading3"], fontName="Helvetica-Bold", fontSize=14
        ),
        "header": ParagraphStyle(
            "TranscriptBlockHeader",
            parent=base["Normal"],
            fontName="Helvetica-Bold",
            fontSize=10,
            spaceAfter=2,
        ),
        "body": ParagraphStyle(
            "TranscriptBody", parent=base["Normal"], fontName="Helvetica", fontSize=12, leading=15
        ),
        "note": ParagraphStyle(
            "TranscriptNote",
            parent=base["Normal"],
            fontName="Helvetica-Oblique",
            fontSize=10,
            leading=13,
        ),
        "framed": ParagraphStyle(
            "TranscriptFramed",
            parent=base["Normal"],
            fontName="Helvetica-Oblique",
            fontSize=10,
            alignment=TA_CENTER,
        ),
    }


def _paragraph(text: str, style: ParagraphStyle) -> Paragraph:
    return Paragraph(escape(text).replace("\n", "<br/>"), style)


def _image_flowable(data_uri: str | None) -> Image | None:
    if not data_uri:
        return None
    try:
        _, data = decode_data_uri(data_uri)
        width, height = ImageReader(io.BytesIO(data)).getSize()
    except (ValueError, OSError) as exc:
        logger.warning("transcript_image_skipped", error=str(exc))
        return None
    if not width or not height:
        return None
    scale = min(IMAGE_MAX_WIDTH / width, IMAGE_MAX_HEIGHT / height, 1.0)
    flowable = Image(io.BytesIO(data), width=width * scale, height=height * scale)
    flowable.hAlign = "CENTER"
    return flowable


def _framed_note(text: str, styles: dict[str, ParagraphStyle]) -> Table:
    table = Table([[_paragraph(text, styles["framed"])]], colWidths=[15 * cm], rowHeights=[3 * cm])
    table.setStyle(
        TableStyle(
            [
                ("BOX", (0, 0), (-1, -1), 1, colors.HexColor("#cccccc")),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
            ]
        )
    )
    return table


def _record_flowables(
    record: EnrichedRecord, timezone: str, styles: dict[str, ParagraphStyle]
) -> list[Flowable]:
    stamp = format_local(record.created_at, timezone)
    parts: list[Flowable] = [
        _paragraph(f"[{stamp}] {record.record.sender_name}:", styles["header"])
    ]

    if isinstance(record, EnrichedText):
        parts.append(_paragraph(record.record.content, styles["body"]))
    elif isinstance(record, EnrichedAudio):
        parts.append(_paragraph(f'[Áudio transcrito]: "{audio_text(record)}"', styles["note"]))
    elif isinstance(record, EnrichedImage):
        parts.append(_paragraph(f"[Imagem]: {record.record.file_name}", styles["body"]))
        image = _image_flowable(record.data_uri) if record.succeeded else None
        parts.append(image or _paragraph(IMAGE_UNAVAILABLE, styles["note"]))
    elif isinstance(record, EnrichedFile):
        parts.append(_paragraph(f"[Arquivo]: {file_label(record)}", styles["body"]))
        if not record.succeeded:
            parts.append(_paragraph(FILE_UNAVAILABLE, styles["note"]))
        elif record.category == "pdf":
            parts.append(Spacer(1, 4))
            parts.append(_framed_note(PDF_REFERENCE_NOTE, styles))
        elif record.category == "image":
            preview = _image_flowable(record.data_uri)
            parts.append(preview or _paragraph(FILE_REFERENCE_NOTE, styles["note"]))
        else:
            parts.append(_paragraph(FILE_REFERENCE_NOTE, styles["note"]))

    parts.append(Spacer(1, 8))
    parts.append(HRFlowable(width="90%", thickness=0.5, color=colors.HexColor("#cccccc")))
    parts.append(Spacer(1, 8))
    return parts


def render_pdf(transcript: Transcript, timezone: str) -> bytes:
    styles = _styles()
    profile = transcript.profile
    story: list[Flowable] = [
        _paragraph("Histórico de Conversa - Chatwoot", styles["title"]),
        Spacer(1, 12),
        _paragraph("Informações do Contato:", styles["heading"]),
        _paragraph(f"Nome: {profile.name or 'Não informado'}", styles["body"]),
    ]
    for attr, label in CONTACT_LABELS:
        value = getattr(profile, attr)
        if value:
            story.append(_paragraph(f"{label}: {value}", styles["body"]))
    story.extend(
        [
            Spacer(1, 16),
            HRFlowable(width="100%", thickness=1, color=colors.black),
            Spacer(1, 12),
            _paragraph("Histórico da Conversa:", styles["section"]),
            Spacer(1, 12),
        ]
    )

    for record in transcript.records:
        story.extend(_record_flowables(record, timezone, styles))

    counts = transcript.counts()
    generated = transcript.generated_at.astimezone(resolve_timezone(timezone))
    story.append(PageBreak())
    story.append(_paragraph("Resumo da Conversa", styles["section"]))
    story.append(Spacer(1, 12))
    for line in (
        f"Total de registros: {len(transcript.records)}",
        f"Mensagens de texto: {counts['text']}",
        f"Áudios transcritos: {counts['audio']}",
        f"Imagens: {counts['image']}",
        f"Arquivos: {counts['file']}",
        f"Data do relatório: {generated.strftime('%d/%m/%Y %H:%M:%S')}",
    ):
        story.append(_paragraph(line, styles["body"]))

    buffer = io.BytesIO()
    document = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=2 * cm,
        rightMargin=2 * cm,
        topMargin=2 * cm,
        bottomMargin=2 * cm,
        title=f"Conversa com {transcript.contact_name}",
    )
    document.build(story, canvasmaker=NumberedCanvas)
    payload = buffer.getvalue()
    logger.info(
        "transcript_rendered",
        records=len(transcript.records),
        size=len(payload),
        **counts,
    )
    return payload
