"""Signed document generation for completed signature requests.

The document is built as plain text first (metadata header, signer blocks,
audit trail) and then rendered to PDF with reportlab, like the agreement PDFs.
Signature images and the watermark are drawn on the page canvas, so embedding
an image never reflows the text.
"""
from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Sequence

from reportlab.lib.pagesizes import letter

from signflow.config import Settings, get_settings
from signflow.models.audit_log import SignatureAuditLog
from signflow.models.signature_request import SignatureRequest, SignatureRequestStatus, SignatureType, SignerStatus
from signflow.services.clock import as_utc
from signflow.services.errors import ArtifactError

log = logging.getLogger("uvicorn.error")

# Signature layout (PDF points, origin bottom-left): rows of boxes, left to right
SIGNATURE_WIDTH = 150
SIGNATURE_HEIGHT = 50
SIGNATURE_SPACING = 20
SIGNATURE_START_X = 50
SIGNATURE_BASELINE_Y = 100

PAGE_WIDTH, PAGE_HEIGHT = letter
SIGNATURES_PER_ROW = int((PAGE_WIDTH - 2 * SIGNATURE_START_X + SIGNATURE_SPACING) // (SIGNATURE_WIDTH + SIGNATURE_SPACING))
# Keeps the reserved signature block inside one page frame
MAX_SIGNATURE_ROWS = 8

HEADING_PREFIX = "## "


@dataclass(frozen=True)
class SignedDocumentOptions:
    include_audit_trail: bool = True
    include_verification_qr: bool = True
    watermark: str | None = None


@dataclass(frozen=True)
class SignaturePosition:
    page: int  # 0-based page index
    x: float
    y: float
    width: float = SIGNATURE_WIDTH
    height: float = SIGNATURE_HEIGHT


@dataclass(frozen=True)
class PlacedImage:
    image_data: bytes
    position: SignaturePosition


@dataclass
class SignedDocument:
    request_id: str
    document_id: str
    title: str
    content: str
    download_url: str
    verification_url: str | None
    options: SignedDocumentOptions
    pdf_bytes: bytes = b""
    page_count: int = 0
    images: list[PlacedImage] = field(default_factory=list)
    signature_rows: int = 1

    @property
    def filename(self) -> str:
        return f"SignFlow-Signed-{self.document_id}.pdf"


def verification_url(base_url: str, request_id: str) -> str:
    return f"{base_url}/verify/signature/{request_id}"


def download_url(base_url: str, request_id: str) -> str:
    return f"{base_url}/api/signatures/{request_id}/download"


def signature_row_count(total_signers: int) -> int:
    return -(-total_signers // SIGNATURES_PER_ROW)


def calculate_signature_position(page_index: int, signer_index: int, total_signers: int) -> SignaturePosition:
    """Place signer_index (0-based) left to right, wrapping into rows that stack up from the baseline.

    The first signer sits in the top row.
    """
    if total_signers < 1:
        raise ValueError("total_signers must be at least 1")
    if not 0 <= signer_index < total_signers:
        raise ValueError(f"signer_index {signer_index} outside 0..{total_signers - 1}")
    if page_index < 0:
        raise ValueError("page_index must not be negative")
    rows = signature_row_count(total_signers)
    if rows > MAX_SIGNATURE_ROWS:
        raise ValueError(f"At most {MAX_SIGNATURE_ROWS * SIGNATURES_PER_ROW} signatures fit on one page")
    row, column = divmod(signer_index, SIGNATURES_PER_ROW)
    return SignaturePosition(
        page=page_index,
        x=SIGNATURE_START_X + column * (SIGNATURE_WIDTH + SIGNATURE_SPACING),
        y=SIGNATURE_BASELINE_Y + (rows - 1 - row) * (SIGNATURE_HEIGHT + SIGNATURE_SPACING),
    )


def _fits_on_page(position: SignaturePosition) -> bool:
    return (
        position.x >= 0
        and position.y >= 0
        and position.x + position.width <= PAGE_WIDTH
        and position.y + position.height <= PAGE_HEIGHT
    )


def decode_signature_image(image_data: bytes | str) -> bytes:
    """Accept raw bytes, a data: URL or bare base64 text."""
    if isinstance(image_data, bytes):
        return image_data
    text = (image_data or "").strip()
    if text.startswith("data:"):
        _, _, text = text.partition(",")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Signature image is not valid base64") from e


def _fmt(value) -> str:
    value = as_utc(value)
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "-"


def build_signed_document_content(
    request: SignatureRequest,
    audit_entries: Sequence[SignatureAuditLog],
    options: SignedDocumentOptions,
    verify_url: str | None,
) -> str:
    lines = [
        f"{HEADING_PREFIX}Document",
        f"Document ID: {request.document_id}",
        f"Title: {request.document_title}",
    ]
    if request.document_url:
        lines.append(f"Source: {request.document_url}")
    lines += [
        f"Signature request: {request.id}",
        f"Status: {request.status}",
        f"Created: {_fmt(request.created_at)}",
        f"Completed: {_fmt(request.completed_at)}",
    ]
    if request.message:
        lines.append(f"Message: {request.message}")

    lines += ["", f"{HEADING_PREFIX}Signers"]
    for index, signer in enumerate(request.signers, start=1):
        lines.append(f"{index}. {signer.name} <{signer.email}>")
        lines.append(f"Status: {signer.status}")
        lines.append(f"Signed at: {_fmt(signer.signed_at)}")
        if signer.ip_address:
            lines.append(f"IP address: {signer.ip_address}")
        if signer.signature_type == SignatureType.typed.value and signer.signature_data:
            lines.append(f"Signature (typed): {signer.signature_data}")
        elif signer.signature_type:
            lines.append(f"Signature ({signer.signature_type}): captured image")
        lines.append("")

    if options.include_audit_trail:
        lines.append(f"{HEADING_PREFIX}Audit trail")
        for entry in audit_entries:
            ip = f" [{entry.ip_address}]" if entry.ip_address else ""
            details = f" - {entry.details}" if entry.details else ""
            lines.append(f"{_fmt(entry.created_at)} {entry.action} by {entry.actor}{ip}{details}")
        lines.append("")

    if verify_url:
        lines.append(f"{HEADING_PREFIX}Verification")
        lines.append(f"Verify this document at {verify_url}")
    return "\n".join(lines).rstrip() + "\n"


def _escape_for_reportlab(s: str) -> str:
    """Escape text for ReportLab Paragraph (XML-like markup)."""
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def _qr_drawing(url: str, size: float):
    from reportlab.graphics.barcode.qr import QrCodeWidget
    from reportlab.graphics.shapes import Drawing

    widget = QrCodeWidget(url)
    x1, y1, x2, y2 = widget.getBounds()
    drawing = Drawing(size, size, transform=[size / (x2 - x1), 0, 0, size / (y2 - y1), 0, 0])
    drawing.add(widget)
    return drawing


def signed_document_to_pdf(
    title: str,
    content: str,
    *,
    watermark: str | None = None,
    qr_url: str | None = None,
    images: Sequence[PlacedImage] = (),
    footer: str | None = None,
    signature_rows: int = 1,
) -> tuple[bytes, int]:
    """Render the document text to PDF. Returns (pdf_bytes, page_count)."""
    from reportlab.lib import colors
    from reportlab.lib.styles import getSampleStyleSheet
    from reportlab.lib.units import inch
    from reportlab.lib.utils import ImageReader
    from reportlab.platypus import CondPageBreak, Paragraph, SimpleDocTemplate, Spacer

    buf = BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=letter,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        title=title,
    )
    styles = getSampleStyleSheet()
    body_style = styles["Normal"].clone("SignedBody", spaceAfter=4)
    heading_style = styles["Heading2"]

    story = [Paragraph(_escape_for_reportlab(title.replace("\n", " ")), styles["Title"]), Spacer(1, 0.2 * inch)]
    for line in content.splitlines():
        line = line.strip()
        if line.startswith(HEADING_PREFIX):
            story.append(Paragraph(_escape_for_reportlab(line[len(HEADING_PREFIX):]), heading_style))
        elif line:
            story.append(Paragraph(_escape_for_reportlab(line), body_style))
        else:
            story.append(Spacer(1, 0.12 * inch))
    if qr_url:
        story += [Spacer(1, 0.1 * inch), _qr_drawing(qr_url, 1.2 * inch)]
    # Keep the signature rows at the bottom of the last page clear of text
    rows = min(max(signature_rows, 1), MAX_SIGNATURE_ROWS)
    reserved = SIGNATURE_BASELINE_Y + rows * (SIGNATURE_HEIGHT + SIGNATURE_SPACING)
    story += [CondPageBreak(reserved), Spacer(1, reserved - doc.bottomMargin)]

    page_width, page_height = PAGE_WIDTH, PAGE_HEIGHT
    pages = {"count": 0}

    def _decorate(canvas, _doc):
        pages["count"] += 1
        page_index = canvas.getPageNumber() - 1
        if watermark:
            canvas.saveState()
            canvas.setFillColor(colors.lightgrey)
            canvas.setFont("Helvetica-Bold", 48)
            canvas.translate(page_width / 2, page_height / 2)
            canvas.rotate(45)
            canvas.drawCentredString(0, 0, watermark)
            canvas.restoreState()
        canvas.saveState()
        for placed in images:
            if placed.position.page == page_index:
                pos = placed.position
                canvas.drawImage(
                    ImageReader(BytesIO(placed.image_data)),
                    pos.x,
                    pos.y,
                    width=pos.width,
                    height=pos.height,
                    preserveAspectRatio=True,
                    mask="auto",
                )
        if footer:
            canvas.setFont("Helvetica", 8)
            canvas.setFillColor(colors.grey)
            canvas.drawString(0.75 * inch, 0.5 * inch, f"{footer} - page {page_index + 1}")
        canvas.restoreState()

    doc.build(story, onFirstPage=_decorate, onLaterPages=_decorate)
    return buf.getvalue(), pages["count"]


def _render(document: SignedDocument) -> SignedDocument:
    qr_url = document.verification_url if document.options.include_verification_qr else None
    document.pdf_bytes, document.page_count = signed_document_to_pdf(
        document.title,
        document.content,
        watermark=document.options.watermark,
        qr_url=qr_url,
        images=document.images,
        footer=f"Signature request {document.request_id}",
        signature_rows=document.signature_rows,
    )
    return document


def _is_renderable_image(image_data: bytes) -> bool:
    from reportlab.lib.utils import ImageReader

    try:
        ImageReader(BytesIO(image_data)).getSize()
    except Exception:
        return False
    return True


def embed_signature_image(
    document: SignedDocument,
    image_data: bytes | str,
    position: SignaturePosition,
) -> SignedDocument:
    """Place a captured signature image on the document and re-render it."""
    raw = decode_signature_image(image_data)
    if not _is_renderable_image(raw):
        raise ValueError("Signature image could not be read")
    if document.page_count and not 0 <= position.page < document.page_count:
        raise ValueError(f"Page {position.page} outside document (0..{document.page_count - 1})")
    if not _fits_on_page(position):
        raise ValueError(f"Signature box at ({position.x}, {position.y}) does not fit on the page")
    document.images.append(PlacedImage(image_data=raw, position=position))
    return _render(document)


def generate_signed_document(
    request: SignatureRequest,
    audit_entries: Sequence[SignatureAuditLog],
    options: SignedDocumentOptions | None = None,
    settings: Settings | None = None,
) -> SignedDocument:
    """Render the signed record of a COMPLETED request; any other status is refused."""
    if request.status != SignatureRequestStatus.completed.value:
        raise ArtifactError(f"Signed document is only available for completed requests (status is {request.status})")
    options = options or SignedDocumentOptions()
    settings = settings or get_settings()

    verify_url = verification_url(settings.base_url, request.id) if options.include_verification_qr else None
    document = SignedDocument(
        request_id=request.id,
        document_id=request.document_id,
        title=request.document_title,
        content=build_signed_document_content(request, audit_entries, options, verify_url),
        download_url=download_url(settings.base_url, request.id),
        verification_url=verify_url,
        options=options,
    )
    signers = list(request.signers)
    rows = signature_row_count(len(signers))
    document.signature_rows = min(rows, MAX_SIGNATURE_ROWS)
    _render(document)

    if rows > MAX_SIGNATURE_ROWS:
        log.warning("Request %s has %d signers; signature images not placed", request.id, len(signers))
        return document

    # Captured drawn/uploaded signatures go on the last page's signature block
    last_page = max(document.page_count - 1, 0)
    for index, signer in enumerate(signers):
        if signer.status != SignerStatus.signed.value or signer.signature_type == SignatureType.typed.value:
            continue
        if not signer.signature_data:
            continue
        try:
            raw = decode_signature_image(signer.signature_data)
        except ValueError:
            log.warning("Signature image of signer %s is not decodable; skipped", signer.id)
            continue
        if not _is_renderable_image(raw):
            log.warning("Signature image of signer %s is not a readable image; skipped", signer.id)
            continue
        position = calculate_signature_position(last_page, index, len(signers))
        document.images.append(PlacedImage(image_data=raw, position=position))
    if document.images:
        _render(document)
    return document
