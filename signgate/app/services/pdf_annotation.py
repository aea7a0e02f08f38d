"""
Visual signature annotation for signed PDFs.

Draws a small signature block on the first page and binds the signature
metadata into XMP for human inspection.

Trust boundary:
- The annotation is presentation only. It is applied to a copy of the
  document AFTER hashing and signing and is never covered by the
  signature; authenticity is established by the signing backend.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import datetime

import pikepdf
from pikepdf import ContentStreamInstruction, Dictionary, Name, Operator

from signgate.app.core.errors import InvalidDocument

logger = logging.getLogger("signgate.pdf_annotation")

XMP_NAMESPACE = "{https://signgate.dev/ns/signature/1.0/}"

_FONT_SIZE = 8
_LINE_HEIGHT = 12
_MARGIN_X = 20
_BASE_Y = 100


class PdfAnnotationError(InvalidDocument):
    """Raised when a PDF cannot be annotated."""


@dataclass(frozen=True)
class SignatureMetadata:
    signer: str
    signature: str
    timestamp: str
    document_hash: str
    user_id: str
    session_id: str = ""

    def lines(self) -> list[str]:
        return [
            "Digitally signed document",
            f"Signer: {self.signer}",
            f"Date: {_display_timestamp(self.timestamp)}",
            f"User: {self.user_id}",
            f"Hash: {self.document_hash[:20]}...",
            f"Signature: {self.signature[:30]}...",
        ]


def _display_timestamp(value: str) -> str:
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return moment.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def _op(operator: str, *operands) -> ContentStreamInstruction:
    return ContentStreamInstruction(list(operands), Operator(operator))


def _signature_block(
    lines: list[str],
    *,
    font_name: Name,
    page_width: float,
) -> bytes:
    box_height = len(lines) * _LINE_HEIGHT + 20
    box_width = page_width - 2 * _MARGIN_X

    instructions = [
        _op("q"),
        _op("rg", 0.95, 0.95, 0.95),
        _op("RG", 0.7, 0.7, 0.7),
        _op("w", 1),
        _op("re", _MARGIN_X, _BASE_Y - 10, box_width, box_height),
        _op("B"),
        _op("rg", 0, 0, 0),
    ]

    for index, text in enumerate(lines):
        y = _BASE_Y + (len(lines) - index - 1) * _LINE_HEIGHT
        instructions.extend(
            [
                _op("BT"),
                _op("Tf", font_name, _FONT_SIZE),
                _op("Td", _MARGIN_X + 5, y),
                _op("Tj", pikepdf.String(text)),
                _op("ET"),
            ]
        )

    instructions.append(_op("Q"))
    return pikepdf.unparse_content_stream(instructions)


def ensure_annotatable(pdf_bytes: bytes) -> None:
    """
    Open the document the way annotate_signed_pdf will, without writing.

    Raises:
        PdfAnnotationError: the input is not a PDF or has no pages.
    """
    try:
        with pikepdf.open(io.BytesIO(pdf_bytes)) as pdf:
            if len(pdf.pages) == 0:
                raise PdfAnnotationError("PDF has no pages to annotate")
    except pikepdf.PdfError as exc:
        raise PdfAnnotationError(f"Document is not a readable PDF: {exc}") from exc


def annotate_signed_pdf(pdf_bytes: bytes, metadata: SignatureMetadata) -> bytes:
    """
    Return a copy of ``pdf_bytes`` with the signature block and XMP fields.

    Raises:
        PdfAnnotationError: the input is not a PDF or has no pages.
    """
    try:
        with pikepdf.open(io.BytesIO(pdf_bytes)) as pdf:
            if len(pdf.pages) == 0:
                raise PdfAnnotationError("PDF has no pages to annotate")

            page = pdf.pages[0]
            mediabox = [float(v) for v in page.mediabox]
            page_width = mediabox[2] - mediabox[0]

            font = pdf.make_indirect(
                Dictionary(
                    Type=Name.Font,
                    Subtype=Name.Type1,
                    BaseFont=Name.Helvetica,
                    Encoding=Name.WinAnsiEncoding,
                )
            )
            font_name = page.add_resource(font, Name.Font, prefix="SigF")

            block = _signature_block(
                metadata.lines(),
                font_name=font_name,
                page_width=page_width,
            )
            page.contents_add(pikepdf.Stream(pdf, block), prepend=False)

            with pdf.open_metadata() as meta:
                meta[f"{XMP_NAMESPACE}documentHash"] = metadata.document_hash
                meta[f"{XMP_NAMESPACE}signature"] = metadata.signature
                meta[f"{XMP_NAMESPACE}signer"] = metadata.signer
                meta[f"{XMP_NAMESPACE}timestamp"] = metadata.timestamp
                if metadata.session_id:
                    meta[f"{XMP_NAMESPACE}sessionId"] = metadata.session_id

            out = io.BytesIO()
            pdf.save(out)

        logger.debug(
            "pdf_annotated",
            extra={"session_id": metadata.session_id, "lines": len(metadata.lines())},
        )
        return out.getvalue()

    except PdfAnnotationError:
        raise
    except pikepdf.PdfError as exc:
        raise PdfAnnotationError(
            f"Failed to annotate PDF: {exc}"
        ) from exc
