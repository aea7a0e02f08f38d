import io

import pikepdf
import pytest

from signgate.app.core.errors import InvalidDocument
from signgate.app.services.pdf_annotation import (
    XMP_NAMESPACE,
    PdfAnnotationError,
    SignatureMetadata,
    annotate_signed_pdf,
    ensure_annotatable,
)
from signgate.tests.fixtures.pdf_factory import minimal_valid_pdf, single_page_pdf

METADATA = SignatureMetadata(
    signer="0x" + "dd" * 20,
    signature="0x" + "1b" * 65,
    timestamp="2024-01-01T12:30:00.000Z",
    document_hash="0x" + "ab" * 32,
    user_id="user-42",
    session_id="s1",
)


def _shown_text(pdf: pikepdf.Pdf) -> list[str]:
    return [
        str(operands[0])
        for operands, operator in pikepdf.parse_content_stream(pdf.pages[0])
        if str(operator) == "Tj"
    ]


def test_signature_block_is_drawn_on_first_page():
    annotated = annotate_signed_pdf(single_page_pdf(), METADATA)

    with pikepdf.open(io.BytesIO(annotated)) as pdf:
        lines = _shown_text(pdf)

    assert lines == METADATA.lines()
    assert lines[0] == "Digitally signed document"
    assert lines[1] == f"Signer: {METADATA.signer}"
    assert lines[2] == "Date: 2024-01-01 12:30:00 UTC"
    assert lines[4].endswith("...")


def test_signature_metadata_is_bound_into_xmp():
    annotated = annotate_signed_pdf(single_page_pdf(), METADATA)

    with pikepdf.open(io.BytesIO(annotated)) as pdf:
        meta = pdf.open_metadata()
        assert meta[f"{XMP_NAMESPACE}documentHash"] == METADATA.document_hash
        assert meta[f"{XMP_NAMESPACE}signer"] == METADATA.signer
        assert meta[f"{XMP_NAMESPACE}signature"] == METADATA.signature
        assert meta[f"{XMP_NAMESPACE}sessionId"] == "s1"


def test_annotation_does_not_touch_the_input():
    original = single_page_pdf()
    snapshot = bytes(original)

    annotated = annotate_signed_pdf(original, METADATA)

    assert original == snapshot
    assert annotated != original


def test_pdf_without_pages_is_rejected():
    with pytest.raises(PdfAnnotationError):
        annotate_signed_pdf(minimal_valid_pdf(), METADATA)


def test_non_pdf_is_rejected():
    with pytest.raises(PdfAnnotationError):
        annotate_signed_pdf(b"not a pdf", METADATA)


def test_unreadable_pdf_is_an_invalid_document():
    with pytest.raises(InvalidDocument):
        ensure_annotatable(b"%PDF-garbage")
    with pytest.raises(InvalidDocument):
        ensure_annotatable(minimal_valid_pdf())


def test_annotatable_pdf_passes_the_check():
    ensure_annotatable(single_page_pdf())
