import io
from unittest.mock import AsyncMock

import pikepdf
import pytest

from signgate.app.core.config import Settings
from signgate.app.core.errors import InvalidDocument, InvalidIdentifier
from signgate.app.schemas.session import (
    BackendSession,
    BackendSignResult,
    EIP712Domain,
    EIP712Envelope,
    SigningStatus,
)
from signgate.app.services.backend_client import SigningBackendClient
from signgate.app.services.pdf_annotation import XMP_NAMESPACE
from signgate.app.services.session_store import InMemorySessionStore
from signgate.app.services.signing_service import SigningService
from signgate.app.services.typed_data import (
    build_typed_data,
    recover_typed_data_signer,
)
from signgate.app.services.wallet import derive_wallet
from signgate.app.services.workflow import sign_pdf_with_wallet
from signgate.tests.fixtures.pdf_factory import minimal_valid_pdf, pdf_upload

pytestmark = pytest.mark.anyio

ENVELOPE = EIP712Envelope(
    domain=EIP712Domain(
        name="Document Signing",
        version="1",
        chain_id=1,
        verifying_contract="0x" + "cc" * 20,
    )
)


def make_service() -> tuple[SigningService, AsyncMock]:
    backend = AsyncMock(spec=SigningBackendClient)
    backend.create_session.return_value = BackendSession(
        session_id="s1", timestamp="2024-01-01T00:00:00.000Z"
    )
    backend.get_eip712_domain.return_value = ENVELOPE
    backend.sign_document.return_value = BackendSignResult(
        verification_link="https://verify.test/s1",
        document_url="http://backend.test/api/web3-signing/sessions/s1/document",
    )

    service = SigningService(
        backend=backend,
        store=InMemorySessionStore(),
        settings=Settings(),
    )
    return service, backend


async def test_wallet_signing_end_to_end():
    service, backend = make_service()
    wallet = derive_wallet("user-42")

    outcome = await sign_pdf_with_wallet(
        service,
        document=pdf_upload(),
        user_id="user-42",
        chain_id=137,
    )

    assert outcome.wallet_address == wallet.address
    assert outcome.result.status == SigningStatus.SIGNED
    assert outcome.session.signer_address == wallet.address

    # the submitted message verifies against the overridden chain
    submitted = backend.sign_document.await_args.kwargs
    typed_data = build_typed_data(ENVELOPE, submitted["message"], chain_id=137)
    assert (
        recover_typed_data_signer(typed_data, submitted["signature"])
        == wallet.address
    )
    assert submitted["message"]["documentHash"] == outcome.session.document_hash

    stored = await service.get_signing_session("s1")
    assert stored.signature == submitted["signature"]

    with pikepdf.open(io.BytesIO(outcome.signed_pdf)) as pdf:
        meta = pdf.open_metadata()
        assert meta[f"{XMP_NAMESPACE}signer"] == wallet.address


async def test_blank_user_id_fails_before_backend_call():
    service, backend = make_service()

    with pytest.raises(InvalidIdentifier):
        await sign_pdf_with_wallet(
            service, document=pdf_upload(), user_id="  "
        )

    backend.create_session.assert_not_awaited()


@pytest.mark.parametrize("content", [b"%PDF-garbage", minimal_valid_pdf()])
async def test_unannotatable_pdf_fails_before_backend_call(content):
    service, backend = make_service()

    with pytest.raises(InvalidDocument):
        await sign_pdf_with_wallet(
            service, document=pdf_upload(content), user_id="user-42"
        )

    backend.create_session.assert_not_awaited()
    backend.sign_document.assert_not_awaited()
