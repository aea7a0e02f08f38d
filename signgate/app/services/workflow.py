"""
End-to-end signing with an identifier-derived wallet.

DEMO ONLY: see services.wallet for the custody caveat. The HTTP route
exposing this flow is disabled unless GATEWAY_ENABLE_DETERMINISTIC_WALLETS
is set.

Sequence:
  1. derive wallet from the user id, check the PDF can be annotated
  2. create the signing session (document hash anchored to upload bytes)
  3. fetch the EIP-712 domain, overriding the chain id if requested
  4. build the message (timestamp captured once) and sign typed data
  5. submit signature + message
  6. annotate a copy of the PDF with the signature metadata
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from signgate.app.schemas.session import (
    DocumentUpload,
    SigningResult,
    SigningSession,
)
from signgate.app.services.pdf_annotation import (
    SignatureMetadata,
    annotate_signed_pdf,
    ensure_annotatable,
)
from signgate.app.services.signing_service import SigningService
from signgate.app.services.typed_data import (
    build_signing_message,
    build_typed_data,
)
from signgate.app.services.wallet import derive_wallet

logger = logging.getLogger("signgate.workflow")


@dataclass(frozen=True)
class WalletSigningOutcome:
    session: SigningSession
    result: SigningResult
    signed_pdf: bytes
    wallet_address: str


async def sign_pdf_with_wallet(
    service: SigningService,
    *,
    document: DocumentUpload,
    user_id: str,
    chain_id: Optional[int] = None,
) -> WalletSigningOutcome:
    wallet = derive_wallet(user_id)

    # Rejected here, the backend never sees a document it cannot annotate.
    if document is not None:
        ensure_annotatable(document.content)

    session = await service.create_signing_session(
        document,
        signer_address=wallet.address,
        user_id=user_id.strip(),
        message=f"Signing document for user {user_id.strip()}",
    )

    envelope = await service.get_eip712_domain(chain_id=chain_id)

    message = build_signing_message(
        session_id=session.session_id,
        wallet_address=wallet.address,
        document_hash=session.document_hash,
    )
    signature = wallet.sign_typed_data(build_typed_data(envelope, message))

    result = await service.sign_document(
        session.session_id,
        signature,
        typed_message=message,
    )

    signed_pdf = annotate_signed_pdf(
        document.content,
        SignatureMetadata(
            signer=wallet.address,
            signature=signature,
            timestamp=session.timestamp,
            document_hash=session.document_hash,
            user_id=session.user_id,
            session_id=session.session_id,
        ),
    )

    logger.info(
        "wallet_signing_completed",
        extra={
            "session_id": session.session_id,
            "signer_address": wallet.address,
            "chain_id": envelope.domain.chain_id,
        },
    )

    return WalletSigningOutcome(
        session=session,
        result=result,
        signed_pdf=signed_pdf,
        wallet_address=wallet.address,
    )
