import logging
import uuid
from typing import Annotated, Any, Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import ORJSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from signgate.app.core.config import Settings
from signgate.app.core.errors import (
    InvalidRequest,
    SigningError,
    SigningErrorCode,
)
from signgate.app.schemas.session import DocumentUpload
from signgate.app.services.signing_service import SigningService
from signgate.app.services.workflow import sign_pdf_with_wallet

logger = logging.getLogger("signgate.api")

router = APIRouter(tags=["Web3 Signing"])

CORRELATION_HEADER = "X-Correlation-ID"

# Exhaustive: every SigningErrorCode has an HTTP status.
ERROR_STATUS: dict[SigningErrorCode, int] = {
    SigningErrorCode.INVALID_DOCUMENT: status.HTTP_400_BAD_REQUEST,
    SigningErrorCode.INVALID_SIGNATURE: status.HTTP_400_BAD_REQUEST,
    SigningErrorCode.INVALID_IDENTIFIER: status.HTTP_400_BAD_REQUEST,
    SigningErrorCode.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    SigningErrorCode.SESSION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    SigningErrorCode.SESSION_STATE_CONFLICT: status.HTTP_409_CONFLICT,
    SigningErrorCode.SESSION_EXPIRED: status.HTTP_410_GONE,
    SigningErrorCode.BACKEND_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    SigningErrorCode.BACKEND_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    SigningErrorCode.BACKEND_NOT_CONFIGURED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# =============================================================================
# Request models
# =============================================================================

class SignRequest(BaseModel):
    """
    Body of POST /sign.

    Fields are optional at the schema level so that missing fields are
    reported as INVALID_REQUEST (400) rather than a validation error.
    """

    session_id: Optional[str] = Field(None, alias="sessionId")
    signature: Optional[str] = None
    message: Optional[dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Dependency providers
# =============================================================================

def new_correlation_id(header_value: Optional[str]) -> str:
    """Reuse a caller-supplied correlation ID unless it is oversized."""
    if header_value and len(header_value) <= 128:
        return header_value
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id is None:
        correlation_id = new_correlation_id(
            request.headers.get(CORRELATION_HEADER)
        )
        request.state.correlation_id = correlation_id
    return correlation_id


def get_signing_service(request: Request) -> SigningService:
    service = getattr(request.app.state, "signing_service", None)
    if service is None:
        raise RuntimeError("signing service not initialized")
    return service


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


ServiceDep = Annotated[SigningService, Depends(get_signing_service)]
CorrelationDep = Annotated[str, Depends(get_correlation_id)]


# =============================================================================
# Error mapping
# =============================================================================

async def signing_error_handler(
    request: Request,
    exc: SigningError,
) -> ORJSONResponse:
    correlation_id = get_correlation_id(request)
    status_code = ERROR_STATUS[exc.code]

    log = logger.error if status_code >= 500 else logger.info
    log(
        "signing_request_failed",
        extra={
            "trace_id": correlation_id,
            "path": request.url.path,
            "error_code": exc.code.value,
            "status_code": status_code,
        },
    )

    return ORJSONResponse(
        status_code=status_code,
        content={"error": exc.to_payload()},
        headers={CORRELATION_HEADER: correlation_id},
    )


async def _read_upload(upload: UploadFile, max_bytes: int) -> DocumentUpload:
    """Bounded read: at most one byte past the limit is buffered."""
    try:
        content = await upload.read(max_bytes + 1)
    finally:
        await upload.close()

    return DocumentUpload(
        filename=_safe_filename(upload.filename),
        content_type=upload.content_type,
        content=content,
    )


def _safe_filename(filename: Optional[str]) -> str:
    if not filename:
        return "document.pdf"
    return (
        filename.replace('"', "")
        .replace("\n", "")
        .replace("\r", "")
        .replace("/", "_")
        .replace("\\", "_")
    )


# =============================================================================
# Sessions
# =============================================================================

@router.post(
    "/sessions",
    summary="Create a signing session for a PDF document",
    responses={
        400: {"description": "Missing fields or invalid document"},
        500: {"description": "Signing backend error"},
        503: {"description": "Signing backend unavailable"},
    },
)
async def create_session(
    request: Request,
    service: ServiceDep,
    correlation_id: CorrelationDep,
    document: Annotated[
        Optional[UploadFile],
        File(description="PDF document to sign"),
    ] = None,
    signer_address: Annotated[Optional[str], Form(alias="signerAddress")] = None,
    user_id: Annotated[Optional[str], Form(alias="userID")] = None,
    message: Annotated[Optional[str], Form()] = None,
) -> ORJSONResponse:
    if document is None or not signer_address or not user_id:
        raise InvalidRequest(
            "Missing required fields: document, signerAddress, userID"
        )

    settings = get_app_settings(request)
    upload = await _read_upload(document, settings.max_pdf_size_bytes)

    logger.info(
        "create_session_received",
        extra={
            "trace_id": correlation_id,
            "document_name": upload.filename,
            "document_size": upload.size,
            "user_id": user_id,
        },
    )

    session = await service.create_signing_session(
        upload,
        signer_address=signer_address,
        user_id=user_id,
        message=message,
    )

    return ORJSONResponse(
        content={
            "sessionId": session.session_id,
            "documentHash": session.document_hash,
            "timestamp": session.timestamp,
            "status": session.status.value,
        },
        headers={CORRELATION_HEADER: correlation_id},
    )


@router.get("/sessions/{session_id}", summary="Local session record")
async def get_session(
    session_id: str,
    service: ServiceDep,
    correlation_id: CorrelationDep,
) -> ORJSONResponse:
    session = await service.get_signing_session(session_id)
    return ORJSONResponse(
        content=session.to_wire(),
        headers={CORRELATION_HEADER: correlation_id},
    )


@router.delete(
    "/sessions/{session_id}",
    summary="Cancel a session (local mirror only)",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def cancel_session(
    session_id: str,
    service: ServiceDep,
    correlation_id: CorrelationDep,
) -> Response:
    await service.cancel_session(session_id)
    return Response(
        status_code=status.HTTP_204_NO_CONTENT,
        headers={CORRELATION_HEADER: correlation_id},
    )


@router.get("/users/{user_id}/sessions", summary="Sessions of a user")
async def list_user_sessions(
    user_id: str,
    service: ServiceDep,
    correlation_id: CorrelationDep,
) -> ORJSONResponse:
    sessions = await service.get_user_sessions(user_id)
    return ORJSONResponse(
        content={
            "userID": user_id,
            "sessions": [s.to_wire() for s in sessions],
        },
        headers={CORRELATION_HEADER: correlation_id},
    )


# =============================================================================
# EIP-712 & signing
# =============================================================================

@router.get("/eip712-domain", summary="EIP-712 signing domain and types")
async def get_eip712_domain(
    service: ServiceDep,
    correlation_id: CorrelationDep,
    chain_id: Annotated[
        Optional[int],
        Query(alias="chainId", description="Signer's active chain id"),
    ] = None,
) -> ORJSONResponse:
    envelope = await service.get_eip712_domain(chain_id=chain_id)
    return ORJSONResponse(
        content=envelope.to_wire(),
        headers={CORRELATION_HEADER: correlation_id},
    )


@router.post("/sign", summary="Submit an EIP-712 signature for a session")
async def sign_document(
    body: SignRequest,
    service: ServiceDep,
    correlation_id: CorrelationDep,
) -> ORJSONResponse:
    if not body.session_id or not body.signature:
        raise InvalidRequest("Missing required fields: sessionId, signature")

    result = await service.sign_document(
        body.session_id,
        body.signature,
        typed_message=body.message,
    )

    return ORJSONResponse(
        content=result.model_dump(by_alias=True, mode="json"),
        headers={CORRELATION_HEADER: correlation_id},
    )


# =============================================================================
# Verification & artifacts
# =============================================================================

@router.get(
    "/sessions/{session_id}/verification-link",
    summary="Public verification URL",
)
async def get_verification_link(
    session_id: str,
    service: ServiceDep,
    correlation_id: CorrelationDep,
) -> ORJSONResponse:
    link = await service.get_verification_link(session_id)
    return ORJSONResponse(
        content={"sessionId": session_id, "verificationLink": link},
        headers={CORRELATION_HEADER: correlation_id},
    )


@router.get(
    "/sessions/{session_id}/verify",
    summary="Advisory signature check",
)
async def verify_session(
    session_id: str,
    service: ServiceDep,
    correlation_id: CorrelationDep,
) -> ORJSONResponse:
    verified = await service.verify_signature(session_id)
    return ORJSONResponse(
        content={"sessionId": session_id, "verified": verified},
        headers={CORRELATION_HEADER: correlation_id},
    )


@router.get(
    "/sessions/{session_id}/document",
    summary="Download the signed PDF",
    response_class=Response,
    responses={
        200: {
            "content": {"application/pdf": {}},
            "description": "Signed PDF artifact",
        },
        500: {"description": "Signing backend error"},
    },
)
async def get_signed_document(
    session_id: str,
    service: ServiceDep,
    correlation_id: CorrelationDep,
) -> Response:
    pdf_bytes = await service.get_signed_document(session_id)
    filename = _safe_filename(f"signed_document_{session_id}.pdf")

    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            CORRELATION_HEADER: correlation_id,
        },
    )


# =============================================================================
# POST /demo/sign-pdf (deterministic wallets, disabled by default)
# =============================================================================

@router.post(
    "/demo/sign-pdf",
    summary="Sign a PDF with the wallet derived from a user id (demo only)",
    response_class=Response,
    responses={
        200: {
            "content": {"application/pdf": {}},
            "description": "Annotated PDF",
        },
        404: {"description": "Deterministic wallets are disabled"},
    },
)
async def demo_sign_pdf(
    request: Request,
    service: ServiceDep,
    correlation_id: CorrelationDep,
    document: Annotated[
        Optional[UploadFile],
        File(description="PDF document to sign"),
    ] = None,
    user_id: Annotated[Optional[str], Form(alias="userID")] = None,
    chain_id: Annotated[Optional[int], Form(alias="chainId")] = None,
) -> Response:
    settings = get_app_settings(request)

    if not settings.enable_deterministic_wallets:
        return ORJSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": "Not Found"},
            headers={CORRELATION_HEADER: correlation_id},
        )

    if document is None or not user_id:
        raise InvalidRequest("Missing required fields: document, userID")

    upload = await _read_upload(document, settings.max_pdf_size_bytes)

    logger.warning(
        "deterministic_wallet_signing",
        extra={"trace_id": correlation_id, "user_id": user_id},
    )

    outcome = await sign_pdf_with_wallet(
        service,
        document=upload,
        user_id=user_id,
        chain_id=chain_id,
    )

    headers = {
        "Content-Disposition": (
            f'attachment; filename="signed_{upload.filename}"'
        ),
        CORRELATION_HEADER: correlation_id,
        "X-Session-ID": outcome.session.session_id,
        "X-Signer-Address": outcome.wallet_address,
    }
    if outcome.result.verification_link:
        headers["X-Verification-Link"] = outcome.result.verification_link

    return Response(
        content=outcome.signed_pdf,
        media_type="application/pdf",
        headers=headers,
    )
