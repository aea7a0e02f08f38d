"""
Async client for the external signing backend.

HARD GUARANTEES:
- Stateless: no session state is held between calls
- One HTTP call per operation (sign_document additionally tries to resolve
  the verification link when the sign reply does not carry one; that
  lookup is best-effort)
- Every call is authenticated with the pre-shared X-API-Key header
- Non-2xx replies become BackendError (status code + raw body)
- Transport failures (DNS, refused, timeout) become BackendUnavailable
- Only idempotent GET calls are retried, and only on BackendUnavailable
"""

import logging
from typing import Annotated, Any, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from signgate.app.core.config import Settings
from signgate.app.core.errors import (
    BackendError,
    BackendNotConfigured,
    BackendUnavailable,
    SigningError,
)
from signgate.app.schemas.session import (
    BackendSession,
    BackendSignResult,
    DocumentUpload,
    EIP712Envelope,
)

logger = logging.getLogger("signgate.backend_client")


class SigningBackendClient:
    """
    Boundary adapter for the signing backend's web3-signing API.
    """

    API_PREFIX = "/api/web3-signing"

    DEFAULT_RETRY_WAIT = wait_exponential(multiplier=0.5, min=0.5, max=4)

    def __init__(
        self,
        http_client: Annotated[
            httpx.AsyncClient,
            "Persistent HTTP client",
        ],
        settings: Annotated[
            Settings,
            "Application configuration",
        ],
        retry_wait: Any = None,
    ):
        self.client = http_client
        self.settings = settings
        self.retry_wait = retry_wait or self.DEFAULT_RETRY_WAIT

        self.base_url: Optional[str] = (
            str(settings.backend_base_url).rstrip("/")
            if settings.backend_base_url is not None
            else None
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_session(
        self,
        *,
        document: DocumentUpload,
        signer_address: str,
        user_id: str,
        message: str,
        timestamp: str,
    ) -> BackendSession:
        """Register a document and obtain the backend session id."""
        operation = "create_session"

        response = await self._request(
            "POST",
            "/sessions",
            operation=operation,
            files={
                "document": (
                    document.filename,
                    document.content,
                    document.content_type or "application/pdf",
                ),
            },
            data={
                "signerAddress": signer_address,
                "userID": user_id,
                "message": message,
                "timestamp": timestamp,
            },
        )

        payload = self._json(response, operation=operation)
        try:
            return BackendSession.model_validate(payload)
        except ValidationError as exc:
            raise BackendError(
                "Signing backend returned an invalid session payload",
                operation=operation,
                status_code=response.status_code,
                body=response.text,
            ) from exc

    async def sign_document(
        self,
        *,
        session_id: str,
        signature: str,
        message: Optional[dict[str, Any]] = None,
        wallet_address: Optional[str] = None,
    ) -> BackendSignResult:
        """
        Submit a signature for a session.

        When the typed message is supplied it is forwarded verbatim, so
        the backend verifies against exactly the signed timestamp.
        """
        operation = "sign_document"

        body: dict[str, Any] = {
            "sessionId": session_id,
            "signature": signature,
        }
        if message is not None:
            body["eip712Signature"] = {
                "signature": signature,
                "message": message,
            }
        if wallet_address is not None:
            body["walletAddress"] = wallet_address

        response = await self._request(
            "POST",
            "/sign",
            operation=operation,
            session_id=session_id,
            json=body,
        )
        payload = self._json(
            response, operation=operation, session_id=session_id
        )

        # The signature is accepted at this point; a failed link lookup
        # must not turn it into an error.
        link = _extract_link(payload)
        if not link:
            try:
                link = await self.get_verification_link(session_id)
            except SigningError as exc:
                logger.warning(
                    "verification_link_unresolved",
                    extra={
                        "session_id": session_id,
                        "error_code": exc.code.value,
                    },
                )
                link = None

        return BackendSignResult(
            verification_link=link,
            document_url=self.document_url(session_id),
        )

    async def get_eip712_domain(self) -> EIP712Envelope:
        operation = "get_eip712_domain"

        response = await self._get("/eip712-domain", operation=operation)
        payload = self._json(response, operation=operation)

        if "domain" not in payload:
            payload = {"domain": payload}

        try:
            return EIP712Envelope.model_validate(payload)
        except ValidationError as exc:
            raise BackendError(
                "Signing backend returned an invalid EIP-712 domain",
                operation=operation,
                status_code=response.status_code,
                body=response.text,
            ) from exc

    async def get_verification_link(self, session_id: str) -> str:
        operation = "get_verification_link"

        response = await self._get(
            f"/sessions/{_quote(session_id)}/verification-link",
            operation=operation,
            session_id=session_id,
        )
        payload = self._json(
            response, operation=operation, session_id=session_id
        )

        link = _extract_link(payload)
        if not link:
            raise BackendError(
                "Signing backend returned no verification link",
                operation=operation,
                status_code=response.status_code,
                body=response.text,
                session_id=session_id,
            )
        return link

    async def get_signed_document(self, session_id: str) -> bytes:
        response = await self._get(
            f"/sessions/{_quote(session_id)}/document",
            operation="get_signed_document",
            session_id=session_id,
            accept="application/pdf",
        )
        return response.content

    async def verify_signature(self, session_id: str) -> bool:
        """Derived check: a session verifies when a link resolves."""
        try:
            return bool(await self.get_verification_link(session_id))
        except SigningError:
            return False

    def document_url(self, session_id: str) -> str:
        return (
            f"{self._require_base_url()}{self.API_PREFIX}"
            f"/sessions/{_quote(session_id)}/document"
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_base_url(self) -> str:
        if self.base_url is None or not self.settings.backend_configured:
            raise BackendNotConfigured(
                "Signing backend is not configured "
                "(set GATEWAY_BACKEND_BASE_URL and GATEWAY_BACKEND_API_KEY)"
            )
        return self.base_url

    def _headers(self, accept: str) -> dict[str, str]:
        # _require_base_url has already checked the key is present
        api_key = self.settings.backend_api_key.get_secret_value()
        return {
            "X-API-Key": api_key,
            "Accept": accept,
        }

    async def _get(
        self,
        path: str,
        *,
        operation: str,
        session_id: Optional[str] = None,
        accept: str = "application/json",
    ) -> httpx.Response:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.backend_retry_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(BackendUnavailable),
            reraise=True,
        ):
            with attempt:
                return await self._request(
                    "GET",
                    path,
                    operation=operation,
                    session_id=session_id,
                    accept=accept,
                )

        raise AssertionError("unreachable")  # pragma: no cover

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        session_id: Optional[str] = None,
        accept: str = "application/json",
        **kwargs: Any,
    ) -> httpx.Response:
        url = f"{self._require_base_url()}{self.API_PREFIX}{path}"

        try:
            response = await self.client.request(
                method,
                url,
                headers=self._headers(accept),
                timeout=self.settings.request_timeout_seconds,
                **kwargs,
            )
        except httpx.RequestError as exc:
            logger.warning(
                "signing_backend_unreachable",
                extra={
                    "operation": operation,
                    "session_id": session_id,
                    "error_type": type(exc).__name__,
                },
            )
            raise BackendUnavailable(
                f"Signing backend unreachable during {operation}",
                operation=operation,
                session_id=session_id,
            ) from exc

        if not response.is_success:
            logger.error(
                "signing_backend_request_failed",
                extra={
                    "operation": operation,
                    "session_id": session_id,
                    "status_code": response.status_code,
                    "response_body": response.text,
                },
            )
            raise BackendError(
                f"Signing backend error: {response.status_code}",
                operation=operation,
                status_code=response.status_code,
                body=response.text,
                session_id=session_id,
            )

        return response

    def _json(
        self,
        response: httpx.Response,
        *,
        operation: str,
        session_id: Optional[str] = None,
    ) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise BackendError(
                "Signing backend returned a non-JSON response",
                operation=operation,
                status_code=response.status_code,
                body=response.text,
                session_id=session_id,
            ) from exc

        if not isinstance(payload, dict):
            raise BackendError(
                "Signing backend returned an unexpected JSON shape",
                operation=operation,
                status_code=response.status_code,
                body=response.text,
                session_id=session_id,
            )
        return payload


def _quote(session_id: str) -> str:
    return quote(session_id, safe="")


def _extract_link(payload: dict[str, Any]) -> Optional[str]:
    for key in ("verificationLink", "verificationUrl", "link", "url"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None
