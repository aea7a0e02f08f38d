"""
Signing-session orchestration.

SigningService owns the session lifecycle:

    pending -> signed -> verified
       \\          \\
        -> failed / expired (terminal)

It validates input before any network I/O, coordinates the backend
client and the session store, and raises only SigningError subclasses.
Backend failures are never retried here; retry policy belongs to the
transport (SigningBackendClient) or the caller.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from signgate.app.core.config import Settings
from signgate.app.core.errors import (
    BackendError,
    InvalidDocument,
    InvalidRequest,
    InvalidSignature,
    SessionExpired,
    SessionNotFound,
    SessionStateConflict,
    SigningError,
)
from signgate.app.schemas.session import (
    DocumentUpload,
    EIP712Envelope,
    SigningResult,
    SigningSession,
    SigningStatus,
    utcnow,
)
from signgate.app.services.backend_client import SigningBackendClient
from signgate.app.services.session_store import DuplicateSession, SessionStore
from signgate.app.services.typed_data import message_mismatches
from signgate.app.utils.hashing import compute_document_hash, is_document_hash

logger = logging.getLogger("signgate.signing_service")

PDF_MEDIA_TYPE = "application/pdf"

# 65-byte secp256k1 signature (r, s, v), hex encoded
_SIGNATURE_RE = re.compile(r"^0x[0-9a-fA-F]{130}$")

# Backend statuses that reject the submitted signature itself.
_SIGNATURE_REJECTED_STATUSES = frozenset({400, 422})


class SigningService:
    """
    Drives signing sessions through their lifecycle.

    Concurrent sign_document calls on one session id are serialised by a
    per-session lock and an update-if-unchanged write, so at most one
    signature is ever recorded per session.
    """

    def __init__(
        self,
        *,
        backend: SigningBackendClient,
        store: SessionStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._backend = backend
        self._store = store
        self._settings = settings
        self._clock = clock
        self._session_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Session creation
    # ------------------------------------------------------------------

    async def create_signing_session(
        self,
        document: Optional[DocumentUpload],
        signer_address: str,
        user_id: str,
        message: Optional[str] = None,
    ) -> SigningSession:
        self._validate_document(document)

        if not signer_address or not signer_address.strip():
            raise InvalidRequest("signerAddress is required")
        if not user_id or not user_id.strip():
            raise InvalidRequest("userID is required")

        message = message or self._settings.default_message

        # Anchor to the exact uploaded bytes before any round-trip.
        content_hash = compute_document_hash(document.content)
        requested_at = self._clock()

        logger.info(
            "signing_session_requested",
            extra={
                "user_id": user_id,
                "signer_address": signer_address,
                "document_size": document.size,
                "content_hash": content_hash,
            },
        )

        created = await self._backend.create_session(
            document=document,
            signer_address=signer_address,
            user_id=user_id,
            message=message,
            timestamp=_iso_timestamp(requested_at),
        )

        document_hash = created.document_hash or content_hash
        if (
            created.document_hash
            and is_document_hash(created.document_hash.lower())
            and created.document_hash.lower() != content_hash
        ):
            logger.warning(
                "document_hash_mismatch",
                extra={
                    "session_id": created.session_id,
                    "backend_hash": created.document_hash,
                    "content_hash": content_hash,
                },
            )

        session = SigningSession(
            session_id=created.session_id,
            document_hash=document_hash,
            content_hash=content_hash,
            signer_address=signer_address,
            message=message,
            user_id=user_id,
            timestamp=created.timestamp or _iso_timestamp(requested_at),
            status=SigningStatus.PENDING,
            created_at=requested_at,
            updated_at=requested_at,
        )

        try:
            await self._store.save(session)
        except DuplicateSession as exc:
            raise SessionStateConflict(
                "Signing backend issued a session id that is already in use",
                details={"session_id": session.session_id},
            ) from exc

        logger.info(
            "signing_session_created",
            extra={"session_id": session.session_id, "user_id": user_id},
        )
        return session

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_signing_session(self, session_id: str) -> SigningSession:
        session = await self._store.find(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return await self._expire_if_stale(session)

    async def get_user_sessions(self, user_id: str) -> list[SigningSession]:
        sessions: list[SigningSession] = []
        for session in await self._store.find_by_user(user_id):
            try:
                sessions.append(await self._expire_if_stale(session))
            except SessionNotFound:
                # cancelled between the listing and the expiry write
                continue
        return sessions

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    async def sign_document(
        self,
        session_id: str,
        signature: str,
        typed_message: Optional[dict[str, Any]] = None,
    ) -> SigningResult:
        if not session_id:
            raise InvalidRequest("sessionId is required")
        if not signature:
            raise InvalidRequest("signature is required")

        # Unknown ids fail here, before a lock is ever allocated for them.
        await self.get_signing_session(session_id)

        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        try:
            return await self._sign_locked(
                lock, session_id, signature, typed_message
            )
        finally:
            await self._release_settled_lock(session_id)

    async def _sign_locked(
        self,
        lock: asyncio.Lock,
        session_id: str,
        signature: str,
        typed_message: Optional[dict[str, Any]],
    ) -> SigningResult:
        async with lock:
            session = await self.get_signing_session(session_id)

            if not _SIGNATURE_RE.match(signature):
                raise InvalidSignature(
                    "Signature must be a 0x-prefixed 65-byte hex string",
                    details={"session_id": session_id},
                )

            if session.status == SigningStatus.EXPIRED:
                raise SessionExpired(
                    "Signing session has expired",
                    details={"session_id": session_id},
                )
            if session.status != SigningStatus.PENDING:
                raise SessionStateConflict(
                    f"Session is already '{session.status.value}'",
                    details={
                        "session_id": session_id,
                        "status": session.status.value,
                    },
                )

            if typed_message is not None:
                mismatched = message_mismatches(
                    typed_message,
                    session_id=session.session_id,
                    document_hash=session.document_hash,
                    signer_address=session.signer_address,
                )
                if mismatched:
                    raise InvalidSignature(
                        "Signed message is not bound to this session",
                        details={
                            "session_id": session_id,
                            "fields": mismatched,
                        },
                    )

            try:
                outcome = await self._backend.sign_document(
                    session_id=session_id,
                    signature=signature,
                    message=typed_message,
                    wallet_address=(
                        session.signer_address if typed_message else None
                    ),
                )
            except SigningError as exc:
                logger.error(
                    "sign_document_failed",
                    extra={
                        "session_id": session_id,
                        "error_code": exc.code.value,
                        **exc.details,
                    },
                )
                if (
                    isinstance(exc, BackendError)
                    and exc.operation == "sign_document"
                    and exc.status_code in _SIGNATURE_REJECTED_STATUSES
                ):
                    await self._store.update(
                        session.transition(SigningStatus.FAILED),
                        expected_status=SigningStatus.PENDING,
                    )
                raise

            signed = session.transition(
                SigningStatus.SIGNED,
                signature=signature,
                verification_link=outcome.verification_link,
                document_url=outcome.document_url,
            )
            if not await self._store.update(
                signed, expected_status=SigningStatus.PENDING
            ):
                if await self._store.find(session_id) is None:
                    raise SessionNotFound(session_id)
                raise SessionStateConflict(
                    "Session changed while the signature was submitted",
                    details={"session_id": session_id},
                )

        logger.info(
            "document_signed",
            extra={
                "session_id": session_id,
                "verification_link": outcome.verification_link,
            },
        )

        return SigningResult(
            session_id=session_id,
            signature=signature,
            document_hash=signed.document_hash,
            verification_link=outcome.verification_link,
            signed_document_url=outcome.document_url,
            status=SigningStatus.SIGNED,
        )

    async def get_eip712_domain(
        self,
        chain_id: Optional[int] = None,
    ) -> EIP712Envelope:
        envelope = await self._backend.get_eip712_domain()
        return envelope.with_chain_id(chain_id)

    # ------------------------------------------------------------------
    # Verification & artifacts
    # ------------------------------------------------------------------

    async def get_verification_link(self, session_id: str) -> str:
        """
        Cached link when the session has one, else one backend call.

        A fetched link is not written back to the session.
        """
        session = await self.get_signing_session(session_id)
        if session.verification_link:
            return session.verification_link
        return await self._backend.get_verification_link(session_id)

    async def get_signed_document(self, session_id: str) -> bytes:
        """Always served by the backend; the signed artifact lives there."""
        return await self._backend.get_signed_document(session_id)

    async def verify_signature(self, session_id: str) -> bool:
        """
        Advisory check. Returns False on any lookup failure.

        Authoritative verification happens on the backend/public side.
        """
        try:
            link = await self.get_verification_link(session_id)
            if not link:
                return False

            session = await self.get_signing_session(session_id)
            if session.status == SigningStatus.SIGNED:
                await self._store.update(
                    session.transition(SigningStatus.VERIFIED),
                    expected_status=SigningStatus.SIGNED,
                )
            return True
        except SigningError as exc:
            logger.info(
                "verify_signature_unresolved",
                extra={"session_id": session_id, "error_code": exc.code.value},
            )
            return False

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_session(self, session_id: str) -> None:
        """
        Remove the local mirror of a session.

        The signing backend exposes no cancellation endpoint, so the
        backend copy stays resolvable after this call.
        """
        if not await self._store.delete(session_id):
            raise SessionNotFound(session_id)

        self._session_locks.pop(session_id, None)

        logger.warning(
            "session_cancelled_locally",
            extra={
                "session_id": session_id,
                "backend_copy_retained": True,
            },
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _validate_document(self, document: Optional[DocumentUpload]) -> None:
        if document is None:
            raise InvalidDocument("Document is required")

        if document.content_type != PDF_MEDIA_TYPE:
            raise InvalidDocument(
                "Only PDF documents are supported",
                details={"content_type": document.content_type},
            )

        if document.size == 0:
            raise InvalidDocument("Document is empty")

        if document.size > self._settings.max_pdf_size_bytes:
            raise InvalidDocument(
                f"Document too large (max {self._settings.max_pdf_size_mb}MB)",
                details={"size": document.size},
            )

    async def _release_settled_lock(self, session_id: str) -> None:
        """Locks only guard pending sessions; drop them once that is over."""
        current = await self._store.find(session_id)
        if current is None or current.status != SigningStatus.PENDING:
            self._session_locks.pop(session_id, None)

    async def _expire_if_stale(self, session: SigningSession) -> SigningSession:
        if session.status != SigningStatus.PENDING:
            return session

        ttl = timedelta(minutes=self._settings.session_ttl_minutes)
        if self._clock() - session.created_at <= ttl:
            return session

        expired = session.transition(SigningStatus.EXPIRED)
        if await self._store.update(
            expired, expected_status=SigningStatus.PENDING
        ):
            logger.info(
                "signing_session_expired",
                extra={"session_id": session.session_id},
            )
            return expired

        current = await self._store.find(session.session_id)
        if current is None:
            raise SessionNotFound(session.session_id)
        return current


def _iso_timestamp(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
