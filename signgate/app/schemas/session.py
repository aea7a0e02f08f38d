"""
Session and signing data model.

SigningSession instances are immutable snapshots. Lifecycle changes go
through SigningSession.transition(), which enforces forward-only status
moves and returns a new snapshot; the store persists snapshots, so no
caller can mutate stored state in place.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from signgate.app.core.errors import SessionStateConflict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Status (finite, forward-only)
# ----------------------------------------------------------------------

class SigningStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {SigningStatus.VERIFIED, SigningStatus.FAILED, SigningStatus.EXPIRED}
)

ALLOWED_TRANSITIONS: dict[SigningStatus, frozenset[SigningStatus]] = {
    SigningStatus.PENDING: frozenset(
        {SigningStatus.SIGNED, SigningStatus.FAILED, SigningStatus.EXPIRED}
    ),
    SigningStatus.SIGNED: frozenset(
        {SigningStatus.VERIFIED, SigningStatus.FAILED, SigningStatus.EXPIRED}
    ),
    SigningStatus.VERIFIED: frozenset(),
    SigningStatus.FAILED: frozenset(),
    SigningStatus.EXPIRED: frozenset(),
}

# Fields fixed at creation time.
_IMMUTABLE_FIELDS = frozenset(
    {"session_id", "document_hash", "content_hash", "signer_address",
     "user_id", "timestamp", "created_at"}
)


# ----------------------------------------------------------------------
# Session
# ----------------------------------------------------------------------

class SigningSession(BaseModel):
    """One document-signing transaction, mirrored locally."""

    session_id: str = Field(..., alias="sessionId", min_length=1)
    document_hash: str = Field(..., alias="documentHash")
    content_hash: str = Field("", alias="contentHash")
    signer_address: str = Field(..., alias="signerAddress")
    signature: str = ""
    message: str
    user_id: str = Field(..., alias="userID")
    timestamp: str
    status: SigningStatus = SigningStatus.PENDING
    verification_link: Optional[str] = Field(None, alias="verificationLink")
    document_url: Optional[str] = Field(None, alias="documentUrl")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="forbid",
    )

    def transition(
        self,
        status: SigningStatus,
        **changes: Any,
    ) -> "SigningSession":
        """
        Return a copy advanced to ``status`` with ``changes`` applied.

        Raises SessionStateConflict for backward or post-terminal moves,
        for attempts to rewrite creation-time fields, and for a signature
        change once a signature is recorded.
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise SessionStateConflict(
                f"Cannot move session from '{self.status.value}' "
                f"to '{status.value}'",
                details={
                    "session_id": self.session_id,
                    "from": self.status.value,
                    "to": status.value,
                },
            )

        frozen = _IMMUTABLE_FIELDS.intersection(changes)
        if frozen:
            raise SessionStateConflict(
                f"Fields are immutable after creation: {sorted(frozen)}",
                details={"session_id": self.session_id},
            )

        new_signature = changes.get("signature")
        if new_signature is not None:
            if self.signature and new_signature != self.signature:
                raise SessionStateConflict(
                    "Signature is already recorded for this session",
                    details={"session_id": self.session_id},
                )
            if new_signature and status not in {
                SigningStatus.SIGNED,
                SigningStatus.VERIFIED,
            }:
                raise SessionStateConflict(
                    "A signed session must be 'signed' or 'verified'",
                    details={"session_id": self.session_id},
                )

        return self.model_copy(
            update={**changes, "status": status, "updated_at": utcnow()}
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ----------------------------------------------------------------------
# EIP-712
# ----------------------------------------------------------------------

class EIP712Domain(BaseModel):
    name: str
    version: str
    chain_id: int = Field(..., alias="chainId")
    verifying_contract: str = Field(..., alias="verifyingContract")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def as_typed_data_domain(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


class EIP712Field(BaseModel):
    name: str
    type: str

    model_config = ConfigDict(frozen=True)


DEFAULT_PRIMARY_TYPE = "DocumentSignature"

DEFAULT_SIGNATURE_TYPES: dict[str, list[EIP712Field]] = {
    DEFAULT_PRIMARY_TYPE: [
        EIP712Field(name="sessionId", type="string"),
        EIP712Field(name="walletAddress", type="address"),
        EIP712Field(name="documentHash", type="string"),
        EIP712Field(name="timestamp", type="uint256"),
    ]
}


class EIP712Envelope(BaseModel):
    """Domain plus struct types as served by the signing backend."""

    domain: EIP712Domain
    types: dict[str, list[EIP712Field]] = Field(
        default_factory=lambda: dict(DEFAULT_SIGNATURE_TYPES)
    )

    model_config = ConfigDict(frozen=True)

    def with_chain_id(self, chain_id: Optional[int]) -> "EIP712Envelope":
        """Override the chain id to match the signer's active network."""
        if chain_id is None or chain_id == self.domain.chain_id:
            return self
        return self.model_copy(
            update={
                "domain": self.domain.model_copy(
                    update={"chain_id": chain_id}
                )
            }
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "domain": self.domain.as_typed_data_domain(),
            "types": {
                name: [f.model_dump() for f in fields]
                for name, fields in self.types.items()
            },
        }


# ----------------------------------------------------------------------
# Inputs and results
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentUpload:
    """Raw document handed to the signing service."""

    filename: str
    content_type: Optional[str]
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


class BackendSession(BaseModel):
    """Backend reply to a session registration."""

    session_id: str = Field(..., alias="sessionId", min_length=1)
    document_hash: Optional[str] = Field(None, alias="documentHash")
    timestamp: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class BackendSignResult(BaseModel):
    verification_link: Optional[str] = Field(None, alias="verificationLink")
    document_url: str = Field(..., alias="documentUrl")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SigningResult(BaseModel):
    session_id: str = Field(..., alias="sessionId")
    signature: str
    document_hash: str = Field(..., alias="documentHash")
    verification_link: Optional[str] = Field(None, alias="verificationLink")
    signed_document_url: str = Field(..., alias="signedDocumentUrl")
    status: SigningStatus

    model_config = ConfigDict(populate_by_name=True, frozen=True)
