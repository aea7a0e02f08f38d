"""
EIP-712 message construction for document signatures.

The signed value is always a full typed-data structure bound to the
backend-issued domain (name, version, chain id, verifying contract);
never a signature over raw hash bytes. The timestamp is captured once
when the message is built and must be submitted verbatim alongside the
signature, otherwise backend verification fails.
"""

from __future__ import annotations

import time
from typing import Any, Mapping, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from signgate.app.schemas.session import (
    DEFAULT_PRIMARY_TYPE,
    EIP712Envelope,
)

EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]


def build_signing_message(
    *,
    session_id: str,
    wallet_address: str,
    document_hash: str,
    timestamp: Optional[int] = None,
) -> dict[str, Any]:
    """
    Build the DocumentSignature message.

    ``timestamp`` defaults to the current time in whole seconds.
    """
    return {
        "sessionId": session_id,
        "walletAddress": Web3.to_checksum_address(wallet_address),
        "documentHash": document_hash,
        "timestamp": int(time.time()) if timestamp is None else int(timestamp),
    }


def _primary_type(types: Mapping[str, Any]) -> str:
    struct_types = [name for name in types if name != "EIP712Domain"]
    if DEFAULT_PRIMARY_TYPE in struct_types or len(struct_types) != 1:
        return DEFAULT_PRIMARY_TYPE
    return struct_types[0]


def build_typed_data(
    envelope: EIP712Envelope,
    message: Mapping[str, Any],
    chain_id: Optional[int] = None,
) -> dict[str, Any]:
    """Assemble the full EIP-712 payload accepted by eth_account."""
    envelope = envelope.with_chain_id(chain_id)
    wire = envelope.to_wire()

    types: dict[str, Any] = {"EIP712Domain": EIP712_DOMAIN_FIELDS}
    types.update(wire["types"])

    return {
        "types": types,
        "primaryType": _primary_type(types),
        "domain": wire["domain"],
        "message": dict(message),
    }


def sign_typed_data(typed_data: Mapping[str, Any], private_key: str) -> str:
    """Sign a full EIP-712 payload; returns a 0x-prefixed 65-byte signature."""
    signable = encode_typed_data(full_message=dict(typed_data))
    signed = Account.sign_message(signable, private_key=private_key)
    return Web3.to_hex(signed.signature)


def recover_typed_data_signer(
    typed_data: Mapping[str, Any],
    signature: str,
) -> str:
    """Recover the checksummed address that produced ``signature``."""
    signable = encode_typed_data(full_message=dict(typed_data))
    return Account.recover_message(signable, signature=signature)


def message_mismatches(
    message: Mapping[str, Any],
    *,
    session_id: str,
    document_hash: str,
    signer_address: str,
) -> list[str]:
    """
    Names of message fields that do not bind to the given session.

    Addresses compare case-insensitively; everything else verbatim.
    """
    mismatched: list[str] = []

    if message.get("sessionId") != session_id:
        mismatched.append("sessionId")

    if str(message.get("documentHash", "")).lower() != document_hash.lower():
        mismatched.append("documentHash")

    if str(message.get("walletAddress", "")).lower() != signer_address.lower():
        mismatched.append("walletAddress")

    if not isinstance(message.get("timestamp"), int) or isinstance(
        message.get("timestamp"), bool
    ):
        mismatched.append("timestamp")

    return mismatched
