"""
Cryptographic primitives for document integrity.

Current scope:
- Deterministic keccak-256 hashing of the exact uploaded document bytes

Explicit non-scope:
- Canonicalization or transcoding
- PDF parsing or manipulation
- Signature construction (handled by services.typed_data)

IMPORTANT DESIGN RULE:
- The hash is taken over the bytes as received, before any network
  round-trip could alter their representation.
"""

import re
from typing import Union

from web3 import Web3

_HEX_DIGEST_RE = re.compile(r"^0x[0-9a-f]{64}$")


def compute_document_hash(document_bytes: Union[bytes, bytearray]) -> str:
    """
    Compute the keccak-256 content hash of a document.

    Returns:
        ``0x``-prefixed lowercase hex digest (66 characters).
    """
    if not isinstance(document_bytes, (bytes, bytearray)):
        raise TypeError(
            "compute_document_hash expects document bytes, "
            f"got {type(document_bytes).__name__}"
        )

    return Web3.to_hex(Web3.keccak(bytes(document_bytes)))


def is_document_hash(value: str) -> bool:
    """True when ``value`` has the shape produced by compute_document_hash."""
    return bool(_HEX_DIGEST_RE.match(value or ""))
