"""
Deterministic wallet derivation.

DEMO / TEST CONVENIENCE ONLY. NOT A KEY-CUSTODY MECHANISM.

The private key is keccak256(identifier + WALLET_SALT). Anyone who knows
(or guesses) the identifier reconstructs the private key, so the
identifier itself is the secret. Over HTTP this path is only reachable
when GATEWAY_ENABLE_DETERMINISTIC_WALLETS is set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from eth_account import Account
from web3 import Web3

from signgate.app.core.errors import InvalidIdentifier
from signgate.app.services.typed_data import sign_typed_data

WALLET_SALT = "mst-signature-salt"


@dataclass(frozen=True)
class WalletIdentity:
    """Key pair held in process memory for one signing operation."""

    address: str
    private_key: str = field(repr=False)

    def sign_typed_data(self, typed_data: Mapping[str, Any]) -> str:
        return sign_typed_data(typed_data, self.private_key)


def derive_wallet(identifier: str) -> WalletIdentity:
    """
    Derive the wallet for ``identifier``.

    Same identifier yields the same key pair; surrounding whitespace is
    ignored. Raises InvalidIdentifier for empty or blank identifiers.
    """
    if not isinstance(identifier, str) or not identifier.strip():
        raise InvalidIdentifier("Identifier must be a non-empty string")

    seed = Web3.keccak(text=identifier.strip() + WALLET_SALT)
    account = Account.from_key(seed)

    return WalletIdentity(
        address=account.address,
        private_key=Web3.to_hex(seed),
    )
