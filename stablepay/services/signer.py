"""Wallet signers producing EIP-712 authorizations for gasless USDC transfers."""
from __future__ import annotations

from typing import Protocol

from eth_account import Account
from eth_account.signers.local import LocalAccount

from ..schemas import SignatureParts, TypedData


class WalletSigner(Protocol):
    @property
    def address(self) -> str:
        ...

    async def sign_typed_data(self, typed_data: TypedData) -> str:
        """Return the 65-byte signature as a 0x-prefixed hex string."""
        ...


class LocalAccountSigner:
    """Signs with a private key held in process (tests, scripts, custodial demos)."""

    def __init__(self, private_key: str):
        self._account: LocalAccount = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_typed_data(self, typed_data: TypedData) -> str:
        # eth_account derives the domain type itself.
        message_types = {name: fields for name, fields in typed_data.types.items() if name != "EIP712Domain"}
        signed = self._account.sign_typed_data(
            domain_data=typed_data.domain,
            message_types=message_types,
            message_data=typed_data.message,
        )
        return "0x" + bytes(signed.signature).hex()


def split_signature(signature: str) -> SignatureParts:
    """Split a 65-byte ``r || s || v`` signature into its parts."""

    raw = bytes.fromhex(signature.removeprefix("0x"))
    if len(raw) != 65:
        raise ValueError(f"signature must be 65 bytes, got {len(raw)}")
    v = raw[64]
    if v < 27:
        v += 27
    return SignatureParts(v=v, r="0x" + raw[:32].hex(), s="0x" + raw[32:64].hex())
