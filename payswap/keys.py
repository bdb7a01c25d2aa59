"""
Key & Address Resolution - typed principals and holding-account derivation.

Credentials are accepted in the two encodings wallets export:
- base58 string of the 64-byte secret key (Phantom / Solflare export)
- JSON array of 64 numbers (solana-keygen file contents)

Holding accounts are associated token accounts (ATAs), derived locally as a
program address over [owner, token_program, mint].
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .errors import MalformedCredential

logger = logging.getLogger(__name__)

SECRET_KEY_LENGTH = 64

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hGZbpYCWnjXvVoQQe9fs6TqCUA")


class Role(str, Enum):
    """Role a principal plays in one operation."""
    FUNDER = "funder"
    FEE_PAYER = "fee_payer"
    DESTINATION = "destination"


@dataclass(frozen=True)
class Principal:
    """A keyed identity on the ledger, signing or address-only."""

    role: Role
    pubkey: Pubkey
    keypair: Optional[Keypair] = None

    @property
    def can_sign(self) -> bool:
        return self.keypair is not None

    @property
    def address(self) -> str:
        return str(self.pubkey)

    @property
    def short(self) -> str:
        """Truncated address for log lines."""
        address = self.address
        return f"{address[:8]}...{address[-6:]}"

    def __repr__(self) -> str:
        # Never expose key material
        kind = "signer" if self.can_sign else "address"
        return f"Principal(role={self.role.value}, {kind}={self.address})"


def _decode_secret(credential: str) -> bytes:
    text = credential.strip()
    if text.startswith("["):
        try:
            values = json.loads(text)
            return bytes(values)
        except (ValueError, TypeError) as e:
            raise MalformedCredential(f"Credential is not a valid JSON byte array: {e}")
    try:
        return base58.b58decode(text)
    except ValueError as e:
        raise MalformedCredential(f"Credential is not valid base58: {e}")


def parse_signer(credential: str, role: Role) -> Principal:
    """
    Parse a secret-key credential into a signing principal.

    Args:
        credential: base58 secret key or JSON numeric array
        role: Role of the principal in this operation

    Returns:
        Signing Principal

    Raises:
        MalformedCredential: If neither encoding yields a 64-byte key
    """
    if not credential or not credential.strip():
        raise MalformedCredential(f"Missing credential for {role.value}")

    secret = _decode_secret(credential)
    if len(secret) != SECRET_KEY_LENGTH:
        raise MalformedCredential(
            f"Credential for {role.value} decodes to {len(secret)} bytes, expected {SECRET_KEY_LENGTH}"
        )

    try:
        keypair = Keypair.from_bytes(secret)
    except ValueError as e:
        raise MalformedCredential(f"Credential for {role.value} is not a valid keypair: {e}")

    return Principal(role=role, pubkey=keypair.pubkey(), keypair=keypair)


def parse_address(address: str, role: Role = Role.DESTINATION) -> Principal:
    """
    Parse a base58 address into an address-only principal.

    Raises:
        MalformedCredential: If the string is not a valid 32-byte address
    """
    try:
        pubkey = Pubkey.from_string(address.strip())
    except (ValueError, AttributeError) as e:
        raise MalformedCredential(f"Invalid {role.value} address {address!r}: {e}")
    return Principal(role=role, pubkey=pubkey)


def to_pubkey(value: Union[str, Pubkey, Principal]) -> Pubkey:
    if isinstance(value, Principal):
        return value.pubkey
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(value)
    except ValueError as e:
        raise MalformedCredential(f"Invalid address {value!r}: {e}")


def holding_account(
    owner: Union[str, Pubkey, Principal],
    mint: Union[str, Pubkey],
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    allow_owner_off_curve: bool = False,
) -> Pubkey:
    """
    Derive the associated token account of (owner, mint).

    No network call is made. Owners that are program-derived addresses are
    not valid signing keys; deriving for them must be requested with
    allow_owner_off_curve=True.

    Args:
        owner: Owner wallet address
        mint: Token mint address
        token_program: Token program owning the mint
        allow_owner_off_curve: Accept owners that are not ed25519 points

    Returns:
        Holding account address

    Raises:
        MalformedCredential: If the owner is off-curve and that was not allowed
    """
    owner_key = to_pubkey(owner)
    mint_key = to_pubkey(mint)

    if not allow_owner_off_curve and not owner_key.is_on_curve():
        raise MalformedCredential(
            f"Owner {owner_key} is off-curve; pass allow_owner_off_curve=True for program-owned accounts"
        )

    address, _bump = Pubkey.find_program_address(
        [bytes(owner_key), bytes(token_program), bytes(mint_key)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def same_principal(a: Principal, b: Principal) -> bool:
    """True when two principals are the same on-chain identity."""
    return a.pubkey == b.pubkey
