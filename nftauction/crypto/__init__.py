"""
Cryptographic primitives for the auction engine.

This module provides:
- Keccak-256 hashing (Ethereum-style)
- Key generation on secp256k1
- Recoverable ECDSA signatures (65-byte r || s || v)
- Address derivation and recovery

Design Notes:
-------------
Bidders sign with ordinary Ethereum wallets, so every primitive follows
EVM conventions: addresses are the last 20 bytes of keccak256 over the
uncompressed public key, and signatures carry a recovery byte v in
{27, 28} so the signer can be recovered without knowing the public key.
"""

import secrets
from dataclasses import dataclass
from typing import Optional

from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1


# =============================================================================
# Constants
# =============================================================================

# secp256k1 curve order (number of points on the curve)
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

SIGNATURE_SIZE = 65
ZERO_ADDRESS = "0x" + "00" * 20


# =============================================================================
# Hashing
# =============================================================================


def keccak256(data: bytes) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum-style).

    Used for: typed-data digests, bid hashes, address derivation.
    """
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


# =============================================================================
# Key Generation
# =============================================================================


@dataclass
class KeyPair:
    """
    An ECDSA keypair on secp256k1.

    Attributes:
        private_key: 32-byte secret key (integer in [1, order-1])
        public_key: 64-byte uncompressed public key (x || y coordinates)
    """
    private_key: bytes
    public_key: bytes

    @property
    def address(self) -> str:
        """Lowercase 0x-prefixed address of this keypair."""
        return address_from_public_key(self.public_key)

    @property
    def private_key_hex(self) -> str:
        return self.private_key.hex()


def generate_keypair() -> KeyPair:
    """Generate a new random keypair."""
    private_key_int = secrets.randbelow(SECP256K1_ORDER - 1) + 1
    private_key = private_key_int.to_bytes(32, byteorder="big")
    return KeyPair(private_key=private_key, public_key=private_key_to_public_key(private_key))


def keypair_from_private_key(private_key: bytes) -> KeyPair:
    """Rebuild a keypair from a stored private key."""
    return KeyPair(private_key=private_key, public_key=private_key_to_public_key(private_key))


def private_key_to_public_key(private_key: bytes) -> bytes:
    """
    Derive public key from private key.

    Args:
        private_key: 32-byte private key

    Returns:
        64-byte uncompressed public key
    """
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    public_key_point = secp256k1.privtopub(private_key)
    x_bytes = public_key_point[0].to_bytes(32, byteorder="big")
    y_bytes = public_key_point[1].to_bytes(32, byteorder="big")
    return x_bytes + y_bytes


def address_from_public_key(public_key: bytes) -> str:
    """Address = last 20 bytes of keccak256(public_key), lowercase hex."""
    return "0x" + keccak256(public_key)[-20:].hex()


# =============================================================================
# Recoverable Signatures
# =============================================================================


def sign_hash(message_hash: bytes, private_key: bytes) -> bytes:
    """
    Sign a 32-byte digest.

    Returns:
        65-byte signature (r || s || v) with v in {27, 28}

    Note: py_ecc derives k deterministically, so signing is reproducible.
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    v, r, s = secp256k1.ecdsa_raw_sign(message_hash, private_key)

    # Low-s form (EIP-2); flipping s flips the recovery parity
    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s
        v = 55 - v

    return r.to_bytes(32, byteorder="big") + s.to_bytes(32, byteorder="big") + bytes([v])


def recover_public_key(message_hash: bytes, signature: bytes) -> Optional[bytes]:
    """
    Recover the signer's public key from a 65-byte signature.

    Returns:
        64-byte public key, or None if the signature is malformed
    """
    if len(message_hash) != 32 or len(signature) != SIGNATURE_SIZE:
        return None

    r = int.from_bytes(signature[:32], byteorder="big")
    s = int.from_bytes(signature[32:64], byteorder="big")
    v = signature[64]
    if v in (0, 1):
        v += 27

    if v not in (27, 28):
        return None
    if r < 1 or r >= SECP256K1_ORDER:
        return None
    # High-s signatures are malleable copies of a valid one
    if s < 1 or s > SECP256K1_ORDER // 2:
        return None

    try:
        recovered = secp256k1.ecdsa_raw_recover(message_hash, (v, r, s))
    except Exception:
        return None

    if not recovered:
        return None
    return recovered[0].to_bytes(32, byteorder="big") + recovered[1].to_bytes(32, byteorder="big")


def recover_address(message_hash: bytes, signature: bytes) -> Optional[str]:
    """Recover the signer address, or None if recovery fails."""
    public_key = recover_public_key(message_hash, signature)
    if public_key is None:
        return None
    return address_from_public_key(public_key)


# =============================================================================
# Utility Functions
# =============================================================================


def bytes_to_hex(data: bytes) -> str:
    """Convert bytes to hex string with 0x prefix."""
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    """Convert hex string (with or without 0x prefix) to bytes."""
    if hex_str.startswith("0x") or hex_str.startswith("0X"):
        hex_str = hex_str[2:]
    return bytes.fromhex(hex_str)


def is_valid_address(address: str) -> bool:
    """Check if string is a valid address format."""
    if not isinstance(address, str) or not address.startswith("0x"):
        return False
    if len(address) != 42:
        return False
    try:
        int(address, 16)
        return True
    except ValueError:
        return False


def normalize_address(address: str) -> str:
    """Lowercase form used for storage and comparison."""
    if not is_valid_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return address.lower()


from nftauction.crypto.typed_data import (
    TypedDataDomain,
    BID_TYPE,
    EIP712_DOMAIN_TYPE,
    domain_separator,
    bid_struct_hash,
    bid_digest,
    bid_hash,
    encode_bid_abi,
)
