"""
Typed structured-data hashing (EIP-712) for auction bids.

A wallet signs the digest

    keccak256(0x19 || 0x01 || domainSeparator || hashStruct(bid))

where the domain binds the signature to one protocol name, version,
chain and verifying contract. A verifier configured with a different
domain computes a different digest, so recovery silently yields another
address and the bid fails closed.

The bid hash used for idempotency is keccak256 over the standard ABI
encoding of (string auctionId, address bidder, uint256 amount,
uint256 nonce, uint256 timestamp), matching what the marketplace
contract stores.
"""

from dataclasses import dataclass

from nftauction.crypto import keccak256


# =============================================================================
# Type Definitions
# =============================================================================

EIP712_DOMAIN_TYPE = (
    "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)
BID_TYPE = (
    "Bid(string auctionId,address bidder,uint256 amount,uint256 nonce,uint256 timestamp)"
)

EIP712_DOMAIN_TYPEHASH = keccak256(EIP712_DOMAIN_TYPE.encode())
BID_TYPEHASH = keccak256(BID_TYPE.encode())

UINT256_MAX = 2**256 - 1


@dataclass(frozen=True)
class TypedDataDomain:
    """Domain separation parameters shared by signer and verifier."""
    name: str
    version: str
    chain_id: int
    verifying_contract: str


# =============================================================================
# Word Encoding
# =============================================================================


def _uint256(value: int) -> bytes:
    if value < 0 or value > UINT256_MAX:
        raise ValueError(f"uint256 out of range: {value}")
    return value.to_bytes(32, byteorder="big")


def _address(address: str) -> bytes:
    raw = bytes.fromhex(address[2:] if address.lower().startswith("0x") else address)
    if len(raw) != 20:
        raise ValueError(f"Address must be 20 bytes, got {len(raw)}")
    return bytes(12) + raw


def _string_hash(value: str) -> bytes:
    return keccak256(value.encode("utf-8"))


# =============================================================================
# EIP-712
# =============================================================================


def domain_separator(domain: TypedDataDomain) -> bytes:
    """hashStruct(EIP712Domain)."""
    return keccak256(
        EIP712_DOMAIN_TYPEHASH
        + _string_hash(domain.name)
        + _string_hash(domain.version)
        + _uint256(domain.chain_id)
        + _address(domain.verifying_contract)
    )


def bid_struct_hash(auction_id: str, bidder: str, amount: int, nonce: int, timestamp: int) -> bytes:
    """hashStruct(Bid)."""
    return keccak256(
        BID_TYPEHASH
        + _string_hash(auction_id)
        + _address(bidder)
        + _uint256(amount)
        + _uint256(nonce)
        + _uint256(timestamp)
    )


def bid_digest(
    domain: TypedDataDomain,
    auction_id: str,
    bidder: str,
    amount: int,
    nonce: int,
    timestamp: int,
) -> bytes:
    """The 32-byte digest a wallet signs for a bid."""
    return keccak256(
        b"\x19\x01"
        + domain_separator(domain)
        + bid_struct_hash(auction_id, bidder, amount, nonce, timestamp)
    )


# =============================================================================
# ABI Encoding (bid hash)
# =============================================================================


def encode_bid_abi(auction_id: str, bidder: str, amount: int, nonce: int, timestamp: int) -> bytes:
    """
    abi.encode(string, address, uint256, uint256, uint256).

    Head: offset of the string tail (5 words = 0xa0), then the four
    static words. Tail: string length followed by its bytes, right-padded
    to a word boundary.
    """
    data = auction_id.encode("utf-8")
    padded = data + bytes((32 - len(data) % 32) % 32)
    head = (
        _uint256(5 * 32)
        + _address(bidder)
        + _uint256(amount)
        + _uint256(nonce)
        + _uint256(timestamp)
    )
    return head + _uint256(len(data)) + padded


def bid_hash(auction_id: str, bidder: str, amount: int, nonce: int, timestamp: int) -> bytes:
    """Deterministic idempotency key of a bid."""
    return keccak256(encode_bid_abi(auction_id, bidder, amount, nonce, timestamp))
