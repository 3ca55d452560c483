"""
Auction domain model.

Auction
    A timed sale of one ERC-721 token. Mutated only by accepted bids
    (highest bid/bidder projection) and by settlement (status fields).

Bid
    A signed, immutable claim {auctionId, bidder, amount, nonce, timestamp}.
    Its bid hash (keccak256 of the ABI-encoded fields) is the idempotency
    and replay key.

SettlementAttempt
    Durable audit record of one execution of the settlement transfer.

Amounts are integers in the smallest currency unit (wei).
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from nftauction.crypto import (
    KeyPair,
    TypedDataDomain,
    bid_digest,
    bid_hash,
    bytes_to_hex,
    hex_to_bytes,
    sign_hash,
)
from nftauction.core.errors import ValidationError
from nftauction.utils.validation import (
    validate_address,
    validate_amount,
    validate_signature,
    validate_timestamp,
)


# =============================================================================
# Enums
# =============================================================================


class AuctionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SettlementStatus(str, Enum):
    """Settlement progress; None on the auction means not started."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


# =============================================================================
# Auction
# =============================================================================


@dataclass
class Auction:
    """
    A timed auction for one NFT.

    Invariants:
    - end_time > start_time
    - starting_price > 0
    - min_increment > 0
    """
    auction_id: str
    seller: str
    nft_contract: str
    token_id: int
    start_time: int
    end_time: int
    starting_price: int
    min_increment: int
    status: AuctionStatus = AuctionStatus.ACTIVE
    chain_auction_id: Optional[int] = None
    title: str = ""

    # Projection of the current leader
    highest_bid: int = 0
    highest_bidder: Optional[str] = None

    # Settlement bookkeeping (read/written by the watchdog too)
    settlement_status: Optional[SettlementStatus] = None
    settlement_attempted_at: Optional[int] = None
    settlement_tx_hash: Optional[str] = None
    settlement_error: Optional[str] = None

    def __post_init__(self):
        if self.end_time <= self.start_time:
            raise ValueError("Auction end time must be after start time")
        if self.starting_price <= 0:
            raise ValueError("Starting price must be positive")
        if self.min_increment <= 0:
            raise ValueError("Minimum bid increment must be positive")
        self.status = AuctionStatus(self.status)
        if self.settlement_status is not None:
            self.settlement_status = SettlementStatus(self.settlement_status)

    @property
    def is_active(self) -> bool:
        return self.status == AuctionStatus.ACTIVE

    @property
    def is_on_chain(self) -> bool:
        return self.chain_auction_id is not None

    def has_ended(self, now: int) -> bool:
        return now > self.end_time

    def accepts_time(self, ts: int) -> bool:
        return self.start_time <= ts <= self.end_time

    def to_dict(self) -> dict:
        return {
            "auctionId": self.auction_id,
            "seller": self.seller,
            "nftContract": self.nft_contract,
            "tokenId": self.token_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "startingPrice": str(self.starting_price),
            "minBidIncrement": str(self.min_increment),
            "status": self.status.value,
            "contractAuctionId": self.chain_auction_id,
            "title": self.title,
            "highestBid": str(self.highest_bid),
            "highestBidder": self.highest_bidder,
            "settlementStatus": self.settlement_status.value if self.settlement_status else None,
            "settlementTxHash": self.settlement_tx_hash,
            "settlementError": self.settlement_error,
        }


# =============================================================================
# Bid
# =============================================================================


@dataclass(frozen=True)
class Bid:
    """
    A signed off-chain bid.

    The signature covers the EIP-712 digest of the five fields under the
    marketplace domain; the bid hash covers the same five fields without
    the domain.
    """
    auction_id: str
    bidder: str
    amount: int
    nonce: int
    timestamp: int
    signature: bytes = b""

    @property
    def bid_hash(self) -> bytes:
        return bid_hash(self.auction_id, self.bidder, self.amount, self.nonce, self.timestamp)

    def digest(self, domain: TypedDataDomain) -> bytes:
        """Typed-data digest under the given domain."""
        return bid_digest(domain, self.auction_id, self.bidder, self.amount, self.nonce, self.timestamp)

    def signed(self, private_key: bytes, domain: TypedDataDomain) -> "Bid":
        """Return a copy carrying a signature by private_key."""
        return replace(self, signature=sign_hash(self.digest(domain), private_key))

    def to_dict(self) -> dict:
        return {
            "auctionId": self.auction_id,
            "bidder": self.bidder,
            "amount": str(self.amount),
            "nonce": self.nonce,
            "timestamp": self.timestamp,
            "signature": bytes_to_hex(self.signature),
        }

    def __repr__(self) -> str:
        return (f"Bid(auction={self.auction_id}, bidder={self.bidder[:10]}..., "
                f"amount={self.amount}, nonce={self.nonce}, ts={self.timestamp})")


def create_signed_bid(
    keypair: KeyPair,
    domain: TypedDataDomain,
    auction_id: str,
    amount: int,
    nonce: int,
    timestamp: int,
) -> Bid:
    """
    Create a bid signed by keypair.

    Args:
        keypair: Bidder's keys (the bidder address is derived from them)
        domain: Signing domain of the marketplace
        auction_id: Auction being bid on
        amount: Bid in the smallest currency unit
        nonce: Bidder's next nonce
        timestamp: Seconds since epoch

    Returns:
        Signed Bid
    """
    bid = Bid(
        auction_id=auction_id,
        bidder=keypair.address,
        amount=amount,
        nonce=nonce,
        timestamp=timestamp,
    )
    return bid.signed(keypair.private_key, domain)


def select_leader(bids: Iterable[Bid]) -> Optional[Bid]:
    """
    Highest amount wins; ties go to the earliest timestamp, then to the
    bid accepted first.
    """
    best = None
    best_key = None
    for index, bid in enumerate(bids):
        key = (-bid.amount, bid.timestamp, index)
        if best_key is None or key < best_key:
            best, best_key = bid, key
    return best


# =============================================================================
# Inbound payload
# =============================================================================


class BidPayload(BaseModel):
    """Bid body as posted by the HTTP layer (camelCase keys)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    auction_id: str = Field(alias="auctionId", min_length=1, max_length=128)
    bidder: str
    amount: int
    nonce: int
    timestamp: int
    signature: str

    @field_validator("amount", "nonce", "timestamp", mode="before")
    @classmethod
    def _decimal_string(cls, value):
        # uint256 values are sent as decimal strings by wallets
        if isinstance(value, bool):
            raise ValueError("boolean is not an integer")
        if isinstance(value, str):
            return int(value.strip(), 10)
        return value

    @field_validator("amount")
    @classmethod
    def _amount_range(cls, value):
        valid, err = validate_amount(value)
        if not valid:
            raise ValueError(err)
        return value

    @field_validator("nonce")
    @classmethod
    def _nonce_range(cls, value):
        valid, err = validate_amount(value, "nonce")
        if not valid:
            raise ValueError(err)
        return value

    @field_validator("timestamp")
    @classmethod
    def _timestamp_range(cls, value):
        valid, err = validate_timestamp(value)
        if not valid:
            raise ValueError(err)
        return value

    @field_validator("bidder")
    @classmethod
    def _bidder_address(cls, value):
        valid, err = validate_address(value, "bidder")
        if not valid:
            raise ValueError(err)
        return value.lower()

    @field_validator("signature")
    @classmethod
    def _signature_hex(cls, value):
        valid, err = validate_signature(value)
        if not valid:
            raise ValueError(err)
        return value

    def to_bid(self) -> Bid:
        return Bid(
            auction_id=self.auction_id,
            bidder=self.bidder,
            amount=self.amount,
            nonce=self.nonce,
            timestamp=self.timestamp,
            signature=hex_to_bytes(self.signature),
        )


def parse_bid_payload(data) -> Bid:
    """
    Parse an inbound bid payload (dict, BidPayload or Bid).

    Raises:
        ValidationError: payload is malformed
    """
    if isinstance(data, Bid):
        return replace(data, bidder=data.bidder.lower())
    if isinstance(data, BidPayload):
        return data.to_bid()
    try:
        return BidPayload.model_validate(data).to_bid()
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Malformed bid payload: {problems}", rule="payload") from e


# =============================================================================
# Settlement Attempt
# =============================================================================


@dataclass
class SettlementAttempt:
    """
    One execution of the settlement transfer.

    Attributes:
        attempt_id: Unique id (keccak of auction id and attempt time)
        winner: Winning bidder, None when the auction had no bids
        amount: Winning amount (0 without a winner)
        tx_ref: External transaction reference (None off-chain)
        status: pending until the collaborator confirms success/failure
    """
    attempt_id: str
    auction_id: str
    winner: Optional[str]
    amount: int
    status: AttemptStatus = AttemptStatus.PENDING
    tx_ref: Optional[str] = None
    attempted_at: int = 0
    completed_at: Optional[int] = None
    error: Optional[str] = None
    seller_proceeds: int = 0
    platform_fee: int = 0
    fee_used: Optional[int] = None
    block_number: Optional[int] = None

    def __post_init__(self):
        self.status = AttemptStatus(self.status)


__all__ = [
    "AuctionStatus",
    "SettlementStatus",
    "AttemptStatus",
    "Auction",
    "Bid",
    "BidPayload",
    "SettlementAttempt",
    "create_signed_bid",
    "select_leader",
    "parse_bid_payload",
]
