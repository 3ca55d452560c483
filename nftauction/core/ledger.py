"""
Bid Ledger - in-memory channel state per auction.

Conceptual Background:
---------------------
Each auction bids through a channel. The channel state is the working
projection of the auction:

1. **Bid history**: accepted bids in acceptance order
2. **Leader**: highest bid and bidder (max amount, earliest timestamp)
3. **Turn counter**: number of accepted bids
4. **Processed set**: bid hashes already accepted (replay keys)

State Updates:
-------------
States are immutable. apply_bid() builds the successor state and swaps it
in with a single assignment, so readers only ever see a state before or
after a bid, never in between. Callers serialize apply_bid() per auction.

The ledger has no durability of its own; it can be dropped and rebuilt
from the store with restore().
"""

import time
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from nftauction.crypto import keccak256, bytes_to_hex, ZERO_ADDRESS
from nftauction.core.errors import FatalError, NotFoundError
from nftauction.core.models import Bid, select_leader
from nftauction.utils.logger import get_logger

logger = get_logger("ledger")


# =============================================================================
# Channel State
# =============================================================================


@dataclass(frozen=True)
class ChannelState:
    """
    Snapshot of one auction channel.

    Invariants:
    - highest_bid / highest_bidder reflect select_leader(bids)
    - turn_num == len(bids)
    """
    channel_id: str
    auction_id: str
    bids: Tuple[Bid, ...] = ()
    highest_bid: int = 0
    highest_bidder: str = ZERO_ADDRESS
    turn_num: int = 0
    participants: Tuple[str, ...] = ()
    processed: FrozenSet[bytes] = field(default_factory=frozenset)

    @property
    def has_bids(self) -> bool:
        return self.turn_num > 0

    def to_dict(self) -> dict:
        return {
            "channelId": self.channel_id,
            "auctionId": self.auction_id,
            "participants": list(self.participants),
            "bids": [b.to_dict() for b in self.bids],
            "highestBid": str(self.highest_bid),
            "highestBidder": self.highest_bidder,
            "turnNum": self.turn_num,
        }


def _advance(state: ChannelState, bid: Bid) -> ChannelState:
    """Successor state after accepting bid."""
    bids = state.bids + (bid,)
    leader = select_leader(bids)
    participants = state.participants
    if bid.bidder not in participants:
        participants = participants + (bid.bidder,)
    return replace(
        state,
        bids=bids,
        highest_bid=leader.amount,
        highest_bidder=leader.bidder,
        turn_num=state.turn_num + 1,
        participants=participants,
        processed=state.processed | {bid.bid_hash},
    )


# =============================================================================
# Ledger
# =============================================================================


class BidLedger:
    """
    Keyed store of channel states.

    Attributes:
        channels: channel_id -> current ChannelState
        nonces: bidder -> highest nonce seen in an accepted bid
    """

    def __init__(self):
        self.channels: Dict[str, ChannelState] = {}
        self.nonces: Dict[str, int] = {}

    # =========================================================================
    # Channels
    # =========================================================================

    def create_channel(self, auction_id: str) -> str:
        """
        Open an empty channel for an auction.

        Every call opens a new, independent channel; callers cache the
        channel id per auction.
        """
        channel_id = bytes_to_hex(keccak256(f"auction_{auction_id}_{time.time_ns()}".encode()))
        while channel_id in self.channels:
            channel_id = bytes_to_hex(keccak256(f"auction_{auction_id}_{time.time_ns()}".encode()))

        self.channels[channel_id] = ChannelState(channel_id=channel_id, auction_id=auction_id)
        logger.info(f"Created channel {channel_id[:12]}... for auction {auction_id}")
        return channel_id

    def get_state(self, channel_id: str) -> Optional[ChannelState]:
        """Current state, or None if the channel does not exist."""
        return self.channels.get(channel_id)

    def require_state(self, channel_id: str) -> ChannelState:
        state = self.channels.get(channel_id)
        if state is None:
            raise NotFoundError(f"Channel not found: {channel_id}")
        return state

    def close_channel(self, channel_id: str) -> Optional[ChannelState]:
        """Evict a channel (after settlement)."""
        return self.channels.pop(channel_id, None)

    # =========================================================================
    # Bid Application
    # =========================================================================

    def apply_bid(self, channel_id: str, bid: Bid) -> ChannelState:
        """
        Append a validated bid and return the new state.

        Raises:
            NotFoundError: unknown channel
            FatalError: bid belongs to another auction or was already applied
        """
        state = self.require_state(channel_id)

        if bid.auction_id != state.auction_id:
            raise FatalError(
                f"Bid for auction {bid.auction_id} applied to channel of {state.auction_id}"
            )
        if bid.bid_hash in state.processed:
            raise FatalError(f"Bid {bytes_to_hex(bid.bid_hash)[:12]}... applied twice")

        new_state = _advance(state, bid)
        self.channels[channel_id] = new_state
        self.note_nonce(bid.bidder, bid.nonce)

        logger.debug(f"Channel {channel_id[:12]}... turn {new_state.turn_num}: "
                     f"highest={new_state.highest_bid} by {new_state.highest_bidder}")
        return new_state

    def restore(self, channel_id: str, auction_id: str, bids: Iterable[Bid]) -> ChannelState:
        """
        Rebuild a channel from durable bids in acceptance order.
        """
        state = ChannelState(channel_id=channel_id, auction_id=auction_id)
        for bid in bids:
            if bid.bid_hash not in state.processed:
                state = _advance(state, bid)
                self.note_nonce(bid.bidder, bid.nonce)
        self.channels[channel_id] = state

        logger.info(f"Restored channel {channel_id[:12]}... for auction {auction_id}: {state.turn_num} bids")
        return state

    # =========================================================================
    # Bidder Nonces
    # =========================================================================

    def last_nonce(self, bidder: str) -> int:
        """Highest nonce of the bidder across all channels (0 if none)."""
        return self.nonces.get(bidder.lower(), 0)

    def note_nonce(self, bidder: str, nonce: int) -> None:
        key = bidder.lower()
        if nonce > self.nonces.get(key, 0):
            self.nonces[key] = nonce

    # =========================================================================
    # Utility
    # =========================================================================

    def __len__(self) -> int:
        return len(self.channels)

    def __repr__(self) -> str:
        return f"BidLedger(channels={len(self.channels)})"

    def stats(self) -> dict:
        return {
            "channels": len(self.channels),
            "bids": sum(s.turn_num for s in self.channels.values()),
        }
