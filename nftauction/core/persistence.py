"""
Persistence Bridge - durable side of bid acceptance.

Accepted bids are written here before the in-memory ledger is updated and
before any notification goes out (write-then-broadcast), so a bid that
observers have seen always exists in the store.

record_bid() is idempotent on the bid hash: re-delivering an accepted bid
is a successful no-op. The same transaction projects the bid into the
auction's highest bid/bidder fields and advances the bidder's nonce.
"""

from typing import List

from nftauction.crypto import bytes_to_hex
from nftauction.core.models import Bid
from nftauction.core.storage.store import AuctionStore
from nftauction.utils.logger import get_logger

logger = get_logger("persistence")


class PersistenceBridge:
    """Durable recording of accepted bids on top of the auction store."""

    def __init__(self, store: AuctionStore):
        self.store = store

    async def record_bid(self, bid: Bid) -> bool:
        """
        Durably record an accepted bid.

        Returns:
            True if the bid was inserted, False if it was already recorded

        Raises:
            NotFoundError: auction does not exist
            TransientInfraError: store unavailable
        """
        inserted = await self.store.record_bid(bid)
        if inserted:
            logger.debug(f"Recorded {bid!r}")
        else:
            logger.info(f"Bid {bytes_to_hex(bid.bid_hash)[:12]}... already recorded")
        return inserted

    async def is_recorded(self, bid_hash: bytes) -> bool:
        return await self.store.has_bid(bid_hash)

    async def last_nonce(self, bidder: str) -> int:
        """Highest nonce durably recorded for the bidder, across auctions."""
        return await self.store.get_bidder_nonce(bidder.lower())

    async def accepted_bids(self, auction_id: str) -> List[Bid]:
        """Durable bids in acceptance order (for ledger rebuilds)."""
        return [stored.bid for stored in await self.store.get_bids_in_order(auction_id)]
