"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Auctions and their settlement status
- Accepted bids (idempotent on bid hash) and bidder nonces
- Settlement attempts
"""

from nftauction.core.storage.sqlite_adapter import SQLiteAdapter
from nftauction.core.storage.store import AuctionStore, StoredBid

__all__ = ["SQLiteAdapter", "AuctionStore", "StoredBid"]
