"""
NFT Auction Bid Settlement Engine

Off-chain bidding for timed ERC-721 auctions:
- EIP-712 signed bids with per-bidder nonces and replay protection
- Per-auction in-memory channels backed by a durable SQLite store
- Settlement state machine with a stuck-settlement watchdog
"""

__version__ = "0.1.0"
