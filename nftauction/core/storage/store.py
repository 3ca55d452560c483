import asyncio
import sqlite3
from dataclasses import dataclass
from enum import Enum
from functools import partial
from pathlib import Path
from typing import List, Optional

from nftauction.core.errors import ConflictError, NotFoundError, TransientInfraError
from nftauction.core.models import Auction, Bid, SettlementAttempt
from nftauction.core.storage.sqlite_adapter import SQLiteAdapter
from nftauction.utils.logger import get_logger

logger = get_logger("storage.store")


@dataclass(frozen=True)
class StoredBid:
    """A bid as recorded durably, with its stored hash and acceptance order."""
    bid: Bid
    bid_hash: bytes
    seq: int
    signature_valid_until: int


# =============================================================================
# Row conversion
# =============================================================================


def _auction_from_row(row: sqlite3.Row) -> Auction:
    return Auction(
        auction_id=row["auction_id"],
        seller=row["seller"],
        nft_contract=row["nft_contract"],
        token_id=int(row["token_id"]),
        start_time=row["start_time"],
        end_time=row["end_time"],
        starting_price=int(row["starting_price"]),
        min_increment=int(row["min_increment"]),
        status=row["status"],
        chain_auction_id=row["chain_auction_id"],
        title=row["title"],
        highest_bid=int(row["highest_bid"]),
        highest_bidder=row["highest_bidder"],
        settlement_status=row["settlement_status"],
        settlement_attempted_at=row["settlement_attempted_at"],
        settlement_tx_hash=row["settlement_tx_hash"],
        settlement_error=row["settlement_error"],
    )


def _auction_to_row(auction: Auction) -> dict:
    return {
        "auction_id": auction.auction_id,
        "seller": auction.seller,
        "nft_contract": auction.nft_contract,
        "token_id": str(auction.token_id),
        "start_time": auction.start_time,
        "end_time": auction.end_time,
        "starting_price": str(auction.starting_price),
        "min_increment": str(auction.min_increment),
        "status": auction.status.value,
        "chain_auction_id": auction.chain_auction_id,
        "title": auction.title,
        "highest_bid": str(auction.highest_bid),
        "highest_bidder": auction.highest_bidder,
    }


def _stored_bid_from_row(row: sqlite3.Row) -> StoredBid:
    bid = Bid(
        auction_id=row["auction_id"],
        bidder=row["bidder"],
        amount=int(row["amount"]),
        nonce=int(row["nonce"]),
        timestamp=row["timestamp"],
        signature=bytes(row["signature"]),
    )
    return StoredBid(
        bid=bid,
        bid_hash=bytes(row["bid_hash"]),
        seq=row["seq"],
        signature_valid_until=row["signature_valid_until"],
    )


def _attempt_from_row(row: sqlite3.Row) -> SettlementAttempt:
    return SettlementAttempt(
        attempt_id=row["attempt_id"],
        auction_id=row["auction_id"],
        winner=row["winner"],
        amount=int(row["amount"]),
        status=row["status"],
        tx_ref=row["tx_ref"],
        attempted_at=row["attempted_at"],
        completed_at=row["completed_at"],
        error=row["error"],
        seller_proceeds=int(row["seller_proceeds"]),
        platform_fee=int(row["platform_fee"]),
        fee_used=int(row["fee_used"]) if row["fee_used"] is not None else None,
        block_number=row["block_number"],
    )


def _column_value(value):
    if isinstance(value, Enum):
        return value.value
    # uint256 quantities are stored as decimal TEXT
    if isinstance(value, int) and not isinstance(value, bool) and value.bit_length() > 62:
        return str(value)
    return value


# =============================================================================
# Store
# =============================================================================


class AuctionStore:
    """
    Durable store for auctions, bids and settlement attempts.

    Wraps the SQLite adapter for use from the event loop: every call runs
    on a worker thread, and database failures surface as
    TransientInfraError.
    """

    def __init__(self, data_dir: Path, db_name: str = "auctions.db"):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"AuctionStore initialized at {self.db_path}")

    async def _run(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(partial(fn, *args, **kwargs))
        except sqlite3.Error as e:
            logger.error(f"Store operation {getattr(fn, '__name__', fn)} failed: {e}")
            raise TransientInfraError(f"Store unavailable: {e}") from e

    # =========================================================================
    # Auctions
    # =========================================================================

    def _insert_auction(self, auction: Auction):
        try:
            self.adapter.insert_auction(_auction_to_row(auction))
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Auction already exists: {auction.auction_id}") from e

    async def save_auction(self, auction: Auction):
        """Persist a new auction; ConflictError if the id is taken."""
        await self._run(self._insert_auction, auction)

    async def get_auction(self, auction_id: str) -> Optional[Auction]:
        row = await self._run(self.adapter.get_auction, auction_id)
        return _auction_from_row(row) if row else None

    async def require_auction(self, auction_id: str) -> Auction:
        auction = await self.get_auction(auction_id)
        if auction is None:
            raise NotFoundError(f"Auction not found: {auction_id}")
        return auction

    async def list_auctions(self, status: Optional[str] = None) -> List[Auction]:
        rows = await self._run(self.adapter.list_auctions, status)
        return [_auction_from_row(r) for r in rows]

    async def update_auction(self, auction_id: str, **fields) -> bool:
        values = {name: _column_value(value) for name, value in fields.items()}
        return await self._run(self.adapter.update_auction, auction_id, values) > 0

    async def claim_settlement(self, auction_id: str, now: int) -> bool:
        """Mark settlement processing unless it is already running or done."""
        return await self._run(self.adapter.claim_settlement, auction_id, now) > 0

    async def find_due_auctions(self, now: int, limit: int) -> List[Auction]:
        rows = await self._run(self.adapter.find_due_auctions, now, limit)
        return [_auction_from_row(r) for r in rows]

    async def reset_stuck(self, cutoff: int) -> List[str]:
        return await self._run(self.adapter.reset_stuck, cutoff)

    async def purge_errors(self, cutoff: int) -> int:
        return await self._run(self.adapter.purge_errors, cutoff)

    # =========================================================================
    # Bids
    # =========================================================================

    async def record_bid(self, bid: Bid) -> bool:
        """
        Durably record an accepted bid, idempotent on its hash.

        Returns:
            True if inserted, False if the bid was already recorded

        Raises:
            NotFoundError: the auction does not exist
        """
        inserted = await self._run(
            self.adapter.insert_bid,
            bid.bid_hash,
            bid.auction_id,
            bid.bidder.lower(),
            bid.amount,
            bid.nonce,
            bid.timestamp,
            bid.signature,
        )
        if inserted is None:
            raise NotFoundError(f"Auction not found: {bid.auction_id}")
        return inserted

    async def get_bids(self, auction_id: str) -> List[StoredBid]:
        """Bids ranked by amount desc, timestamp asc."""
        rows = await self._run(self.adapter.get_bids_ranked, auction_id)
        return [_stored_bid_from_row(r) for r in rows]

    async def get_bids_in_order(self, auction_id: str) -> List[StoredBid]:
        rows = await self._run(self.adapter.get_bids_in_order, auction_id)
        return [_stored_bid_from_row(r) for r in rows]

    async def get_winning_bid(self, auction_id: str) -> Optional[StoredBid]:
        row = await self._run(self.adapter.get_winning_bid, auction_id)
        return _stored_bid_from_row(row) if row else None

    async def has_bid(self, bid_hash: bytes) -> bool:
        return await self._run(self.adapter.has_bid, bid_hash)

    async def get_bidder_nonce(self, bidder: str) -> int:
        return await self._run(self.adapter.get_bidder_nonce, bidder.lower())

    # =========================================================================
    # Settlement Attempts
    # =========================================================================

    async def save_attempt(self, attempt: SettlementAttempt):
        row = {
            "attempt_id": attempt.attempt_id,
            "auction_id": attempt.auction_id,
            "winner": attempt.winner,
            "amount": str(attempt.amount),
            "status": attempt.status.value,
            "tx_ref": attempt.tx_ref,
            "attempted_at": attempt.attempted_at,
            "completed_at": attempt.completed_at,
            "error": attempt.error,
            "seller_proceeds": str(attempt.seller_proceeds),
            "platform_fee": str(attempt.platform_fee),
            "fee_used": str(attempt.fee_used) if attempt.fee_used is not None else None,
            "block_number": attempt.block_number,
        }
        await self._run(self.adapter.insert_attempt, row)

    async def update_attempt(self, attempt_id: str, **fields) -> bool:
        values = {name: _column_value(value) for name, value in fields.items()}
        if values.get("fee_used") is not None:
            values["fee_used"] = str(values["fee_used"])
        return await self._run(self.adapter.update_attempt, attempt_id, values) > 0

    async def get_attempts(self, auction_id: str) -> List[SettlementAttempt]:
        rows = await self._run(self.adapter.get_attempts, auction_id)
        return [_attempt_from_row(r) for r in rows]

    async def get_pending_attempt(self, auction_id: str) -> Optional[SettlementAttempt]:
        """Latest pending attempt that already has an external tx reference."""
        for attempt in reversed(await self.get_attempts(auction_id)):
            if attempt.status.value == "pending" and attempt.tx_ref:
                return attempt
        return None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self):
        self.adapter.close()
