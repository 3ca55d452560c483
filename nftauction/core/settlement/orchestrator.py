"""
Settlement Orchestrator - finalizes expired auctions.

State machine (auction.settlement_status):

    None ──► processing ──► completed
                 │
                 └──────► failed ──► processing (retry)

settle() works only from durable state: the winner is the stored bid
with the highest amount (earliest timestamp on ties), and every step is
recorded so that re-invoking settle() after a crash or failure is safe.

Steps:
1. Preconditions: auction ended, not cancelled, not already settling.
2. Claim: settlement_status = processing, attempted_at = now.
3. Winner: highest durable bid, or the no-winner branch.
4. Re-verify the winning bid (hash, signature, nonce, time window).
5. Record a pending SettlementAttempt, then submit the transfer.
6. Await finality; mark the attempt and the auction completed or failed.
7. Broadcast the outcome.

A pending attempt that already carries a transaction reference is resumed
with await_finality() instead of submitting a second transfer.
"""

import time
from dataclasses import dataclass, replace
from typing import Optional

from nftauction.crypto import keccak256, bytes_to_hex
from nftauction.core.errors import ConflictError, FatalError, MarketError, ValidationError
from nftauction.core.locks import KeyedLocks
from nftauction.core.models import (
    AttemptStatus,
    Auction,
    AuctionStatus,
    SettlementAttempt,
    SettlementStatus,
)
from nftauction.core.notify import NotificationBus
from nftauction.core.settlement.fees import FeeSchedule, FeeSplit
from nftauction.core.settlement.transfer import (
    OffChainTransfer,
    SettlementTransfer,
    TransferReceipt,
    TransferRequest,
)
from nftauction.core.signature import SignatureVerifier
from nftauction.core.storage.store import AuctionStore, StoredBid
from nftauction.utils.logger import get_logger

logger = get_logger("settlement")


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of one settle() call."""
    auction_id: str
    status: SettlementStatus
    winner: Optional[str] = None
    amount: int = 0
    tx_ref: Optional[str] = None
    error: Optional[str] = None
    attempt_id: Optional[str] = None
    resumed: bool = False
    already_settled: bool = False

    @property
    def completed(self) -> bool:
        return self.status == SettlementStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "auctionId": self.auction_id,
            "status": self.status.value,
            "winner": self.winner,
            "amount": str(self.amount),
            "txHash": self.tx_ref,
            "error": self.error,
            "attemptId": self.attempt_id,
            "resumed": self.resumed,
            "alreadySettled": self.already_settled,
        }


class SettlementOrchestrator:
    """
    Drives settlement of one auction at a time per auction id.

    Args:
        store: Durable auction store (source of truth)
        verifier: Signature verifier for the final re-check
        bus: Notification fan-out
        locks: Per-auction critical sections shared with bid handling
        fees: Fee schedule for the seller/platform split
        platform_address: Recipient of the platform fee
        chain_transfer: Collaborator for auctions with an on-chain id
    """

    def __init__(
        self,
        store: AuctionStore,
        verifier: SignatureVerifier,
        bus: NotificationBus,
        locks: KeyedLocks,
        fees: FeeSchedule,
        platform_address: Optional[str] = None,
        chain_transfer: Optional[SettlementTransfer] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.bus = bus
        self.locks = locks
        self.fees = fees
        self.platform_address = platform_address
        self.chain_transfer = chain_transfer
        self.off_chain = OffChainTransfer()

    # =========================================================================
    # Entry point
    # =========================================================================

    async def settle(self, auction_id: str, now: Optional[int] = None) -> SettlementOutcome:
        """
        Settle an expired auction.

        Returns:
            SettlementOutcome (completed or failed)

        Raises:
            NotFoundError: unknown auction
            ValidationError: auction not ended or cancelled
            ConflictError: a settlement is already processing
            FatalError: on-chain auction without a chain transfer
            TransientInfraError: store or transfer failure (status left failed)
        """
        now = int(time.time()) if now is None else now

        async with self.locks.hold(auction_id):
            auction = await self.store.require_auction(auction_id)

            if auction.settlement_status == SettlementStatus.COMPLETED:
                logger.info(f"Auction {auction_id} already settled")
                return SettlementOutcome(
                    auction_id=auction_id,
                    status=SettlementStatus.COMPLETED,
                    winner=auction.highest_bidder,
                    amount=auction.highest_bid,
                    tx_ref=auction.settlement_tx_hash,
                    already_settled=True,
                )

            if not auction.is_active:
                raise ValidationError(f"Auction {auction_id} is {auction.status.value}", rule="auction_not_active")
            if not auction.has_ended(now):
                raise ValidationError(f"Auction {auction_id} ends at {auction.end_time}", rule="auction_not_ended")
            if auction.settlement_status == SettlementStatus.PROCESSING:
                raise ConflictError(f"Settlement of auction {auction_id} already processing")

            transfer = self._transfer_for(auction)

            if not await self.store.claim_settlement(auction_id, now):
                raise ConflictError(f"Settlement of auction {auction_id} claimed concurrently")
            logger.info(f"Settling auction {auction_id} ({auction.title or 'untitled'})")

            try:
                return await self._execute(auction, transfer, now)
            except Exception as e:
                await self._record_crash(auction, e)
                raise

    def _transfer_for(self, auction: Auction) -> SettlementTransfer:
        if not auction.is_on_chain:
            return self.off_chain
        if self.chain_transfer is None:
            raise FatalError(f"Auction {auction.auction_id} is on chain but no chain transfer is configured")
        return self.chain_transfer

    # =========================================================================
    # Steps
    # =========================================================================

    async def _execute(self, auction: Auction, transfer: SettlementTransfer, now: int) -> SettlementOutcome:
        pending = await self.store.get_pending_attempt(auction.auction_id)
        if pending is not None:
            logger.info(f"Resuming settlement tx {pending.tx_ref[:12]}... for auction {auction.auction_id}")
            receipt = await self._await(transfer, pending, now)
            return await self._finish(auction, pending, receipt, now, resumed=True)

        stored = await self.store.get_winning_bid(auction.auction_id)
        if stored is None:
            logger.info(f"No bids for auction {auction.auction_id}, settling with no winner")
            split = self.fees.split(0)
            request = self._request(auction, None, split)
        else:
            error = await self._reverify(auction, stored)
            if error is not None:
                return await self._reject_winner(auction, stored, error, now)
            split = self.fees.split(stored.bid.amount)
            request = self._request(auction, stored, split)

        attempt = SettlementAttempt(
            attempt_id=bytes_to_hex(keccak256(f"{auction.auction_id}:{now}:{time.time_ns()}".encode())),
            auction_id=auction.auction_id,
            winner=request.winner,
            amount=split.amount,
            attempted_at=now,
            seller_proceeds=split.seller_proceeds,
            platform_fee=split.platform_fee,
        )
        await self.store.save_attempt(attempt)

        try:
            attempt.tx_ref = await transfer.submit(request)
        except Exception as e:
            await self.store.update_attempt(
                attempt.attempt_id, status=AttemptStatus.FAILED, completed_at=now, error=str(e)
            )
            raise
        if attempt.tx_ref is not None:
            await self.store.update_attempt(attempt.attempt_id, tx_ref=attempt.tx_ref)

        receipt = await self._await(transfer, attempt, now)
        return await self._finish(auction, attempt, receipt, now)

    async def _await(self, transfer: SettlementTransfer, attempt: SettlementAttempt, now: int) -> TransferReceipt:
        try:
            return await transfer.await_finality(attempt.tx_ref)
        except Exception as e:
            # Outcome unknown: the attempt stays pending so a retry resumes it
            fields = {"error": str(e)}
            if attempt.tx_ref is None:
                fields.update(status=AttemptStatus.FAILED, completed_at=now)
            await self.store.update_attempt(attempt.attempt_id, **fields)
            raise

    async def _reverify(self, auction: Auction, stored: StoredBid) -> Optional[str]:
        """Final check of the winning bid; returns an error or None."""
        bid = stored.bid
        if bid.bid_hash != stored.bid_hash:
            return "Winning bid record altered: bid hash mismatch"
        if not await self.verifier.verify_async(bid):
            return "Winning bid signature does not verify for bidder"
        recorded_nonce = await self.store.get_bidder_nonce(bid.bidder)
        if bid.nonce <= 0 or bid.nonce > recorded_nonce:
            return f"Winning bid nonce {bid.nonce} inconsistent with recorded nonce {recorded_nonce}"
        if not auction.accepts_time(bid.timestamp):
            return f"Winning bid timestamp {bid.timestamp} outside auction window"
        return None

    def _request(self, auction: Auction, stored: Optional[StoredBid], split: FeeSplit) -> TransferRequest:
        request = TransferRequest(
            auction_id=auction.auction_id,
            seller=auction.seller,
            nft_contract=auction.nft_contract,
            token_id=auction.token_id,
            amount=split.amount,
            seller_proceeds=split.seller_proceeds,
            platform_fee=split.platform_fee,
            platform_address=self.platform_address,
            chain_auction_id=auction.chain_auction_id,
        )
        if stored is None:
            return request
        bid = stored.bid
        return replace(request, winner=bid.bidder, nonce=bid.nonce, timestamp=bid.timestamp, signature=bid.signature)

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    async def _finish(
        self,
        auction: Auction,
        attempt: SettlementAttempt,
        receipt: TransferReceipt,
        now: int,
        resumed: bool = False,
    ) -> SettlementOutcome:
        tx_ref = receipt.tx_ref or attempt.tx_ref

        if not receipt.success:
            error = receipt.error or "Transfer failed"
            await self.store.update_attempt(
                attempt.attempt_id,
                status=AttemptStatus.FAILED,
                completed_at=now,
                error=error,
                fee_used=receipt.fee_used,
                block_number=receipt.block_number,
            )
            await self.store.update_auction(
                auction.auction_id, settlement_status=SettlementStatus.FAILED, settlement_error=error
            )
            logger.error(f"Settlement of auction {auction.auction_id} failed: {error}")
            await self._broadcast_failed(auction, error)
            return SettlementOutcome(
                auction_id=auction.auction_id,
                status=SettlementStatus.FAILED,
                winner=attempt.winner,
                amount=attempt.amount,
                tx_ref=tx_ref,
                error=error,
                attempt_id=attempt.attempt_id,
                resumed=resumed,
            )

        await self.store.update_attempt(
            attempt.attempt_id,
            status=AttemptStatus.SUCCESS,
            completed_at=now,
            fee_used=receipt.fee_used,
            block_number=receipt.block_number,
        )
        fields = {
            "status": AuctionStatus.COMPLETED,
            "settlement_status": SettlementStatus.COMPLETED,
            "settlement_tx_hash": tx_ref,
            "settlement_error": None,
        }
        if attempt.winner is not None:
            fields.update(highest_bid=attempt.amount, highest_bidder=attempt.winner)
        await self.store.update_auction(auction.auction_id, **fields)
        self.fees.record(FeeSplit(attempt.amount, attempt.seller_proceeds, attempt.platform_fee))

        if attempt.winner is None:
            logger.info(f"Auction {auction.auction_id} completed with no bids")
        else:
            logger.info(f"Auction {auction.auction_id} settled: winner {attempt.winner} "
                        f"for {attempt.amount} (tx {tx_ref or 'off-chain'})")

        await self.bus.broadcast(auction.auction_id, "auction_completed", {
            "auctionId": auction.auction_id,
            "winner": attempt.winner,
            "winningAmount": str(attempt.amount),
            "seller": auction.seller,
            "title": auction.title,
            "txHash": tx_ref,
        })
        return SettlementOutcome(
            auction_id=auction.auction_id,
            status=SettlementStatus.COMPLETED,
            winner=attempt.winner,
            amount=attempt.amount,
            tx_ref=tx_ref,
            attempt_id=attempt.attempt_id,
            resumed=resumed,
        )

    async def _reject_winner(self, auction: Auction, stored: StoredBid, error: str, now: int) -> SettlementOutcome:
        """Re-verification failed: record it, transfer nothing."""
        attempt = SettlementAttempt(
            attempt_id=bytes_to_hex(keccak256(f"{auction.auction_id}:{now}:{time.time_ns()}".encode())),
            auction_id=auction.auction_id,
            winner=stored.bid.bidder,
            amount=stored.bid.amount,
            status=AttemptStatus.FAILED,
            attempted_at=now,
            completed_at=now,
            error=error,
        )
        await self.store.save_attempt(attempt)
        await self.store.update_auction(
            auction.auction_id, settlement_status=SettlementStatus.FAILED, settlement_error=error
        )
        logger.error(f"Re-verification failed for auction {auction.auction_id}: {error}")
        await self._broadcast_failed(auction, error)
        return SettlementOutcome(
            auction_id=auction.auction_id,
            status=SettlementStatus.FAILED,
            winner=stored.bid.bidder,
            amount=stored.bid.amount,
            error=error,
            attempt_id=attempt.attempt_id,
        )

    async def _record_crash(self, auction: Auction, exc: Exception) -> None:
        """Unexpected error after the claim: leave the auction failed, not processing."""
        error = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, MarketError) and exc.retryable:
            logger.error(f"Settlement of auction {auction.auction_id} interrupted: {error}")
        else:
            logger.exception(f"Settlement of auction {auction.auction_id} crashed")
        try:
            await self.store.update_auction(
                auction.auction_id, settlement_status=SettlementStatus.FAILED, settlement_error=error
            )
        except MarketError as e:
            # Watchdog resets the stuck processing status after the timeout
            logger.error(f"Could not record settlement failure for {auction.auction_id}: {e}")
            return
        await self._broadcast_failed(auction, error)

    async def _broadcast_failed(self, auction: Auction, error: str) -> None:
        await self.bus.broadcast(auction.auction_id, "settlement_failed", {
            "auctionId": auction.auction_id,
            "error": error,
        })
