"""
Bid Validation Engine - auction rules applied before a bid is admitted.

Rules, in order (the first failure is reported):
1. Auction exists, is active, and owns the channel
2. Wall clock and bid timestamp within [start_time, end_time]
3. Signature recovers to the claimed bidder
   (exact replay of an accepted bid: idempotent duplicate, not an error)
4. amount >= required minimum
   (starting price for the first bid, else highest + min increment)
5. nonce > bidder's last recorded nonce (scope: bidder, all auctions)

Duplicate detection sits after the signature check so only a correctly
signed copy of an accepted bid short-circuits to success, and before the
amount and nonce checks, which an exact replay would otherwise fail.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from nftauction.core.ledger import ChannelState
from nftauction.core.models import Auction, Bid
from nftauction.core.signature import SignatureVerifier
from nftauction.utils.logger import get_logger

logger = get_logger("validation")


class BidRule(str, Enum):
    """Rule that decided a bid."""
    AUCTION_NOT_FOUND = "auction_not_found"
    AUCTION_NOT_ACTIVE = "auction_not_active"
    CHANNEL_MISMATCH = "channel_mismatch"
    NOT_STARTED = "auction_not_started"
    ENDED = "auction_ended"
    TIMESTAMP_OUT_OF_RANGE = "timestamp_out_of_range"
    SIGNATURE = "invalid_signature"
    BELOW_MINIMUM = "below_minimum"
    STALE_NONCE = "stale_nonce"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class BidDecision:
    """
    Outcome of validating one bid.

    accepted with duplicate=True means the exact bid was already accepted
    and nothing must change.
    """
    accepted: bool
    rule: Optional[BidRule] = None
    reason: str = ""
    required_minimum: Optional[int] = None
    duplicate: bool = False

    @classmethod
    def accept(cls, required_minimum: int) -> "BidDecision":
        return cls(accepted=True, required_minimum=required_minimum)

    @classmethod
    def reject(cls, rule: BidRule, reason: str, required_minimum: Optional[int] = None) -> "BidDecision":
        return cls(accepted=False, rule=rule, reason=reason, required_minimum=required_minimum)

    def to_dict(self) -> dict:
        data = {"accepted": self.accepted, "duplicate": self.duplicate}
        if not self.accepted:
            data["rule"] = self.rule.value
            data["reason"] = self.reason
        if self.required_minimum is not None:
            data["requiredMinimum"] = str(self.required_minimum)
        return data


def required_minimum(auction: Auction, state: ChannelState) -> int:
    """Smallest acceptable amount for the next bid."""
    if not state.has_bids:
        return auction.starting_price
    return state.highest_bid + auction.min_increment


class BidValidator:
    """
    Applies the auction rules to incoming bids.

    Stateless apart from the verifier; the caller supplies the auction,
    the channel state, the bidder's last nonce and whether the bid hash
    was already processed, all read inside the auction's critical section.
    """

    def __init__(self, verifier: SignatureVerifier):
        self.verifier = verifier

    # =========================================================================
    # Rule groups
    # =========================================================================

    def check_auction(
        self,
        auction: Optional[Auction],
        state: ChannelState,
        bid: Bid,
        now: int,
    ) -> Optional[BidDecision]:
        """Rules 1-2. Returns a rejection or None."""
        if auction is None:
            return BidDecision.reject(BidRule.AUCTION_NOT_FOUND, f"Auction {bid.auction_id} not found")

        if not auction.is_active:
            return BidDecision.reject(
                BidRule.AUCTION_NOT_ACTIVE,
                f"Auction {auction.auction_id} is {auction.status.value}",
            )

        if bid.auction_id != auction.auction_id or state.auction_id != auction.auction_id:
            return BidDecision.reject(
                BidRule.CHANNEL_MISMATCH,
                f"Bid for auction {bid.auction_id} does not belong to channel of {state.auction_id}",
            )

        if now < auction.start_time:
            return BidDecision.reject(BidRule.NOT_STARTED, f"Auction starts at {auction.start_time}")

        # Late bids lose the race with settlement
        if now > auction.end_time:
            return BidDecision.reject(BidRule.ENDED, f"Auction ended at {auction.end_time}")

        if not auction.accepts_time(bid.timestamp):
            return BidDecision.reject(
                BidRule.TIMESTAMP_OUT_OF_RANGE,
                f"Bid timestamp {bid.timestamp} outside [{auction.start_time}, {auction.end_time}]",
            )

        return None

    def check_signature(self, valid: bool, bid: Bid) -> Optional[BidDecision]:
        """Rule 3."""
        if not valid:
            return BidDecision.reject(BidRule.SIGNATURE, f"Invalid bid signature for bidder {bid.bidder}")
        return None

    def check_state(
        self,
        auction: Auction,
        state: ChannelState,
        bid: Bid,
        last_nonce: int,
        already_processed: bool,
    ) -> BidDecision:
        """Duplicate short-circuit, then rules 4-5."""
        minimum = required_minimum(auction, state)

        if already_processed:
            return BidDecision(accepted=True, rule=BidRule.DUPLICATE, duplicate=True,
                               reason="Bid already accepted", required_minimum=minimum)

        if bid.amount < minimum:
            return BidDecision.reject(
                BidRule.BELOW_MINIMUM,
                f"Bid amount too low. Required: {minimum}, provided: {bid.amount}",
                required_minimum=minimum,
            )

        if bid.nonce <= last_nonce:
            return BidDecision.reject(
                BidRule.STALE_NONCE,
                f"Nonce {bid.nonce} must exceed last used nonce {last_nonce}",
            )

        return BidDecision.accept(minimum)

    # =========================================================================
    # Entry points
    # =========================================================================

    def validate(
        self,
        auction: Optional[Auction],
        state: ChannelState,
        bid: Bid,
        now: int,
        last_nonce: int = 0,
        already_processed: bool = False,
    ) -> BidDecision:
        """Run all rules synchronously."""
        decision = self.check_auction(auction, state, bid, now)
        if decision is None:
            decision = self.check_signature(self.verifier.verify(bid), bid)
        if decision is None:
            decision = self.check_state(auction, state, bid, last_nonce, already_processed)
        self._log(bid, decision)
        return decision

    async def validate_async(
        self,
        auction: Optional[Auction],
        state: ChannelState,
        bid: Bid,
        now: int,
        last_nonce: int = 0,
        already_processed: bool = False,
    ) -> BidDecision:
        """Run all rules, verifying the signature off the event loop."""
        decision = self.check_auction(auction, state, bid, now)
        if decision is None:
            decision = self.check_signature(await self.verifier.verify_async(bid), bid)
        if decision is None:
            decision = self.check_state(auction, state, bid, last_nonce, already_processed)
        self._log(bid, decision)
        return decision

    def _log(self, bid: Bid, decision: BidDecision) -> None:
        if decision.duplicate:
            logger.info(f"Duplicate bid ignored: {bid!r}")
        elif decision.accepted:
            logger.debug(f"Bid valid: {bid!r}")
        else:
            logger.info(f"Bid rejected ({decision.rule.value}): {decision.reason}")
