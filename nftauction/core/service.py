"""
Auction Service - inbound API of the bid settlement engine.

    create_auction(...)            -> Auction (channel opened)
    create_channel(auction_id)     -> channel id (cached per auction)
    submit_bid(channel_id, body)   -> BidDecision
    get_bids(auction_id)           -> bids, amount desc / timestamp asc
    settle(auction_id)             -> SettlementOutcome

Bid acceptance runs inside the auction's critical section, and inside
it the bidder's (nonces are shared across auctions):

    validate ─► record durably ─► apply to ledger ─► broadcast

Lock order is always auction, then bidder; settlement only takes the
auction lock.
"""

import time
from typing import Dict, List, Optional

from nftauction.crypto import bytes_to_hex, keccak256
from nftauction.core.errors import NotFoundError, ValidationError
from nftauction.core.ledger import BidLedger, ChannelState
from nftauction.core.locks import KeyedLocks
from nftauction.core.models import Auction, AuctionStatus, parse_bid_payload
from nftauction.core.notify import NotificationBus
from nftauction.core.persistence import PersistenceBridge
from nftauction.core.settlement.orchestrator import SettlementOrchestrator, SettlementOutcome
from nftauction.core.storage.store import AuctionStore
from nftauction.core.validation import BidDecision, BidValidator
from nftauction.utils.logger import get_logger
from nftauction.utils.validation import validate_address, validate_auction_id

logger = get_logger("service")


def _bidder_key(bidder: str) -> str:
    return f"bidder:{bidder.lower()}"


class AuctionService:
    """
    Owns the channel cache and sequences every bid through validation,
    persistence, the ledger and the notification bus.

    All collaborators are constructed by the application and injected.
    """

    def __init__(
        self,
        store: AuctionStore,
        ledger: BidLedger,
        validator: BidValidator,
        persistence: PersistenceBridge,
        bus: NotificationBus,
        locks: KeyedLocks,
        orchestrator: SettlementOrchestrator,
    ):
        self.store = store
        self.ledger = ledger
        self.validator = validator
        self.persistence = persistence
        self.bus = bus
        self.locks = locks
        self.orchestrator = orchestrator

        # auction_id -> channel_id
        self._channels: Dict[str, str] = {}

    # =========================================================================
    # Listings & Channels
    # =========================================================================

    async def create_auction(
        self,
        seller: str,
        nft_contract: str,
        token_id: int,
        start_time: int,
        end_time: int,
        starting_price: int,
        min_increment: int,
        auction_id: Optional[str] = None,
        chain_auction_id: Optional[int] = None,
        title: str = "",
    ) -> Auction:
        """
        Persist a new active auction and open its channel.

        Raises:
            ValidationError: invalid listing parameters
            ConflictError: auction id already taken
        """
        for name, address in (("seller", seller), ("nft_contract", nft_contract)):
            valid, err = validate_address(address, name)
            if not valid:
                raise ValidationError(err, rule="listing")

        if auction_id is None:
            auction_id = bytes_to_hex(keccak256(f"{seller}:{nft_contract}:{token_id}:{time.time_ns()}".encode()))[2:18]
        valid, err = validate_auction_id(auction_id)
        if not valid:
            raise ValidationError(err, rule="listing")

        try:
            auction = Auction(
                auction_id=auction_id,
                seller=seller.lower(),
                nft_contract=nft_contract.lower(),
                token_id=token_id,
                start_time=start_time,
                end_time=end_time,
                starting_price=starting_price,
                min_increment=min_increment,
                chain_auction_id=chain_auction_id,
                title=title,
            )
        except ValueError as e:
            raise ValidationError(str(e), rule="listing") from e

        await self.store.save_auction(auction)
        await self.create_channel(auction_id)

        logger.info(f"Listed auction {auction_id} ({title or 'untitled'}) "
                    f"[{start_time}, {end_time}] from {starting_price}")
        return auction

    async def create_channel(self, auction_id: str) -> str:
        """
        Channel of an auction, opened on first use.

        The channel id is cached, so repeated calls return the same channel.
        When the auction already has durable bids the channel is rebuilt
        from them.

        Raises:
            NotFoundError: unknown auction
        """
        cached = self._channels.get(auction_id)
        if cached is not None:
            return cached

        async with self.locks.hold(auction_id):
            cached = self._channels.get(auction_id)
            if cached is not None:
                return cached

            await self.store.require_auction(auction_id)
            channel_id = self.ledger.create_channel(auction_id)
            bids = await self.persistence.accepted_bids(auction_id)
            if bids:
                self.ledger.restore(channel_id, auction_id, bids)
            self._channels[auction_id] = channel_id
            return channel_id

    async def channel_for(self, auction_id: str) -> str:
        return await self.create_channel(auction_id)

    def get_channel_state(self, channel_id: str) -> ChannelState:
        return self.ledger.require_state(channel_id)

    async def get_auction(self, auction_id: str) -> Auction:
        return await self.store.require_auction(auction_id)

    # =========================================================================
    # Bidding
    # =========================================================================

    async def submit_bid(self, channel_id: str, payload, now: Optional[int] = None) -> BidDecision:
        """
        Validate and admit a signed bid.

        Args:
            channel_id: Channel of the auction
            payload: Inbound body (dict / BidPayload / Bid)
            now: Wall clock override (seconds)

        Returns:
            BidDecision; rejected bids carry the failing rule and reason

        Raises:
            ValidationError: malformed payload
            NotFoundError: unknown channel
            TransientInfraError: store unavailable
        """
        now = int(time.time()) if now is None else now
        bid = parse_bid_payload(payload)
        auction_id = self.ledger.require_state(channel_id).auction_id

        async with self.locks.hold(auction_id):
            async with self.locks.hold(_bidder_key(bid.bidder)):
                state = self.ledger.require_state(channel_id)
                auction = await self.store.get_auction(auction_id)

                last_nonce = max(
                    self.ledger.last_nonce(bid.bidder),
                    await self.persistence.last_nonce(bid.bidder),
                )
                processed = bid.bid_hash in state.processed or await self.persistence.is_recorded(bid.bid_hash)

                decision = await self.validator.validate_async(
                    auction, state, bid, now, last_nonce=last_nonce, already_processed=processed
                )
                if not decision.accepted or decision.duplicate:
                    return decision

                if not await self.persistence.record_bid(bid):
                    return BidDecision(accepted=True, duplicate=True, reason="Bid already accepted",
                                       required_minimum=decision.required_minimum)

                new_state = self.ledger.apply_bid(channel_id, bid)

                await self.bus.broadcast(auction_id, "bid_update", {
                    "channelId": channel_id,
                    "bid": bid.to_dict(),
                    "highestBid": str(new_state.highest_bid),
                    "highestBidder": new_state.highest_bidder,
                    "turnNum": new_state.turn_num,
                })

        logger.info(f"Accepted {bid!r}; highest now {new_state.highest_bid}")
        return decision

    async def get_bids(self, auction_id: str, now: Optional[int] = None) -> List[dict]:
        """
        Durable bids, amount desc then timestamp asc.

        Each bid is tagged "valid" until the auction ends and "expired" after.
        """
        now = int(time.time()) if now is None else now
        await self.store.require_auction(auction_id)

        bids = []
        for stored in await self.store.get_bids(auction_id):
            entry = stored.bid.to_dict()
            entry["bidHash"] = bytes_to_hex(stored.bid_hash)
            entry["status"] = "valid" if now <= stored.signature_valid_until else "expired"
            bids.append(entry)
        return bids

    # =========================================================================
    # Settlement
    # =========================================================================

    async def settle(self, auction_id: str, now: Optional[int] = None) -> SettlementOutcome:
        """Settle through the orchestrator; completed auctions release their channel."""
        outcome = await self.orchestrator.settle(auction_id, now=now)
        if outcome.completed:
            channel_id = self._channels.pop(auction_id, None)
            if channel_id is not None:
                self.ledger.close_channel(channel_id)
        return outcome

    # =========================================================================
    # Startup
    # =========================================================================

    async def recover(self) -> int:
        """
        Rebuild channels of active auctions from durable bids.

        Returns:
            Number of channels restored
        """
        restored = 0
        for auction in await self.store.list_auctions(AuctionStatus.ACTIVE.value):
            if auction.auction_id in self._channels:
                continue
            channel_id = self.ledger.create_channel(auction.auction_id)
            self.ledger.restore(channel_id, auction.auction_id, await self.persistence.accepted_bids(auction.auction_id))
            self._channels[auction.auction_id] = channel_id
            restored += 1

        logger.info(f"Recovered {restored} auction channels")
        return restored
