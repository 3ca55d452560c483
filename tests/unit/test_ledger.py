"""
Unit tests for the in-memory bid ledger.
"""

import pytest

from conftest import T0
from nftauction.core.errors import FatalError, NotFoundError
from nftauction.core.ledger import BidLedger
from nftauction.core.models import Bid
from nftauction.crypto import ZERO_ADDRESS


ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20


def bid(amount, nonce=1, ts=T0, bidder=ALICE, auction_id="A"):
    return Bid(auction_id, bidder, amount, nonce, ts)


@pytest.fixture
def ledger():
    return BidLedger()


class TestChannels:
    """Tests for channel lifecycle."""

    def test_create_channel_initial_state(self, ledger):
        channel_id = ledger.create_channel("A")
        state = ledger.get_state(channel_id)
        assert state.auction_id == "A"
        assert state.bids == ()
        assert state.highest_bid == 0
        assert state.highest_bidder == ZERO_ADDRESS
        assert state.turn_num == 0
        assert not state.has_bids

    def test_second_create_is_independent(self, ledger):
        first = ledger.create_channel("A")
        second = ledger.create_channel("A")
        assert first != second
        ledger.apply_bid(first, bid(100))
        assert ledger.get_state(second).turn_num == 0

    def test_channel_id_format(self, ledger):
        channel_id = ledger.create_channel("A")
        assert channel_id.startswith("0x")
        assert len(channel_id) == 66

    def test_unknown_channel(self, ledger):
        assert ledger.get_state("0xnope") is None
        with pytest.raises(NotFoundError):
            ledger.require_state("0xnope")
        with pytest.raises(NotFoundError):
            ledger.apply_bid("0xnope", bid(100))

    def test_close_channel(self, ledger):
        channel_id = ledger.create_channel("A")
        assert ledger.close_channel(channel_id).auction_id == "A"
        assert ledger.get_state(channel_id) is None
        assert len(ledger) == 0


class TestApplyBid:
    """Tests for atomic bid application."""

    def test_apply_updates_projection(self, ledger):
        channel_id = ledger.create_channel("A")
        state = ledger.apply_bid(channel_id, bid(100))
        assert state.highest_bid == 100
        assert state.highest_bidder == ALICE
        assert state.turn_num == 1
        assert state.participants == (ALICE,)

    def test_highest_is_running_max(self, ledger):
        channel_id = ledger.create_channel("A")
        amounts = [100, 110, 150, 160, 300]
        for i, amount in enumerate(amounts):
            state = ledger.apply_bid(channel_id, bid(amount, nonce=i + 1, ts=T0 + i))
            assert state.highest_bid == max(amounts[: i + 1])
            assert state.turn_num == i + 1

    def test_restored_tie_prefers_earliest_timestamp(self, ledger):
        channel_id = ledger.create_channel("A")
        state = ledger.restore(channel_id, "A", [
            bid(200, ts=T0 + 50, bidder=ALICE),
            bid(200, ts=T0 + 20, bidder=BOB),
        ])
        assert state.highest_bidder == BOB

    def test_previous_state_unchanged(self, ledger):
        channel_id = ledger.create_channel("A")
        before = ledger.apply_bid(channel_id, bid(100))
        after = ledger.apply_bid(channel_id, bid(110, nonce=2, bidder=BOB))
        assert before.turn_num == 1
        assert before.highest_bid == 100
        assert after.participants == (ALICE, BOB)

    def test_processed_set(self, ledger):
        channel_id = ledger.create_channel("A")
        b = bid(100)
        state = ledger.apply_bid(channel_id, b)
        assert b.bid_hash in state.processed

    def test_double_apply_is_fatal(self, ledger):
        channel_id = ledger.create_channel("A")
        ledger.apply_bid(channel_id, bid(100))
        with pytest.raises(FatalError):
            ledger.apply_bid(channel_id, bid(100))
        assert ledger.get_state(channel_id).turn_num == 1

    def test_wrong_auction_is_fatal(self, ledger):
        channel_id = ledger.create_channel("A")
        with pytest.raises(FatalError):
            ledger.apply_bid(channel_id, bid(100, auction_id="B"))
        assert ledger.get_state(channel_id).turn_num == 0


class TestNoncesAndRestore:
    """Tests for the bidder nonce cache and rebuilds."""

    def test_nonce_cache_spans_channels(self, ledger):
        a = ledger.create_channel("A")
        b = ledger.create_channel("B")
        ledger.apply_bid(a, bid(100, nonce=4))
        ledger.apply_bid(b, bid(100, nonce=2, auction_id="B"))
        assert ledger.last_nonce(ALICE) == 4
        assert ledger.last_nonce(ALICE.upper().replace("0X", "0x")) == 4
        assert ledger.last_nonce(BOB) == 0

    def test_restore_skips_repeats(self, ledger):
        channel_id = ledger.create_channel("A")
        b1 = bid(100)
        state = ledger.restore(channel_id, "A", [b1, b1, bid(120, nonce=3, bidder=BOB)])
        assert state.turn_num == 2
        assert state.highest_bidder == BOB
        assert ledger.last_nonce(BOB) == 3

    def test_stats(self, ledger):
        channel_id = ledger.create_channel("A")
        ledger.apply_bid(channel_id, bid(100))
        assert ledger.stats() == {"channels": 1, "bids": 1}
