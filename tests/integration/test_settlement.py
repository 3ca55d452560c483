"""
Integration tests for settlement: winner selection, re-verification,
fees, the external transfer and retry/resume after failures.
"""

import pytest

from conftest import NFT, PLATFORM, SELLER, T0
from nftauction.app import create_app
from nftauction.core.errors import ConflictError, FatalError, NotFoundError, TransientInfraError, ValidationError
from nftauction.core.models import AttemptStatus, AuctionStatus, SettlementStatus, create_signed_bid
from nftauction.core.notify import QueueObserver
from nftauction.core.settlement import SimulatedChain
from nftauction.core.storage.sqlite_adapter import amount_key


END = T0 + 3600
AFTER = END + 1
NOW = T0 + 100


async def list_auction(app, auction_id="A", **overrides):
    values = dict(
        seller=SELLER,
        nft_contract=NFT,
        token_id=1,
        start_time=T0,
        end_time=END,
        starting_price=100,
        min_increment=10,
        auction_id=auction_id,
        title="Test Punk",
    )
    values.update(overrides)
    await app.service.create_auction(**values)
    return await app.service.channel_for(auction_id)


async def bid(app, channel, keypair, domain, amount, nonce, ts, auction_id="A"):
    decision = await app.service.submit_bid(
        channel, create_signed_bid(keypair, domain, auction_id, amount, nonce, ts), now=NOW
    )
    assert decision.accepted, decision.reason
    return decision


@pytest.fixture
def chain():
    return SimulatedChain()


@pytest.fixture
def chain_app(config, chain):
    application = create_app(config, chain_transfer=chain)
    yield application
    application.store.close()


class TestOffChainSettlement:
    """Auctions without an on-chain id settle in the store only."""

    @pytest.mark.asyncio
    async def test_no_bids(self, app):
        await app.start()
        await list_auction(app)

        outcome = await app.service.settle("A", now=AFTER)

        assert outcome.completed
        assert outcome.winner is None
        assert outcome.amount == 0
        auction = await app.service.get_auction("A")
        assert auction.status == AuctionStatus.COMPLETED
        assert auction.settlement_status == SettlementStatus.COMPLETED
        assert auction.highest_bidder is None
        [attempt] = await app.store.get_attempts("A")
        assert attempt.status == AttemptStatus.SUCCESS
        assert attempt.winner is None

    @pytest.mark.asyncio
    async def test_winner_and_fees(self, app, alice, bob, domain):
        await app.start()
        channel = await list_auction(app)
        await bid(app, channel, alice, domain, 100, 1, T0 + 10)
        await bid(app, channel, bob, domain, 110, 1, T0 + 20)

        outcome = await app.service.settle("A", now=AFTER)

        assert outcome.completed
        assert outcome.winner == bob.address
        assert outcome.amount == 110
        assert outcome.tx_ref is None

        [attempt] = await app.store.get_attempts("A")
        assert attempt.seller_proceeds == 108
        assert attempt.platform_fee == 2
        assert app.fees.stats()["total_platform_fees"] == 2

        auction = await app.service.get_auction("A")
        assert auction.highest_bid == 110
        assert auction.highest_bidder == bob.address

    @pytest.mark.asyncio
    async def test_tie_goes_to_earliest_timestamp(self, app, alice, bob, domain):
        await app.start()
        await list_auction(app)
        # Equal amounts can only reach the store directly
        await app.store.record_bid(create_signed_bid(bob, domain, "A", 200, 1, T0 + 30))
        await app.store.record_bid(create_signed_bid(alice, domain, "A", 200, 1, T0 + 20))

        outcome = await app.service.settle("A", now=AFTER)

        assert outcome.winner == alice.address

    @pytest.mark.asyncio
    async def test_not_ended(self, app, alice, domain):
        await app.start()
        channel = await list_auction(app)
        await bid(app, channel, alice, domain, 100, 1, T0 + 10)

        with pytest.raises(ValidationError) as exc:
            await app.service.settle("A", now=END)
        assert exc.value.rule == "auction_not_ended"
        assert (await app.service.get_auction("A")).settlement_status is None

    @pytest.mark.asyncio
    async def test_unknown_auction(self, app):
        await app.start()
        with pytest.raises(NotFoundError):
            await app.service.settle("nope", now=AFTER)

    @pytest.mark.asyncio
    async def test_second_settle_is_idempotent(self, app, alice, domain):
        await app.start()
        channel = await list_auction(app)
        await bid(app, channel, alice, domain, 100, 1, T0 + 10)

        first = await app.service.settle("A", now=AFTER)
        second = await app.service.settle("A", now=AFTER + 60)

        assert second.completed
        assert second.already_settled
        assert second.winner == first.winner
        assert second.amount == first.amount
        assert len(await app.store.get_attempts("A")) == 1

    @pytest.mark.asyncio
    async def test_processing_conflicts(self, app):
        await app.start()
        await list_auction(app)
        assert await app.store.claim_settlement("A", AFTER)

        with pytest.raises(ConflictError):
            await app.service.settle("A", now=AFTER + 1)

    @pytest.mark.asyncio
    async def test_cancelled_auction(self, app):
        await app.start()
        await list_auction(app)
        await app.store.update_auction("A", status=AuctionStatus.CANCELLED)

        with pytest.raises(ValidationError) as exc:
            await app.service.settle("A", now=AFTER)
        assert exc.value.rule == "auction_not_active"

    @pytest.mark.asyncio
    async def test_channel_released_after_completion(self, app, alice, domain):
        await app.start()
        channel = await list_auction(app)
        await bid(app, channel, alice, domain, 100, 1, T0 + 10)

        await app.service.settle("A", now=AFTER)

        assert app.ledger.get_state(channel) is None

    @pytest.mark.asyncio
    async def test_broadcasts_completion(self, app, alice, domain):
        await app.start()
        channel = await list_auction(app)
        await bid(app, channel, alice, domain, 100, 1, T0 + 10)
        observer = QueueObserver()
        app.bus.subscribe("A", observer)

        await app.service.settle("A", now=AFTER)

        [message] = observer.drain()
        assert message["type"] == "auction_completed"
        assert message["data"]["winner"] == alice.address
        assert message["data"]["winningAmount"] == "100"
        assert message["data"]["title"] == "Test Punk"


class TestReverification:
    """The winning bid is re-checked before any transfer."""

    @pytest.mark.asyncio
    async def test_altered_record_fails_without_transfer(self, chain_app, chain, alice, domain):
        await chain_app.start()
        channel = await list_auction(chain_app, chain_auction_id=7)
        await bid(chain_app, channel, alice, domain, 100, 1, T0 + 10)
        observer = QueueObserver()
        chain_app.bus.subscribe("A", observer)

        conn = chain_app.store.adapter._get_conn()
        with conn:
            conn.execute(
                "UPDATE bids SET amount = ?, amount_key = ? WHERE auction_id = ?",
                ("500", amount_key(500), "A"),
            )

        outcome = await chain_app.service.settle("A", now=AFTER)

        assert outcome.status == SettlementStatus.FAILED
        assert "altered" in outcome.error
        assert chain.transfers == []
        auction = await chain_app.service.get_auction("A")
        assert auction.settlement_status == SettlementStatus.FAILED
        assert auction.status == AuctionStatus.ACTIVE
        [attempt] = await chain_app.store.get_attempts("A")
        assert attempt.status == AttemptStatus.FAILED
        assert [m["type"] for m in observer.drain()] == ["settlement_failed"]

    @pytest.mark.asyncio
    async def test_unaccounted_nonce_fails(self, app, alice, domain):
        await app.start()
        channel = await list_auction(app)
        await bid(app, channel, alice, domain, 100, 1, T0 + 10)

        conn = app.store.adapter._get_conn()
        with conn:
            conn.execute("DELETE FROM bidder_nonces")

        outcome = await app.service.settle("A", now=AFTER)

        assert outcome.status == SettlementStatus.FAILED
        assert "nonce" in outcome.error


class TestOnChainSettlement:
    """Auctions with an on-chain id settle through the chain transfer."""

    @pytest.mark.asyncio
    async def test_transfer_moves_token_and_funds(self, chain_app, chain, alice, bob, domain):
        await chain_app.start()
        channel = await list_auction(chain_app, chain_auction_id=7)
        await bid(chain_app, channel, alice, domain, 10_000, 1, T0 + 10)
        await bid(chain_app, channel, bob, domain, 20_000, 1, T0 + 20)

        outcome = await chain_app.service.settle("A", now=AFTER)

        assert outcome.completed
        assert outcome.tx_ref.startswith("0x")
        assert chain.owner_of(NFT, 1) == bob.address
        assert chain.balance_of(SELLER) == 19_500
        assert chain.balance_of(PLATFORM) == 500

        [request] = chain.transfers
        assert request.chain_auction_id == 7
        assert request.winner == bob.address
        assert request.nonce == 1

        auction = await chain_app.service.get_auction("A")
        assert auction.settlement_tx_hash == outcome.tx_ref
        [attempt] = await chain_app.store.get_attempts("A")
        assert attempt.fee_used == chain.gas_used * chain.gas_price
        assert attempt.block_number == 1

    @pytest.mark.asyncio
    async def test_no_bids_returns_asset(self, chain_app, chain):
        await chain_app.start()
        await list_auction(chain_app, chain_auction_id=7)

        outcome = await chain_app.service.settle("A", now=AFTER)

        assert outcome.completed
        assert chain.owner_of(NFT, 1) == SELLER
        assert chain.transfers[0].winner is None

    @pytest.mark.asyncio
    async def test_missing_chain_transfer_is_fatal_before_any_change(self, app):
        await app.start()
        await list_auction(app, chain_auction_id=7)

        with pytest.raises(FatalError):
            await app.service.settle("A", now=AFTER)

        assert (await app.service.get_auction("A")).settlement_status is None
        assert await app.store.get_attempts("A") == []

    @pytest.mark.asyncio
    async def test_revert_then_retry(self, chain_app, chain, alice, domain):
        await chain_app.start()
        channel = await list_auction(chain_app, chain_auction_id=7)
        await bid(chain_app, channel, alice, domain, 100, 1, T0 + 10)
        observer = QueueObserver()
        chain_app.bus.subscribe("A", observer)
        chain.revert_next = True

        failed = await chain_app.service.settle("A", now=AFTER)
        assert failed.status == SettlementStatus.FAILED
        assert failed.error == "execution reverted"
        assert (await chain_app.service.get_auction("A")).settlement_error == "execution reverted"

        retried = await chain_app.service.settle("A", now=AFTER + 30)
        assert retried.completed
        assert not retried.resumed
        assert chain.owner_of(NFT, 1) == alice.address

        statuses = [a.status for a in await chain_app.store.get_attempts("A")]
        assert sorted(s.value for s in statuses) == ["failed", "success"]
        assert [m["type"] for m in observer.drain()] == ["settlement_failed", "auction_completed"]

    @pytest.mark.asyncio
    async def test_submit_failure_leaves_failed_status(self, chain_app, chain, alice, domain):
        await chain_app.start()
        channel = await list_auction(chain_app, chain_auction_id=7)
        await bid(chain_app, channel, alice, domain, 100, 1, T0 + 10)
        chain.fail_submit = True

        with pytest.raises(TransientInfraError):
            await chain_app.service.settle("A", now=AFTER)

        auction = await chain_app.service.get_auction("A")
        assert auction.settlement_status == SettlementStatus.FAILED
        assert "RPC endpoint unreachable" in auction.settlement_error
        [attempt] = await chain_app.store.get_attempts("A")
        assert attempt.status == AttemptStatus.FAILED

        chain.fail_submit = False
        assert (await chain_app.service.settle("A", now=AFTER + 30)).completed

    @pytest.mark.asyncio
    async def test_finality_error_resumes_without_resubmitting(self, chain_app, chain, alice, domain):
        await chain_app.start()
        channel = await list_auction(chain_app, chain_auction_id=7)
        await bid(chain_app, channel, alice, domain, 100, 1, T0 + 10)
        chain.raise_finality = TransientInfraError("receipt polling timed out")

        with pytest.raises(TransientInfraError):
            await chain_app.service.settle("A", now=AFTER)

        [pending] = await chain_app.store.get_attempts("A")
        assert pending.status == AttemptStatus.PENDING
        assert pending.tx_ref is not None
        assert (await chain_app.service.get_auction("A")).settlement_status == SettlementStatus.FAILED

        chain.raise_finality = None
        outcome = await chain_app.service.settle("A", now=AFTER + 30)

        assert outcome.completed
        assert outcome.resumed
        assert outcome.tx_ref == pending.tx_ref
        assert len(chain.transfers) == 1
        [done] = await chain_app.store.get_attempts("A")
        assert done.status == AttemptStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, config, alice, domain):
        chain = SimulatedChain(enforce_balances=True)
        application = create_app(config, chain_transfer=chain)
        try:
            await application.start()
            channel = await list_auction(application, chain_auction_id=7)
            await bid(application, channel, alice, domain, 100, 1, T0 + 10)

            outcome = await application.service.settle("A", now=AFTER)
            assert outcome.status == SettlementStatus.FAILED
            assert outcome.error == "Insufficient funds"

            chain.fund(alice.address, 100)
            assert (await application.service.settle("A", now=AFTER + 30)).completed
            assert chain.balance_of(alice.address) == 0
        finally:
            application.store.close()
