"""
Shared fixtures: signing domain, bidder keys, and an engine on a
temporary SQLite database.
"""

import pytest

from nftauction.app import create_app
from nftauction.core.config import MarketConfig
from nftauction.core.models import Auction
from nftauction.crypto import generate_keypair, keypair_from_private_key


T0 = 1_700_000_000
SELLER = "0x" + "5e" * 20
NFT = "0x" + "11" * 20
PLATFORM = "0x" + "fe" * 20


@pytest.fixture
def config(tmp_path):
    return MarketConfig(data_dir=tmp_path / "data", platform_address=PLATFORM)


@pytest.fixture
def domain(config):
    return config.domain


@pytest.fixture
def alice():
    return keypair_from_private_key((1).to_bytes(32, "big"))


@pytest.fixture
def bob():
    return keypair_from_private_key((2).to_bytes(32, "big"))


@pytest.fixture
def carol():
    return generate_keypair()


@pytest.fixture
def app(config):
    application = create_app(config)
    yield application
    application.store.close()


def make_auction(auction_id: str = "A", **overrides) -> Auction:
    """Auction A from the reference scenario: start 100, increment 10, one hour."""
    values = dict(
        auction_id=auction_id,
        seller=SELLER,
        nft_contract=NFT,
        token_id=1,
        start_time=T0,
        end_time=T0 + 3600,
        starting_price=100,
        min_increment=10,
    )
    values.update(overrides)
    return Auction(**values)
