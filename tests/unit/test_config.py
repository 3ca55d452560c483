"""
Unit tests for configuration loading and the fee split.
"""

import json

import pytest

from nftauction.core.config import MarketConfig, load_config
from nftauction.core.settlement.fees import FeeSchedule


class TestMarketConfig:
    """Tests for configuration defaults and validation."""

    def test_defaults(self):
        config = MarketConfig()
        assert config.domain.name == "NFTMarketplaceAuction"
        assert config.domain.version == "1"
        assert config.domain.chain_id == 11155111
        assert config.platform_fee_bps == 250
        assert config.settlement_timeout == 600
        assert config.settle_batch_size == 10
        assert config.db_path.name == "auctions.db"

    @pytest.mark.parametrize("overrides", [
        {"platform_fee_bps": -1},
        {"platform_fee_bps": 10_001},
        {"chain_id": 0},
        {"verifying_contract": "0x1234"},
        {"settlement_timeout": 0},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ValueError):
            MarketConfig(**overrides)

    def test_domain_lowercases_contract(self):
        config = MarketConfig(verifying_contract="0x" + "AB" * 20)
        assert config.domain.verifying_contract == "0x" + "ab" * 20


class TestLoadConfig:
    """Tests for file and environment overrides."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        # setenv first so values loaded from .env files are removed on teardown
        for name in ("NFTA_CHAIN_ID", "NFTA_PLATFORM_FEE_BPS", "NFTA_DATA_DIR", "NFTA_DOMAIN_NAME"):
            monkeypatch.setenv(name, "")
            monkeypatch.delenv(name)

    def test_json_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"chain_id": 1, "platform_fee_bps": 100}))
        config = load_config(str(path))
        assert config.chain_id == 1
        assert config.platform_fee_bps == 100

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"chain_id": 1}))
        monkeypatch.setenv("NFTA_CHAIN_ID", "5")
        monkeypatch.setenv("NFTA_DATA_DIR", str(tmp_path / "elsewhere"))
        config = load_config(str(path))
        assert config.chain_id == 5
        assert config.data_dir == tmp_path / "elsewhere"

    def test_dotenv_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / "market.env"
        env_file.write_text("NFTA_PLATFORM_FEE_BPS=500\nNFTA_DOMAIN_NAME=TestMarket\n")
        config = load_config(env_file=str(env_file))
        assert config.platform_fee_bps == 500
        assert config.domain_name == "TestMarket"

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"gas_limit": 500000}))
        with pytest.raises(ValueError, match="Unknown config keys"):
            load_config(str(path))


class TestFeeSchedule:
    """Tests for the seller / platform split."""

    @pytest.mark.parametrize("amount,fee", [
        (0, 0),
        (110, 2),
        (10_000, 250),
        (10**18, 25 * 10**15),
    ])
    def test_split(self, amount, fee):
        split = FeeSchedule(250).split(amount)
        assert split.platform_fee == fee
        assert split.seller_proceeds + split.platform_fee == amount

    def test_zero_fee(self):
        assert FeeSchedule(0).split(999).seller_proceeds == 999

    def test_invalid(self):
        with pytest.raises(ValueError):
            FeeSchedule(20_000)
        with pytest.raises(ValueError):
            FeeSchedule(250).split(-1)

    def test_record_totals(self):
        fees = FeeSchedule(250)
        fees.record(fees.split(10_000))
        fees.record(fees.split(110))
        assert fees.stats() == {"platform_fee_bps": 250, "total_volume": 10_110, "total_platform_fees": 252}
