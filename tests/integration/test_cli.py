"""
Integration tests for the command line interface.
"""

import json
import time

import pytest
from click.testing import CliRunner

from conftest import NFT, SELLER
from nftauction.cli.main import cli, load_private_key


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "cli"


def invoke(runner, data_dir, *args, **kwargs):
    return runner.invoke(cli, ["--data-dir", str(data_dir), *args], **kwargs)


class TestKeys:
    def test_new_and_list(self, runner, data_dir):
        result = invoke(runner, data_dir, "keys", "new", "--name", "alice", "--password", "pw")
        assert result.exit_code == 0, result.output
        assert "Key created: alice" in result.output

        listed = invoke(runner, data_dir, "keys", "list")
        assert "alice: 0x" in listed.output

    def test_wrong_password(self, runner, data_dir):
        invoke(runner, data_dir, "keys", "new", "--name", "alice", "--password", "pw")
        assert load_private_key(data_dir, "alice", "pw") is not None
        assert load_private_key(data_dir, "alice", "nope") is None
        assert load_private_key(data_dir, "bob", "pw") is None


class TestBidFlow:
    def test_create_sign_submit_list(self, runner, data_dir, tmp_path):
        now = int(time.time())
        created = invoke(
            runner, data_dir, "auction", "create",
            "--seller", SELLER, "--nft-contract", NFT, "--token-id", "1",
            "--starting-price", "100", "--min-increment", "10",
            "--start", str(now - 60), "--id", "cli-1",
        )
        assert created.exit_code == 0, created.output
        assert "Auction created: cli-1" in created.output

        invoke(runner, data_dir, "keys", "new", "--name", "alice", "--password", "pw")
        signed = invoke(
            runner, data_dir, "bid", "sign", "--key", "alice", "--password", "pw",
            "--auction", "cli-1", "--amount", "100", "--nonce", "1",
        )
        assert signed.exit_code == 0, signed.output
        payload = tmp_path / "bid.json"
        payload.write_text(signed.output)

        submitted = invoke(runner, data_dir, "bid", "submit", str(payload))
        assert submitted.exit_code == 0, submitted.output
        assert "Bid accepted" in submitted.output

        again = invoke(runner, data_dir, "bid", "submit", str(payload))
        assert "Duplicate bid" in again.output

        listed = invoke(runner, data_dir, "bid", "list", "cli-1")
        assert "100 from 0x" in listed.output

        shown = invoke(runner, data_dir, "auction", "show", "cli-1")
        assert json.loads(shown.output)["highestBid"] == "100"

    def test_rejected_bid_exit_code(self, runner, data_dir, tmp_path):
        now = int(time.time())
        invoke(
            runner, data_dir, "auction", "create",
            "--seller", SELLER, "--nft-contract", NFT, "--token-id", "1",
            "--starting-price", "100", "--min-increment", "10",
            "--start", str(now - 60), "--id", "cli-2",
        )
        invoke(runner, data_dir, "keys", "new", "--name", "alice", "--password", "pw")
        signed = invoke(
            runner, data_dir, "bid", "sign", "--key", "alice", "--password", "pw",
            "--auction", "cli-2", "--amount", "50", "--nonce", "1",
        )

        result = invoke(runner, data_dir, "bid", "submit", input=signed.output)

        assert result.exit_code == 2
        assert "below_minimum" in result.output

    def test_settle_before_end_fails(self, runner, data_dir):
        invoke(
            runner, data_dir, "auction", "create",
            "--seller", SELLER, "--nft-contract", NFT, "--token-id", "1",
            "--starting-price", "100", "--min-increment", "10", "--id", "cli-3",
        )
        result = invoke(runner, data_dir, "settle", "cli-3")
        assert result.exit_code == 1
        assert "ValidationError" in result.output

    def test_jobs_once_settles_expired(self, runner, data_dir):
        invoke(
            runner, data_dir, "auction", "create",
            "--seller", SELLER, "--nft-contract", NFT, "--token-id", "1",
            "--starting-price", "100", "--min-increment", "10",
            "--start", str(int(time.time()) - 120), "--duration", "60", "--id", "cli-4",
        )
        result = invoke(runner, data_dir, "jobs", "once")
        assert result.exit_code == 0, result.output
        assert "Settled: 1, failed: 0" in result.output


def test_demo(runner, data_dir):
    result = invoke(runner, data_dir, "demo")
    assert result.exit_code == 0, result.output
    assert "Demo complete" in result.output
    assert "Status: completed" in result.output
