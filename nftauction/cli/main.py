"""
nftauction CLI - command line interface for the bid settlement engine

Main entry point for all CLI commands.
"""

import asyncio
import json
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click

from nftauction.utils.logger import setup_logging, get_logger

logger = get_logger("cli")


def _fernet(key_name: str, password: str):
    import base64
    import hashlib
    from cryptography.fernet import Fernet

    salt = key_name.encode()
    key = base64.urlsafe_b64encode(
        hashlib.pbkdf2_hmac('sha256', password.encode(), salt, 100000)
    )
    return Fernet(key)


def load_private_key(data_dir: Path, key_name: str, password: str) -> Optional[bytes]:
    """
    Decrypt a stored bidder key.

    Returns:
        Private key bytes, or None if the key is missing or the password is wrong
    """
    from cryptography.fernet import InvalidToken

    key_path = data_dir / "keys" / f"{key_name}.json"
    if not key_path.exists():
        return None
    key_data = json.loads(key_path.read_text())
    try:
        return _fernet(key_name, password).decrypt(key_data["encrypted_private_key"].encode())
    except InvalidToken:
        return None


def run_engine(ctx, action, run_jobs: bool = False):
    """Start the engine, await action(app), shut down."""
    from nftauction.app import create_app
    from nftauction.core.errors import MarketError

    async def main():
        app = create_app(ctx.obj["config"])
        await app.start(run_jobs=run_jobs)
        try:
            return await action(app)
        finally:
            await app.close()

    try:
        return asyncio.run(main())
    except MarketError as e:
        click.echo(f"❌ {type(e).__name__}: {e}")
        sys.exit(1)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--data-dir", default="~/.nftauction", help="Data directory")
@click.option("--config", "config_path", default=None, help="JSON config file")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, data_dir, config_path):
    """NFT auction off-chain bid settlement engine"""
    import logging
    from nftauction.core.config import load_config

    level = logging.DEBUG if debug else logging.WARNING
    setup_logging(level=level)

    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = Path(data_dir).expanduser()
    ctx.obj["data_dir"].mkdir(parents=True, exist_ok=True)
    ctx.obj["config"] = replace(load_config(config_path), data_dir=ctx.obj["data_dir"])


# =============================================================================
# Key Commands
# =============================================================================


@cli.group()
def keys():
    """Bidder key management"""
    pass


@keys.command("new")
@click.option("--name", default="default", help="Key name")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True, help="Encryption password")
@click.pass_context
def keys_new(ctx, name, password):
    """Create a new encrypted bidder key"""
    from nftauction.crypto import generate_keypair

    kp = generate_keypair()
    encrypted_private_key = _fernet(name, password).encrypt(kp.private_key).decode('utf-8')

    key_path = ctx.obj["data_dir"] / "keys" / f"{name}.json"
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(json.dumps({
        "name": name,
        "address": kp.address,
        "encrypted_private_key": encrypted_private_key,
    }, indent=2))

    click.echo(f"✓ Key created: {name}")
    click.echo(f"  Address: {kp.address}")
    click.echo(f"  Saved to: {key_path}")


@keys.command("list")
@click.pass_context
def keys_list(ctx):
    """List stored keys"""
    key_dir = ctx.obj["data_dir"] / "keys"
    if not key_dir.exists():
        click.echo("No keys found.")
        return

    for key_file in sorted(key_dir.glob("*.json")):
        data = json.loads(key_file.read_text())
        click.echo(f"  {data['name']}: {data['address']}")


# =============================================================================
# Auction Commands
# =============================================================================


@cli.group()
def auction():
    """Auction listings"""
    pass


@auction.command("create")
@click.option("--seller", required=True, help="Seller address (0x...)")
@click.option("--nft-contract", required=True, help="ERC-721 contract address")
@click.option("--token-id", required=True, type=int)
@click.option("--starting-price", required=True, type=int, help="Starting price (wei)")
@click.option("--min-increment", required=True, type=int, help="Minimum bid increment (wei)")
@click.option("--duration", default=3600, type=int, help="Duration in seconds")
@click.option("--start", "start_time", default=None, type=int, help="Start time (default: now)")
@click.option("--title", default="")
@click.option("--id", "auction_id", default=None, help="Auction id (default: generated)")
@click.pass_context
def auction_create(ctx, seller, nft_contract, token_id, starting_price, min_increment, duration,
                   start_time, title, auction_id):
    """List a token for auction"""
    start_time = int(time.time()) if start_time is None else start_time

    async def action(app):
        return await app.service.create_auction(
            seller=seller,
            nft_contract=nft_contract,
            token_id=token_id,
            start_time=start_time,
            end_time=start_time + duration,
            starting_price=starting_price,
            min_increment=min_increment,
            auction_id=auction_id,
            title=title,
        )

    created = run_engine(ctx, action)
    click.echo(f"✓ Auction created: {created.auction_id}")
    click.echo(f"  Ends at: {created.end_time}")


@auction.command("show")
@click.argument("auction_id")
@click.pass_context
def auction_show(ctx, auction_id):
    """Show an auction"""
    async def action(app):
        return await app.service.get_auction(auction_id)

    click.echo(json.dumps(run_engine(ctx, action).to_dict(), indent=2))


# =============================================================================
# Bid Commands
# =============================================================================


@cli.group()
def bid():
    """Signed bids"""
    pass


@bid.command("sign")
@click.option("--key", "key_name", default="default", help="Key name")
@click.option("--password", prompt=True, hide_input=True, help="Key password")
@click.option("--auction", "auction_id", required=True)
@click.option("--amount", required=True, type=int, help="Bid amount (wei)")
@click.option("--nonce", required=True, type=int)
@click.option("--timestamp", default=None, type=int, help="Bid time (default: now)")
@click.pass_context
def bid_sign(ctx, key_name, password, auction_id, amount, nonce, timestamp):
    """Sign a bid and print its payload"""
    from nftauction.crypto import keypair_from_private_key
    from nftauction.core.models import create_signed_bid

    private_key = load_private_key(ctx.obj["data_dir"], key_name, password)
    if private_key is None:
        click.echo(f"❌ Cannot unlock key '{key_name}'")
        click.echo(f"   Create with: nftauction keys new --name {key_name}")
        sys.exit(1)

    signed = create_signed_bid(
        keypair_from_private_key(private_key),
        ctx.obj["config"].domain,
        auction_id,
        amount,
        nonce,
        int(time.time()) if timestamp is None else timestamp,
    )
    click.echo(json.dumps(signed.to_dict(), indent=2))


@bid.command("submit")
@click.argument("payload", type=click.File("r"), default="-")
@click.pass_context
def bid_submit(ctx, payload):
    """Submit a signed bid payload (JSON file or stdin)"""
    body = json.load(payload)

    async def action(app):
        channel_id = await app.service.channel_for(body.get("auctionId", ""))
        return await app.service.submit_bid(channel_id, body)

    decision = run_engine(ctx, action)
    if decision.accepted:
        click.echo("✅ Duplicate bid (already accepted)" if decision.duplicate else "✅ Bid accepted")
    else:
        click.echo(f"❌ Bid rejected ({decision.rule.value}): {decision.reason}")
        sys.exit(2)


@bid.command("list")
@click.argument("auction_id")
@click.pass_context
def bid_list(ctx, auction_id):
    """List bids of an auction, highest first"""
    async def action(app):
        return await app.service.get_bids(auction_id)

    bids = run_engine(ctx, action)
    if not bids:
        click.echo("No bids.")
        return
    for i, entry in enumerate(bids):
        click.echo(f"  {i+1}. {entry['amount']} from {entry['bidder']} "
                   f"(nonce {entry['nonce']}, t={entry['timestamp']}, {entry['status']})")


# =============================================================================
# Settlement Commands
# =============================================================================


@cli.command("settle")
@click.argument("auction_id")
@click.pass_context
def settle(ctx, auction_id):
    """Settle an expired auction"""
    async def action(app):
        return await app.service.settle(auction_id)

    outcome = run_engine(ctx, action)
    click.echo(json.dumps(outcome.to_dict(), indent=2))
    if not outcome.completed:
        sys.exit(2)


@cli.group()
def jobs():
    """Background settlement jobs"""
    pass


@jobs.command("once")
@click.pass_context
def jobs_once(ctx):
    """Run one watchdog pass and one settlement sweep"""
    async def action(app):
        return await app.scheduler.run_once()

    report = run_engine(ctx, action)
    click.echo(f"Settled: {len(report.settled)}, failed: {len(report.failed)}")
    for auction_id, error in report.errors.items():
        click.echo(f"  {auction_id}: {error}")


@jobs.command("run")
@click.pass_context
def jobs_run(ctx):
    """Run settlement jobs until interrupted"""
    async def action(app):
        click.echo("Settlement jobs running. Press Ctrl+C to stop.")
        await app.scheduler.run()

    try:
        run_engine(ctx, action, run_jobs=False)
    except KeyboardInterrupt:
        click.echo("\nJobs stopped.")


# =============================================================================
# Demo Command
# =============================================================================


@cli.command("demo")
def demo():
    """Run the bidding and settlement walkthrough in a temporary database"""
    import tempfile
    from nftauction.app import create_app
    from nftauction.core.config import MarketConfig
    from nftauction.core.models import create_signed_bid
    from nftauction.crypto import generate_keypair

    click.echo("=" * 60)
    click.echo("  NFT AUCTION - OFF-CHAIN BIDDING DEMO")
    click.echo("=" * 60)
    click.echo()

    async def walkthrough(data_dir: str):
        config = MarketConfig(data_dir=Path(data_dir))
        app = await create_app(config).start()
        domain = config.domain
        try:
            seller, alice, bob = generate_keypair(), generate_keypair(), generate_keypair()
            t0 = int(time.time()) - 100

            click.echo("📦 Listing auction (start 100, increment 10)...")
            listing = await app.service.create_auction(
                seller=seller.address,
                nft_contract="0x" + "11" * 20,
                token_id=1,
                start_time=t0,
                end_time=t0 + 3600,
                starting_price=100,
                min_increment=10,
                auction_id="demo",
                title="Demo Punk",
            )
            channel_id = await app.service.channel_for(listing.auction_id)
            click.echo(f"  ✓ Channel {channel_id[:18]}...")
            click.echo()

            steps = [
                ("Alice bids 100", alice, 100, 1, t0 + 10),
                ("Bob bids 105", bob, 105, 2, t0 + 20),
                ("Bob bids 110", bob, 110, 2, t0 + 30),
                ("Alice replays nonce 1 with 130", alice, 130, 1, t0 + 40),
            ]
            for label, kp, amount, nonce, ts in steps:
                signed = create_signed_bid(kp, domain, "demo", amount, nonce, ts)
                decision = await app.service.submit_bid(channel_id, signed, now=t0 + 50)
                mark = "✓" if decision.accepted else "✗"
                detail = "accepted" if decision.accepted else decision.reason
                click.echo(f"  {mark} {label}: {detail}")

            state = app.service.get_channel_state(channel_id)
            click.echo(f"  Highest: {state.highest_bid} by {state.highest_bidder[:12]}...")
            click.echo()

            click.echo("⚖️  Settling after end time...")
            outcome = await app.service.settle("demo", now=t0 + 3601)
            click.echo(f"  ✓ Status: {outcome.status.value}")
            click.echo(f"  ✓ Winner: {outcome.winner} (Bob: {bob.address})")
            click.echo(f"  ✓ Amount: {outcome.amount}")
            click.echo(f"  Fees: {app.fees.stats()}")
        finally:
            await app.close()

    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(walkthrough(tmp))

    click.echo()
    click.echo("✅ Demo complete!")


if __name__ == "__main__":
    cli()
