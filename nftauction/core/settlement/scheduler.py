"""
Settlement Scheduler - background settlement jobs.

Two loops:
- expiry sweep (every settlement_interval): settle expired active auctions
  whose settlement has not started or failed, oldest end time first,
  settle_batch_size at a time.
- watchdog (every watchdog_interval): reset settlements stuck in
  processing for longer than settlement_timeout, and clear errors of
  failed settlements older than error_retention.

A failure settling one auction never stops the sweep.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from nftauction.core.config import MarketConfig
from nftauction.core.errors import MarketError
from nftauction.core.storage.store import AuctionStore
from nftauction.utils.logger import get_logger

logger = get_logger("settlement.scheduler")


SettleFn = Callable[..., Awaitable]


@dataclass
class SweepReport:
    """What one expiry sweep did."""
    settled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: dict = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.settled) + len(self.failed)


class SettlementScheduler:
    """
    Drives settlement without an operator.

    Args:
        store: Durable auction store
        settle: Coroutine function settle(auction_id, now=...) returning an
                outcome with a .completed flag
        config: Timings and batch size
    """

    def __init__(self, store: AuctionStore, settle: SettleFn, config: MarketConfig):
        self.store = store
        self.settle = settle
        self.config = config

        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._stopped = asyncio.Event()

    # =========================================================================
    # Jobs
    # =========================================================================

    async def settle_due(self, now: Optional[int] = None) -> SweepReport:
        """Settle one batch of expired auctions."""
        now = int(time.time()) if now is None else now
        report = SweepReport()

        due = await self.store.find_due_auctions(now, self.config.settle_batch_size)
        if not due:
            logger.debug("No auctions to settle")
            return report

        logger.info(f"Found {len(due)} auctions to settle")
        for auction in due:
            try:
                outcome = await self.settle(auction.auction_id, now=now)
            except MarketError as e:
                logger.error(f"Failed to settle auction {auction.auction_id}: {e}")
                report.failed.append(auction.auction_id)
                report.errors[auction.auction_id] = str(e)
                continue
            except Exception as e:
                logger.exception(f"Unexpected error settling auction {auction.auction_id}")
                report.failed.append(auction.auction_id)
                report.errors[auction.auction_id] = f"{type(e).__name__}: {e}"
                continue

            if outcome.completed:
                report.settled.append(auction.auction_id)
            else:
                report.failed.append(auction.auction_id)
                report.errors[auction.auction_id] = outcome.error

        return report

    async def reset_stuck(self, now: Optional[int] = None) -> List[str]:
        """Return stuck processing settlements to the retryable state."""
        now = int(time.time()) if now is None else now
        reset = await self.store.reset_stuck(now - self.config.settlement_timeout)
        if reset:
            logger.warning(f"Reset {len(reset)} stuck settlements: {', '.join(reset)}")
        return reset

    async def purge_stale_errors(self, now: Optional[int] = None) -> int:
        now = int(time.time()) if now is None else now
        purged = await self.store.purge_errors(now - self.config.error_retention)
        if purged:
            logger.info(f"Cleared {purged} old settlement errors")
        return purged

    async def run_once(self, now: Optional[int] = None) -> SweepReport:
        """One pass of every job (watchdog first)."""
        await self.reset_stuck(now)
        await self.purge_stale_errors(now)
        return await self.settle_due(now)

    # =========================================================================
    # Loops
    # =========================================================================

    async def start(self) -> None:
        self._running = True
        self._stopped.clear()
        self._tasks = [
            asyncio.create_task(self._sweep_loop()),
            asyncio.create_task(self._watchdog_loop()),
        ]
        logger.info(f"Settlement jobs started (sweep every {self.config.settlement_interval}s, "
                    f"watchdog every {self.config.watchdog_interval}s)")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._stopped.set()
        logger.info("Settlement jobs stopped")

    async def run(self) -> None:
        """Run both loops until stop() is called."""
        await self.start()
        await self._stopped.wait()

    @property
    def running(self) -> bool:
        return self._running

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.settle_due()
            except Exception:
                logger.exception("Settlement sweep error")
            await asyncio.sleep(self.config.settlement_interval)

    async def _watchdog_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.watchdog_interval)
            try:
                await self.reset_stuck()
                await self.purge_stale_errors()
            except Exception:
                logger.exception("Settlement watchdog error")
