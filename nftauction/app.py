"""
Application wiring.

Every collaborator is built here, in dependency order, before the first
request is served:

    store ─► ledger, locks, bus ─► verifier ─► validator, persistence
          ─► fees ─► orchestrator ─► service ─► scheduler

start() rebuilds the in-memory channels from the store; only then is the
service ready for bids.
"""

from typing import Optional

from nftauction.core.config import MarketConfig
from nftauction.core.ledger import BidLedger
from nftauction.core.locks import KeyedLocks
from nftauction.core.notify import NotificationBus
from nftauction.core.persistence import PersistenceBridge
from nftauction.core.service import AuctionService
from nftauction.core.settlement.fees import FeeSchedule
from nftauction.core.settlement.orchestrator import SettlementOrchestrator
from nftauction.core.settlement.scheduler import SettlementScheduler
from nftauction.core.settlement.transfer import SettlementTransfer
from nftauction.core.signature import SignatureVerifier
from nftauction.core.storage.store import AuctionStore
from nftauction.core.validation import BidValidator
from nftauction.utils.logger import get_logger

logger = get_logger("app")


class Application:
    """Fully constructed engine."""

    def __init__(self, config: MarketConfig, chain_transfer: Optional[SettlementTransfer] = None):
        self.config = config

        self.store = AuctionStore(config.data_dir, config.db_name)
        self.ledger = BidLedger()
        self.locks = KeyedLocks()
        self.bus = NotificationBus()

        self.verifier = SignatureVerifier(config.domain)
        self.validator = BidValidator(self.verifier)
        self.persistence = PersistenceBridge(self.store)

        self.fees = FeeSchedule(config.platform_fee_bps)
        self.orchestrator = SettlementOrchestrator(
            store=self.store,
            verifier=self.verifier,
            bus=self.bus,
            locks=self.locks,
            fees=self.fees,
            platform_address=config.platform_address,
            chain_transfer=chain_transfer,
        )
        self.service = AuctionService(
            store=self.store,
            ledger=self.ledger,
            validator=self.validator,
            persistence=self.persistence,
            bus=self.bus,
            locks=self.locks,
            orchestrator=self.orchestrator,
        )
        self.scheduler = SettlementScheduler(self.store, self.service.settle, config)

        self._started = False

    async def start(self, run_jobs: bool = False) -> "Application":
        """Recover channels, optionally start settlement jobs."""
        if self._started:
            return self
        await self.service.recover()
        if run_jobs:
            await self.scheduler.start()
        self._started = True
        logger.info(f"Engine ready (chain {self.config.chain_id}, db {self.config.db_path})")
        return self

    async def close(self) -> None:
        if self.scheduler.running:
            await self.scheduler.stop()
        self.store.close()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started


def create_app(config: Optional[MarketConfig] = None, chain_transfer: Optional[SettlementTransfer] = None) -> Application:
    """Build an Application; call start() before serving requests."""
    return Application(config or MarketConfig(), chain_transfer=chain_transfer)
