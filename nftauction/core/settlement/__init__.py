"""
Settlement of expired auctions.

- fees:         seller / platform split
- transfer:     settlement transfer protocol and adapters
- orchestrator: settle() state machine
- scheduler:    expiry sweep and stuck-settlement watchdog
"""

from nftauction.core.settlement.fees import FeeSchedule, FeeSplit
from nftauction.core.settlement.transfer import (
    OffChainTransfer,
    SettlementTransfer,
    SimulatedChain,
    TransferReceipt,
    TransferRequest,
)
from nftauction.core.settlement.orchestrator import SettlementOrchestrator, SettlementOutcome
from nftauction.core.settlement.scheduler import SettlementScheduler, SweepReport

__all__ = [
    "FeeSchedule",
    "FeeSplit",
    "OffChainTransfer",
    "SettlementTransfer",
    "SimulatedChain",
    "TransferReceipt",
    "TransferRequest",
    "SettlementOrchestrator",
    "SettlementOutcome",
    "SettlementScheduler",
    "SweepReport",
]
