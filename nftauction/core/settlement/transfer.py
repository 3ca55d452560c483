"""
Settlement transfer collaborator.

The orchestrator depends only on the SettlementTransfer protocol:

    submit(request)            -> transaction reference (None off-chain)
    await_finality(reference)  -> TransferReceipt (success / failure)

Adapters:
- OffChainTransfer: no external transfer, the off-chain state is final.
- SimulatedChain:   in-process stand-in for the marketplace contract that
                    moves token ownership and funds and mints tx hashes.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from nftauction.crypto import keccak256, bytes_to_hex
from nftauction.core.errors import TransientInfraError
from nftauction.utils.logger import get_logger

logger = get_logger("settlement.transfer")


# =============================================================================
# Messages
# =============================================================================


@dataclass(frozen=True)
class TransferRequest:
    """
    Everything needed to settle one auction.

    winner is None when the auction had no bids; the asset then goes back
    to the seller and no funds move.
    """
    auction_id: str
    seller: str
    nft_contract: str
    token_id: int
    winner: Optional[str] = None
    amount: int = 0
    seller_proceeds: int = 0
    platform_fee: int = 0
    platform_address: Optional[str] = None
    chain_auction_id: Optional[int] = None
    # Winning bid evidence checked by the contract
    nonce: int = 0
    timestamp: int = 0
    signature: bytes = b""

    @property
    def has_winner(self) -> bool:
        return self.winner is not None


@dataclass(frozen=True)
class TransferReceipt:
    success: bool
    tx_ref: Optional[str] = None
    fee_used: Optional[int] = None
    block_number: Optional[int] = None
    error: Optional[str] = None


class SettlementTransfer(Protocol):
    """External settlement collaborator."""

    async def submit(self, request: TransferRequest) -> Optional[str]: ...

    async def await_finality(self, tx_ref: Optional[str]) -> TransferReceipt: ...


# =============================================================================
# Off-chain
# =============================================================================


class OffChainTransfer:
    """Settlement for auctions that never went on chain."""

    async def submit(self, request: TransferRequest) -> Optional[str]:
        logger.debug(f"Off-chain settlement for auction {request.auction_id}")
        return None

    async def await_finality(self, tx_ref: Optional[str]) -> TransferReceipt:
        return TransferReceipt(success=True, tx_ref=tx_ref)


# =============================================================================
# Simulated chain
# =============================================================================


@dataclass
class SimulatedChain:
    """
    In-memory marketplace contract.

    Tokens seen for the first time belong to the seller of the auction that
    references them. Funds are credited to seller and platform; winners are
    debited only when enforce_balances is set.

    Failure injection:
        fail_submit:    submit() raises TransientInfraError
        revert_next:    the next finalized transaction reverts
        raise_finality: await_finality() raises this exception
    """
    gas_used: int = 180_000
    gas_price: int = 1_000_000_000
    enforce_balances: bool = False

    owners: Dict[Tuple[str, int], str] = field(default_factory=dict)
    balances: Dict[str, int] = field(default_factory=dict)
    transfers: List[TransferRequest] = field(default_factory=list)
    block_number: int = 0

    fail_submit: bool = False
    revert_next: bool = False
    raise_finality: Optional[Exception] = None

    _pending: Dict[str, TransferRequest] = field(default_factory=dict)
    _receipts: Dict[str, TransferReceipt] = field(default_factory=dict)
    _nonce: int = 0

    def fund(self, address: str, amount: int) -> None:
        key = address.lower()
        self.balances[key] = self.balances.get(key, 0) + amount

    def balance_of(self, address: Optional[str]) -> int:
        if address is None:
            return 0
        return self.balances.get(address.lower(), 0)

    def owner_of(self, nft_contract: str, token_id: int) -> Optional[str]:
        return self.owners.get((nft_contract.lower(), token_id))

    async def submit(self, request: TransferRequest) -> Optional[str]:
        if self.fail_submit:
            raise TransientInfraError("RPC endpoint unreachable")

        self._nonce += 1
        tx_ref = bytes_to_hex(keccak256(f"{request.auction_id}:{self._nonce}".encode()))
        self._pending[tx_ref] = request
        logger.info(f"Submitted settlement tx {tx_ref[:12]}... for auction {request.auction_id}")
        return tx_ref

    async def await_finality(self, tx_ref: Optional[str]) -> TransferReceipt:
        if self.raise_finality is not None:
            raise self.raise_finality

        if tx_ref in self._receipts:
            return self._receipts[tx_ref]

        request = self._pending.pop(tx_ref, None)
        if request is None:
            return TransferReceipt(success=False, tx_ref=tx_ref, error="Unknown transaction")

        self.block_number += 1
        fee_used = self.gas_used * self.gas_price

        if self.revert_next:
            self.revert_next = False
            receipt = TransferReceipt(success=False, tx_ref=tx_ref, fee_used=fee_used,
                                      block_number=self.block_number, error="execution reverted")
        else:
            error = self._apply(request)
            receipt = TransferReceipt(success=error is None, tx_ref=tx_ref, fee_used=fee_used,
                                      block_number=self.block_number, error=error)

        self._receipts[tx_ref] = receipt
        return receipt

    def _apply(self, request: TransferRequest) -> Optional[str]:
        token = (request.nft_contract.lower(), request.token_id)
        owner = self.owners.setdefault(token, request.seller.lower())
        if owner != request.seller.lower():
            return f"Seller does not own token {request.token_id}"

        if not request.has_winner:
            self.transfers.append(request)
            return None

        winner = request.winner.lower()
        if self.enforce_balances:
            if self.balance_of(winner) < request.amount:
                return "Insufficient funds"
            self.balances[winner] -= request.amount

        self.owners[token] = winner
        self.fund(request.seller, request.seller_proceeds)
        if request.platform_address:
            self.fund(request.platform_address, request.platform_fee)
        self.transfers.append(request)
        return None
