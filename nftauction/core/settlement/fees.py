"""
Fee split for settled auctions.

The winning amount is divided between the seller and the platform:
    platform_fee    = amount * platform_fee_bps // 10000
    seller_proceeds = amount - platform_fee
"""

from dataclasses import dataclass

from nftauction.utils.logger import get_logger

logger = get_logger("settlement.fees")


BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class FeeSplit:
    """Distribution of a winning amount."""
    amount: int
    seller_proceeds: int
    platform_fee: int


class FeeSchedule:
    """
    Platform fee in basis points.

    Tracks totals across settlements for reporting.
    """

    def __init__(self, platform_fee_bps: int = 250):
        if not 0 <= platform_fee_bps <= BPS_DENOMINATOR:
            raise ValueError(f"platform_fee_bps must be within [0, {BPS_DENOMINATOR}]")
        self.platform_fee_bps = platform_fee_bps

        self.total_volume: int = 0
        self.total_platform_fees: int = 0

    def split(self, amount: int) -> FeeSplit:
        """
        Split a winning amount.

        Args:
            amount: Winning amount in the smallest unit (0 for no winner)

        Returns:
            FeeSplit whose parts sum to amount
        """
        if amount < 0:
            raise ValueError("amount cannot be negative")
        platform_fee = amount * self.platform_fee_bps // BPS_DENOMINATOR
        return FeeSplit(amount=amount, seller_proceeds=amount - platform_fee, platform_fee=platform_fee)

    def record(self, split: FeeSplit) -> None:
        """Account a split that was actually settled."""
        self.total_volume += split.amount
        self.total_platform_fees += split.platform_fee
        logger.debug(f"Fee collected: {split.platform_fee} of {split.amount}")

    def stats(self) -> dict:
        return {
            "platform_fee_bps": self.platform_fee_bps,
            "total_volume": self.total_volume,
            "total_platform_fees": self.total_platform_fees,
        }
