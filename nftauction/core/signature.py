"""
Signature Verifier - authenticates off-chain bids.

A bid is authentic iff the address recovered from its signature over
the typed-data digest equals the claimed bidder (case-insensitive).
Any recovery failure counts as an invalid signature; nothing propagates.
"""

import asyncio

from nftauction.crypto import TypedDataDomain, recover_address
from nftauction.core.models import Bid
from nftauction.utils.logger import get_logger

logger = get_logger("signature")


class SignatureVerifier:
    """Verifies bid signatures under one fixed signing domain."""

    def __init__(self, domain: TypedDataDomain):
        self.domain = domain

    def recover_signer(self, bid: Bid):
        """Address that signed the bid, or None."""
        try:
            return recover_address(bid.digest(self.domain), bid.signature)
        except Exception as e:
            logger.debug(f"Signature recovery failed for {bid!r}: {e}")
            return None

    def verify(self, bid: Bid) -> bool:
        """True iff the bid was signed by bid.bidder under this domain."""
        recovered = self.recover_signer(bid)
        if recovered is None:
            return False
        return recovered.lower() == bid.bidder.lower()

    async def verify_async(self, bid: Bid) -> bool:
        """verify() on a worker thread so the event loop keeps running."""
        return await asyncio.to_thread(self.verify, bid)
