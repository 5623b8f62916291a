import asyncio
import logging
import random
import secrets
from typing import Protocol

from errors import LedgerSubmissionError

logger = logging.getLogger(__name__)

class Ledger(Protocol):
    async def submit(self, content_hash: str) -> str:
        """Anchor ``content_hash`` and return an opaque reference."""
        ...

class SimulatedLedger:
    """Stand-in for a chain submission: waits ``delay`` seconds, returns a
    random 0x-prefixed 32-byte transaction hash.
    """

    def __init__(self, delay: float = 0.8, failure_rate: float = 0.0):
        self.delay = delay
        self.failure_rate = failure_rate

    async def submit(self, content_hash: str) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failure_rate and random.random() < self.failure_rate:
            raise LedgerSubmissionError(f"simulated ledger rejected {content_hash[:12]}")
        tx = "0x" + secrets.token_hex(32)
        logger.debug("anchored %s as %s", content_hash, tx)
        return tx
