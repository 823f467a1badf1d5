import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from ptx_workload.ledger import Ledger

log = logging.getLogger("ptx_workload.nonces")


@dataclass
class NonceRecord:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    next_nonce: int | None = None


class NonceBook:
    """Per-sender nonce allocation.

    The ledger is authoritative: the first allocation for an address after
    `invalidate()` queries it, later ones count up locally under the
    address lock.
    """

    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self._records: dict[str, NonceRecord] = {}
        self.history: dict[str, list[int]] = defaultdict(list)
        self.submitted: dict[str, list[int]] = defaultdict(list)

    def _record_for(self, address: str) -> NonceRecord:
        if (rec := self._records.get(address)) is None:
            rec = self._records[address] = NonceRecord()
        return rec

    async def alloc(self, address: str) -> int:
        rec = self._record_for(address)
        async with rec.lock:
            if rec.next_nonce is None:
                rec.next_nonce = await self.ledger.get_nonce(address)
            n = rec.next_nonce
            rec.next_nonce += 1
            self.history[address].append(n)
            return n

    async def release(self, address: str, nonce: int) -> None:
        """Give back a nonce whose transaction was never built. Only the latest one can go back."""
        rec = self._record_for(address)
        async with rec.lock:
            if rec.next_nonce == nonce + 1:
                rec.next_nonce = nonce
                if self.history[address] and self.history[address][-1] == nonce:
                    self.history[address].pop()
            else:
                log.warning("Cannot release nonce %s for %s, next is %s", nonce, address, rec.next_nonce)

    def invalidate(self) -> None:
        """Forget every cached nonce; the next allocation per address asks the ledger again."""
        self._records.clear()

    def mark_submitted(self, address: str, nonce: int) -> None:
        """Record a nonce the ledger accepted."""
        self.submitted[address].append(nonce)

    def audit(self) -> dict[str, list[int]]:
        """Senders whose submitted nonces have a gap or a repeat. Empty means clean.

        Allocations are not audited: an unsubmitted nonce is handed out again
        after `invalidate()`.
        """
        bad = {}
        for address, seq in self.submitted.items():
            if any(b != a + 1 for a, b in zip(seq, seq[1:])):
                bad[address] = list(seq)
        return bad
