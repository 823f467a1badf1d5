"""Produce signed batches off the submission path.

Signing is CPU bound, so it runs in a thread pool while the consumer
submits earlier batches. Batches travel over a bounded queue that the
producer closes with a sentinel once it has produced `batch_count` batches
or the stop event is set.
"""

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import AsyncIterator

import ptx_workload.constants as C
from ptx_workload import errors
from ptx_workload.models import Account, Batch, SignedTransaction
from ptx_workload.nonces import NonceBook
from ptx_workload.txn_factory import TransactionFactory

log = logging.getLogger("ptx_workload.generation")

PATTERNS = ("pairwise", "ring")

_CLOSED = object()


@dataclass(frozen=True, slots=True)
class _Failed:
    error: BaseException


def pair_accounts(accounts: list[Account], pattern: str = "pairwise") -> list[tuple[Account, Account]]:
    """Sender/recipient pairs; every sender appears once."""
    n = len(accounts)
    match pattern:
        case "pairwise":
            return [(accounts[2 * j], accounts[2 * j + 1]) for j in range(n // 2)]
        case "ring":
            if n < 3:
                raise ValueError(f"ring pattern needs at least 3 accounts, got {n}")
            return [(accounts[i], accounts[(i + 2) % n]) for i in range(n)]
        case _:
            raise ValueError(f"unknown pairing pattern {pattern!r}, expected one of {PATTERNS}")


class GenerationPipeline:
    def __init__(
        self,
        factory: TransactionFactory,
        nonces: NonceBook,
        accounts: list[Account],
        *,
        batch_size: int,
        batch_count: int = 1,
        amount: int = C.DEFAULT_TRANSFER_DROPS,
        payload: bytes | None = None,
        pattern: str = "pairwise",
        queue_depth: int = C.QUEUE_DEPTH,
        workers: int | None = None,
        stop: asyncio.Event | None = None,
    ):
        self.factory = factory
        self.nonces = nonces
        self.pairs = pair_accounts(accounts, pattern)
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if batch_size > len(self.pairs):
            raise ValueError(
                f"batch_size {batch_size} exceeds the {len(self.pairs)} distinct senders of the {pattern} pattern"
            )
        self.batch_size = batch_size
        self.batch_count = batch_count
        self.amount = amount
        self.payload = payload
        self.workers = workers or os.cpu_count() or 1
        self.stop = stop or asyncio.Event()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_depth)
        self.produced: list[SignedTransaction] = []

    def pairs_for(self, number: int) -> list[tuple[Account, Account]]:
        """Batch `number` takes the next `batch_size` pairs, wrapping around the pair list."""
        start = (number * self.batch_size) % len(self.pairs)
        return [self.pairs[(start + i) % len(self.pairs)] for i in range(self.batch_size)]

    async def _sign_one(self, pool: ThreadPoolExecutor, sender: Account, recipient: Account) -> SignedTransaction:
        loop = asyncio.get_running_loop()
        nonce = await self.nonces.alloc(sender.address)
        try:
            return await loop.run_in_executor(
                pool, self.factory.build_for, sender, nonce, recipient.address, self.amount, self.payload
            )
        except errors.WorkloadError:
            await self.nonces.release(sender.address, nonce)
            raise

    async def build_batch(self, number: int, pool: ThreadPoolExecutor) -> Batch:
        # One txn per sender, so the nonces inside a batch never depend on each other
        txns = await asyncio.gather(*(self._sign_one(pool, s, r) for s, r in self.pairs_for(number)))
        batch = Batch(number=number, transactions=tuple(txns))
        self.produced.extend(txns)
        log.debug("Built batch %s (%s txns)", number, len(batch))
        return batch

    async def _produce(self) -> None:
        try:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="ptx-sign") as pool:
                for number in range(self.batch_count):
                    if self.stop.is_set():
                        log.info("Generation stopped after %s/%s batches", number, self.batch_count)
                        break
                    await self._queue.put(await self.build_batch(number, pool))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Generation failed: %s", e)
            await self._queue.put(_Failed(e))
            return
        await self._queue.put(_CLOSED)

    async def batches(self) -> AsyncIterator[Batch]:
        """Yield batches as they are produced; a producer error is raised here."""
        producer = asyncio.create_task(self._produce(), name="generation-producer")
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSED:
                    break
                if isinstance(item, _Failed):
                    raise item.error
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass

    async def collect(self) -> list[Batch]:
        return [b async for b in self.batches()]
