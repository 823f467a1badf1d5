import asyncio
import logging
import time

from ptx_workload import errors
import ptx_workload.constants as C
from ptx_workload.constants import TxState
from ptx_workload.ledger import Ledger
from ptx_workload.models import ConfirmationReport, ConfirmationResult

log = logging.getLogger("ptx_workload.confirm")


class ConfirmationTracker:
    """Poll inclusion for a set of hashes until each one is terminal.

    Per hash: PENDING -> INCLUDED | REJECTED | TIMED_OUT. Only hashes passed
    to `track` are ever reported. Setting `stop` aborts polling; hashes not
    yet resolved then stay PENDING and the report is flagged `cancelled`.
    """

    def __init__(
        self,
        ledger: Ledger,
        *,
        poll_interval: float = C.POLL_INTERVAL,
        timeout: float = C.CONFIRM_TIMEOUT,
        stop: asyncio.Event | None = None,
        max_inflight: int = 64,
    ):
        self.ledger = ledger
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.stop = stop or asyncio.Event()
        self._sem = asyncio.Semaphore(max_inflight)

    @classmethod
    def from_config(cls, config: dict, ledger: Ledger, stop: asyncio.Event | None = None) -> "ConfirmationTracker":
        c = config["confirmation"]
        return cls(ledger, poll_interval=c["poll_interval"], timeout=c["timeout"], stop=stop)

    async def _query(self, tx_hash: str):
        async with self._sem:
            return await self.ledger.is_included(tx_hash)

    async def _poll_once(self, results: dict[str, ConfirmationResult]) -> None:
        pending = [h for h, r in results.items() if r.state == TxState.PENDING]
        statuses = await asyncio.gather(*(self._query(h) for h in pending), return_exceptions=True)
        for tx_hash, status in zip(pending, statuses):
            if isinstance(status, BaseException):
                # Transient query failure; the hash stays pending until the deadline
                log.debug("inclusion query failed for %s: %s", tx_hash, status)
                continue
            if status.included:
                results[tx_hash] = ConfirmationResult(tx_hash, TxState.INCLUDED)
            elif status.permanently_rejected:
                results[tx_hash] = ConfirmationResult(tx_hash, TxState.REJECTED, status.detail)
                log.warning("REJECTED: %s (%s)", tx_hash, status.detail)

    async def _sleep(self, seconds: float) -> bool:
        """Wait up to `seconds`; True if stop was signalled."""
        try:
            await asyncio.wait_for(self.stop.wait(), timeout=max(seconds, 0))
            return True
        except TimeoutError:
            return False

    async def track(self, hashes: list[str], *, fail_fast: bool = False) -> ConfirmationReport:
        """Wait for every hash to become terminal.

        With `fail_fast`, the first rejection or timeout raises
        `errors.RejectionError` / `errors.TimeoutError` carrying the partial
        report as `.report`. Otherwise the full aggregate is returned.
        """
        start = time.perf_counter()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        results = {h: ConfirmationResult(h, TxState.PENDING) for h in hashes}
        report = ConfirmationReport(results=results)

        while True:
            if self.stop.is_set():
                report.cancelled = True
                log.warning("Confirmation cancelled with %s unresolved", len(report.by_state(TxState.PENDING)))
                break

            await self._poll_once(results)

            if fail_fast and (rejected := report.by_state(TxState.REJECTED)):
                report.elapsed = time.perf_counter() - start
                err = errors.RejectionError(rejected[0].tx_hash, rejected[0].error)
                err.report = report
                raise err

            if not report.by_state(TxState.PENDING):
                break

            remaining = deadline - loop.time()
            if remaining <= 0:
                for r in report.by_state(TxState.PENDING):
                    results[r.tx_hash] = ConfirmationResult(r.tx_hash, TxState.TIMED_OUT, "confirmation timeout")
                log.warning("Confirmation timeout after %.1fs: %s", self.timeout, report.counts())
                if fail_fast:
                    report.elapsed = time.perf_counter() - start
                    err = errors.TimeoutError(report.by_state(TxState.TIMED_OUT)[0].tx_hash)
                    err.report = report
                    raise err
                break

            if await self._sleep(min(self.poll_interval, remaining)):
                continue

        report.elapsed = time.perf_counter() - start
        log.debug("Confirmation of %s hashes finished in %.2fs: %s", len(results), report.elapsed, report.counts())
        return report
