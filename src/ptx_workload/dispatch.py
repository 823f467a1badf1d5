import asyncio
import logging
import time

from ptx_workload import errors
from ptx_workload.constants import DispatchState
from ptx_workload.ledger import Ledger
from ptx_workload.models import DispatchOutcome, DispatchReport, DispatchTicket

log = logging.getLogger("ptx_workload.dispatch")


def assign(blobs: list[str], k: int) -> list[list[DispatchTicket]]:
    """Round-robin item i to channel i % k; no channel gets more than ceil(m/k) items."""
    if k < 1:
        raise ValueError(f"need at least one channel, got {k}")
    lanes: list[list[DispatchTicket]] = [[] for _ in range(k)]
    for i, blob in enumerate(blobs):
        lanes[i % k].append(DispatchTicket(index=i, blob=blob, channel=i % k))
    return lanes


class DispatchPool:
    """Submit a batch across k channels concurrently and wait for all of them.

    Each channel submits its items one after another in batch order. Per-item
    failures are recorded in the report, never raised. Once `stop` is set no
    new submission starts; items never issued are NOT_ATTEMPTED.
    """

    def __init__(self, channels: list[Ledger], *, stop: asyncio.Event | None = None):
        if not channels:
            raise ValueError("DispatchPool needs at least one channel")
        self.channels = channels
        self.stop = stop or asyncio.Event()

    @property
    def k(self) -> int:
        return len(self.channels)

    async def _run_channel(self, c: int, tickets: list[DispatchTicket], outcomes: list) -> None:
        channel = self.channels[c]
        for t in tickets:
            if self.stop.is_set():
                outcomes[t.index] = DispatchOutcome(t.index, c, DispatchState.NOT_ATTEMPTED)
                continue
            try:
                res = await channel.submit(t.blob)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                err = errors.SubmissionError(t.index, f"{type(e).__name__}: {e}")
                log.error("channel %s: %s", c, err)
                outcomes[t.index] = DispatchOutcome(t.index, c, DispatchState.FAILED, error=str(err))
                continue
            if res.accepted:
                outcomes[t.index] = DispatchOutcome(t.index, c, DispatchState.SUBMITTED, engine_result=res.engine_result)
            else:
                log.warning("channel %s: item %s rejected on submit: %s", c, t.index, res.error)
                outcomes[t.index] = DispatchOutcome(
                    t.index, c, DispatchState.REJECTED, error=res.error, engine_result=res.engine_result
                )

    async def dispatch(self, blobs: list[str]) -> DispatchReport:
        lanes = assign(blobs, self.k)
        outcomes: list[DispatchOutcome | None] = [None] * len(blobs)

        start = time.perf_counter()
        async with asyncio.TaskGroup() as tg:
            for c, tickets in enumerate(lanes):
                if tickets:
                    tg.create_task(self._run_channel(c, tickets, outcomes), name=f"dispatch-channel-{c}")
        elapsed = time.perf_counter() - start

        report = DispatchReport(
            outcomes=outcomes,
            assignments=[len(t) for t in lanes],
            elapsed=elapsed,
            cancelled=self.stop.is_set(),
        )
        log.info(
            "Dispatched %s txns over %s channels in %.3fs (%s submitted, %s not submitted)",
            len(blobs), self.k, elapsed, len(report.submitted), len(report.failures),
        )
        return report
