import asyncio
import math

import pytest

from ptx_workload.constants import DispatchState
from ptx_workload.dispatch import DispatchPool, assign
from ptx_workload.ledger import SubmitResult


class RecordingChannel:
    """Submission channel that records what it was handed, in order."""

    def __init__(self, name, log, *, refuse=(), broken=(), delay=0.0):
        self.name = name
        self.log = log
        self.refuse = set(refuse)
        self.broken = set(broken)
        self.delay = delay

    async def submit(self, blob):
        await asyncio.sleep(self.delay)
        self.log.append((self.name, blob))
        if blob in self.broken:
            raise ConnectionError("reset by peer")
        if blob in self.refuse:
            return SubmitResult(accepted=False, error="tefPAST_SEQ", engine_result="tefPAST_SEQ")
        return SubmitResult(accepted=True, engine_result="tesSUCCESS")


def blobs(m):
    return [f"B{i:04d}" for i in range(m)]


@pytest.mark.parametrize("m, k", [(0, 3), (1, 4), (7, 3), (12, 4), (100, 16), (5, 8)])
def test_assign_caps_each_channel(m, k):
    lanes = assign(blobs(m), k)

    assert len(lanes) == k
    assert sum(len(lane) for lane in lanes) == m
    assert max(len(lane) for lane in lanes) <= math.ceil(m / k)
    for c, lane in enumerate(lanes):
        assert all(t.channel == c for t in lane)
        assert [t.index for t in lane] == sorted(t.index for t in lane)


def test_assign_needs_a_channel():
    with pytest.raises(ValueError):
        assign(blobs(3), 0)


@pytest.mark.asyncio
async def test_every_item_submitted_once_in_channel_order():
    log = []
    pool = DispatchPool([RecordingChannel(c, log, delay=0.001) for c in range(3)])

    report = await pool.dispatch(blobs(10))

    assert sorted(b for _, b in log) == blobs(10)
    for c in range(3):
        assert [b for name, b in log if name == c] == blobs(10)[c::3]
    assert report.assignments == [4, 3, 3]
    assert len(report.submitted) == 10
    assert report.failures == []
    assert not report.cancelled


@pytest.mark.asyncio
async def test_failures_are_recorded_per_item():
    log = []
    chans = [RecordingChannel(0, log, refuse={"B0002"}), RecordingChannel(1, log, broken={"B0001"})]

    report = await DispatchPool(chans).dispatch(blobs(4))

    states = [o.state for o in report.outcomes]
    assert states == [DispatchState.SUBMITTED, DispatchState.FAILED, DispatchState.REJECTED, DispatchState.SUBMITTED]
    assert "item 1" in report.outcomes[1].error
    assert report.outcomes[2].engine_result == "tefPAST_SEQ"
    # a broken item does not stop its channel
    assert (1, "B0003") in log


@pytest.mark.asyncio
async def test_stop_marks_unissued_items_not_attempted():
    stop = asyncio.Event()
    log = []

    class StoppingChannel(RecordingChannel):
        async def submit(self, blob):
            res = await super().submit(blob)
            if len(self.log) == 2:
                stop.set()
            return res

    report = await DispatchPool([StoppingChannel(0, log)], stop=stop).dispatch(blobs(5))

    assert [o.state for o in report.outcomes] == [DispatchState.SUBMITTED] * 2 + [DispatchState.NOT_ATTEMPTED] * 3
    assert report.cancelled
    assert len(log) == 2


@pytest.mark.asyncio
async def test_more_channels_than_items():
    log = []
    report = await DispatchPool([RecordingChannel(c, log) for c in range(8)]).dispatch(blobs(3))
    assert report.assignments == [1, 1, 1, 0, 0, 0, 0, 0]
    assert len(report.submitted) == 3
