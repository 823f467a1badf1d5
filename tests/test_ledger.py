from decimal import Decimal

import pytest
from xrpl.core.binarycodec import decode, encode

from ptx_workload.ledger import XrplLedger, classify_engine_result
from ptx_workload.sim_ledger import InMemoryLedger


class FakeResponse:
    def __init__(self, result, ok=True):
        self.result = result
        self.ok = ok

    def is_successful(self):
        return self.ok


class FakeClient:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def request(self, req):
        self.requests.append(req)
        return self.responses.pop(0)


@pytest.mark.parametrize("er, accepted", [
    ("tesSUCCESS", True),
    ("terQUEUED", True),
    ("telINSUF_FEE_P", True),
    ("tefPAST_SEQ", False),
    ("temMALFORMED", False),
    (None, False),
])
def test_classify_engine_result(er, accepted):
    assert classify_engine_result(er).accepted is accepted


def test_channel_pool_spreads_over_endpoints():
    pool = XrplLedger("http://a:5005").channel_pool(5, ["http://a:5005", "http://b:5005"])
    assert [c.url for c in pool] == ["http://a:5005", "http://b:5005"] * 2 + ["http://a:5005"]
    assert len({id(c.client) for c in pool}) == 5


@pytest.mark.asyncio
async def test_xrpl_inclusion_states():
    ledger = XrplLedger("http://a:5005")
    ledger.client = FakeClient(
        FakeResponse({"error": "txnNotFound"}, ok=False),
        FakeResponse({"validated": False}),
        FakeResponse({"validated": True, "meta": {"TransactionResult": "tesSUCCESS"}}),
        FakeResponse({"validated": True, "meta": {"TransactionResult": "tecUNFUNDED_PAYMENT"}}),
    )
    states = [await ledger.is_included("H") for _ in range(4)]

    assert [(s.included, s.permanently_rejected) for s in states] == [
        (False, False), (False, False), (True, False), (False, True)]
    assert states[3].detail == "tecUNFUNDED_PAYMENT"


@pytest.mark.asyncio
async def test_xrpl_nonce_and_balance():
    ledger = XrplLedger("http://a:5005")
    ledger.client = FakeClient(
        FakeResponse({"account_data": {"Sequence": 12, "Balance": "5000"}}),
        FakeResponse({"account_data": {"Sequence": 12, "Balance": "5000"}}),
        FakeResponse({"error": "actNotFound"}, ok=False),
    )
    assert await ledger.get_nonce("rX") == 12
    assert await ledger.get_balance("rX") == Decimal(5000)
    with pytest.raises(LookupError):
        await ledger.get_nonce("rY")


@pytest.mark.asyncio
async def test_sim_rejects_bad_submissions(factory, seed_wallet, accounts):
    ledger = InMemoryLedger({seed_wallet.address: 1_000_000})
    t1 = factory.build(seed_wallet, 1, accounts[0].address, 10)

    assert (await ledger.submit(t1.blob)).accepted
    assert (await ledger.submit(t1.blob)).engine_result == "tefALREADY"
    assert (await ledger.submit("00")).engine_result == "temMALFORMED"

    tx = decode(factory.build(seed_wallet, 2, accounts[0].address, 10).blob)
    tx["Amount"] = "999"
    assert (await ledger.submit(encode(tx))).engine_result == "temBAD_SIGNATURE"

    stranger = factory.build_for(accounts[1], 1, accounts[0].address, 1)
    assert (await ledger.submit(stranger.blob)).engine_result == "terNO_ACCOUNT"

    ledger.close_ledger()
    stale = factory.build(seed_wallet, 1, accounts[2].address, 10)
    assert (await ledger.submit(stale.blob)).engine_result == "tefPAST_SEQ"


@pytest.mark.asyncio
async def test_sim_gap_blocks_later_nonces(factory, seed_wallet, accounts):
    ledger = InMemoryLedger({seed_wallet.address: 1_000_000}, auto_close=False)
    t2 = factory.build(seed_wallet, 2, accounts[0].address, 10)
    await ledger.submit(t2.blob)

    assert ledger.close_ledger() == 0
    assert not (await ledger.is_included(t2.tx_hash)).included

    t1 = factory.build(seed_wallet, 1, accounts[0].address, 10)
    await ledger.submit(t1.blob)
    assert ledger.close_ledger() == 2
    assert [n for _, n, _ in ledger.applied] == [1, 2]
    assert ledger.balance_of(accounts[0].address) == 20


@pytest.mark.asyncio
async def test_sim_unfunded_payment_is_permanently_rejected(factory, seed_wallet, accounts):
    ledger = InMemoryLedger({seed_wallet.address: 5})
    t = factory.build(seed_wallet, 1, accounts[0].address, 10)
    await ledger.submit(t.blob)

    status = await ledger.is_included(t.tx_hash)
    assert status.permanently_rejected
    assert status.detail == "tecUNFUNDED_PAYMENT"
    assert await ledger.get_nonce(seed_wallet.address) == 2


@pytest.mark.asyncio
async def test_sim_fault_hooks(factory, seed_wallet, accounts):
    ledger = InMemoryLedger({seed_wallet.address: 1_000_000})
    t1 = factory.build(seed_wallet, 1, accounts[0].address, 10)
    t2 = factory.build(seed_wallet, 2, accounts[0].address, 10)
    ledger.drop.add(t1.tx_hash)
    ledger.fail_submissions.add(t2.tx_hash)

    assert (await ledger.submit(t1.blob)).accepted
    with pytest.raises(ConnectionError):
        await ledger.submit(t2.blob)

    status = await ledger.is_included(t1.tx_hash)
    assert not status.included and not status.permanently_rejected
    assert ledger.queued == 1


@pytest.mark.asyncio
async def test_xrpl_reserve_from_server_state():
    ledger = XrplLedger("http://a:5005")
    ledger.client = FakeClient(
        FakeResponse({"state": {"validated_ledger": {"seq": 7, "reserve_base": 1000000, "reserve_inc": 200000}}}),
        FakeResponse({"state": {"server_state": "connected"}}),
    )
    assert await ledger.get_reserve() == Decimal(1_000_000)
    with pytest.raises(LookupError):
        await ledger.get_reserve()
    assert type(ledger.client.requests[0]).__name__ == "ServerState"


@pytest.mark.asyncio
async def test_sim_enforces_account_reserve(factory, seed_wallet, accounts):
    ledger = InMemoryLedger({seed_wallet.address: 5_000_000}, reserve=1_000_000)
    too_small = factory.build(seed_wallet, 1, accounts[0].address, 999_999)
    drains = factory.build(seed_wallet, 2, accounts[1].address, 4_000_001)
    fits = factory.build(seed_wallet, 3, accounts[1].address, 3_999_990)
    for t in (too_small, drains, fits):
        assert (await ledger.submit(t.blob)).accepted

    assert (await ledger.is_included(too_small.tx_hash)).detail == "tecNO_DST_INSUF_XRP"
    assert (await ledger.is_included(drains.tx_hash)).detail == "tecUNFUNDED_PAYMENT"
    assert (await ledger.is_included(fits.tx_hash)).included
    assert ledger.balance_of(seed_wallet.address) == 1_000_000
    assert await ledger.get_reserve() == 1_000_000
