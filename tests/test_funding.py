from decimal import Decimal

import pytest

from ptx_workload import errors
from ptx_workload.confirmation import ConfirmationTracker
from ptx_workload.funding import FundDistributor, fanout_rounds
from ptx_workload.sim_ledger import InMemoryLedger
from ptx_workload.txn_factory import TransactionFactory


class BrokenLinkLedger(InMemoryLedger):
    """Transport fails once `fail_after` submissions have been accepted."""

    def __init__(self, *args, fail_after: int, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_after = fail_after

    async def submit(self, blob):
        if len(self.submissions) >= self.fail_after:
            raise ConnectionError("connection reset")
        return await super().submit(blob)


def distributor(ledger, factory):
    return FundDistributor(ledger, factory, ConfirmationTracker(ledger, poll_interval=0.01, timeout=1.0))


@pytest.mark.parametrize("n, rounds", [(1, 0), (2, 1), (3, 2), (4, 2), (5, 3), (8, 3), (9, 4)])
def test_fanout_rounds(n, rounds):
    assert fanout_rounds(n) == rounds


@pytest.mark.asyncio
@pytest.mark.parametrize("n", [1, 2, 5, 8])
async def test_fund_conserves_seed_balance(n, keystore, seed_wallet, provisioner):
    ledger = InMemoryLedger({seed_wallet.address: 1_000_000})
    factory = TransactionFactory(keystore, fee=0)
    accounts = provisioner.provision(n)

    result = await distributor(ledger, factory).fund(seed_wallet, accounts, 1_000_000)

    assert result.rounds == fanout_rounds(n)
    assert len(result.accounts) == n
    assert all(a.balance > 0 for a in result.accounts)
    assert sum(a.balance for a in result.accounts) == Decimal(1_000_000)
    assert ledger.balance_of(seed_wallet.address) == 0
    assert len(result.tx_hashes) == n


@pytest.mark.asyncio
async def test_fund_with_fees_accounts_for_every_drop(ledger, factory, seed_wallet, accounts):
    before = ledger.balance_of(seed_wallet.address)

    result = await distributor(ledger, factory).fund(seed_wallet, accounts, 800_000)

    fees = sum(t.fee for t in result.transfers)
    assert fees == 10 * len(accounts)
    after = ledger.balance_of(seed_wallet.address) + sum(a.balance for a in result.accounts)
    assert after + fees == before


@pytest.mark.asyncio
async def test_each_round_is_confirmed_before_the_next(ledger, factory, seed_wallet, accounts):
    await distributor(ledger, factory).fund(seed_wallet, accounts, 800_000)

    # account[0] sends in rounds 1, 2 and 3 with consecutive nonces
    sent = [nonce for sender, nonce, _ in ledger.applied if sender == accounts[0].address]
    assert sent == [1, 2, 3]
    assert ledger.queued == 0


@pytest.mark.asyncio
async def test_transport_failure_aborts_with_round(keystore, seed_wallet, provisioner):
    ledger = BrokenLinkLedger({seed_wallet.address: 1_000_000}, fail_after=2)
    accounts = provisioner.provision(8)

    with pytest.raises(errors.FundingError) as exc:
        await distributor(ledger, TransactionFactory(keystore, fee=0)).fund(seed_wallet, accounts, 1_000_000)

    assert exc.value.round == 2
    # nothing from round 3 was attempted
    assert ledger.balance_of(accounts[4].address) == 0


@pytest.mark.asyncio
async def test_exhausted_balance_aborts(keystore, seed_wallet, provisioner):
    ledger = InMemoryLedger({seed_wallet.address: 1_000})
    with pytest.raises(errors.FundingError) as exc:
        await distributor(ledger, TransactionFactory(keystore, fee=0)).fund(seed_wallet, provisioner.provision(4), 1)
    assert exc.value.round == 1


@pytest.mark.asyncio
async def test_unfunded_seed_transfer_is_rejected(keystore, seed_wallet, provisioner):
    ledger = InMemoryLedger({seed_wallet.address: 10})
    with pytest.raises(errors.FundingError) as exc:
        await distributor(ledger, TransactionFactory(keystore, fee=0)).fund(seed_wallet, provisioner.provision(2), 500)
    assert exc.value.round == 0
    assert exc.value.tx_hash is not None


@pytest.mark.asyncio
async def test_fund_serially(ledger, factory, seed_wallet, accounts):
    result = await distributor(ledger, factory).fund_serially(seed_wallet, accounts, 5_000)

    assert [a.balance for a in result.accounts] == [Decimal(5_000)] * len(accounts)
    seed_nonces = [nonce for sender, nonce, _ in ledger.applied if sender == seed_wallet.address]
    assert seed_nonces == list(range(1, len(accounts) + 1))


@pytest.mark.asyncio
async def test_fund_serially_wraps_transport_failure(keystore, seed_wallet, provisioner):
    ledger = BrokenLinkLedger({seed_wallet.address: 1_000_000}, fail_after=2)

    with pytest.raises(errors.FundingError) as exc:
        await distributor(ledger, TransactionFactory(keystore, fee=0)).fund_serially(
            seed_wallet, provisioner.provision(4), 1_000)

    assert exc.value.round == 1
    assert isinstance(exc.value.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_share_below_reserve_fails_before_any_transfer(factory, seed_wallet, provisioner):
    ledger = InMemoryLedger({seed_wallet.address: 10**9}, reserve=1_000_000)

    with pytest.raises(errors.FundingError) as exc:
        await distributor(ledger, factory).fund(seed_wallet, provisioner.provision(8), 4_000_000)

    assert exc.value.round == 0
    assert "reserve" in str(exc.value)
    assert ledger.submissions == []


@pytest.mark.asyncio
async def test_fan_out_respects_reserve(factory, seed_wallet, provisioner):
    ledger = InMemoryLedger({seed_wallet.address: 10**9}, reserve=1_000_000)

    result = await distributor(ledger, factory).fund(seed_wallet, provisioner.provision(8), 80_000_000)

    assert all(a.balance >= 1_000_000 for a in result.accounts)
    assert ledger.balance_of(seed_wallet.address) >= 1_000_000


@pytest.mark.asyncio
async def test_fund_serially_below_reserve(factory, seed_wallet, provisioner):
    ledger = InMemoryLedger({seed_wallet.address: 10**9}, reserve=1_000_000)

    with pytest.raises(errors.FundingError) as exc:
        await distributor(ledger, factory).fund_serially(seed_wallet, provisioner.provision(2), 999_999)

    assert exc.value.round == 1
    assert ledger.submissions == []
