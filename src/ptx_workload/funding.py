"""Fund an account pool from one seed account.

`fund` uses logarithmic fan-out: the seed sends the whole fund to
account[0], then in every round each funded account sends half of its
balance to one unfunded account, doubling the funded set. A round is
confirmed before the next begins, and nonces are queried fresh per round.
"""

import asyncio
import logging
import math
from decimal import Decimal

from xrpl.wallet import Wallet

from ptx_workload import errors
from ptx_workload.confirmation import ConfirmationTracker
from ptx_workload.constants import TxState
from ptx_workload.ledger import Ledger
from ptx_workload.models import Account, FundingResult, SignedTransaction, TransferRecord
from ptx_workload.nonces import NonceBook
from ptx_workload.txn_factory import TransactionFactory

log = logging.getLogger("ptx_workload.funding")


def fanout_rounds(n: int) -> int:
    return math.ceil(math.log2(n)) if n > 1 else 0


class FundDistributor:
    def __init__(
        self,
        ledger: Ledger,
        factory: TransactionFactory,
        tracker: ConfirmationTracker,
        nonces: NonceBook | None = None,
    ):
        self.ledger = ledger
        self.factory = factory
        self.tracker = tracker
        self.nonces = nonces or NonceBook(ledger)

    async def _send(self, round_no: int, wallet: Wallet, recipient: str, amount: Decimal) -> SignedTransaction:
        nonce = await self.nonces.alloc(wallet.address)
        txn = self.factory.build(wallet, nonce, recipient, amount)
        res = await self.ledger.submit(txn.blob)
        if not res.accepted:
            raise errors.FundingError(round_no, f"{wallet.address} -> {recipient} not accepted: {res.error}", txn.tx_hash)
        self.nonces.mark_submitted(wallet.address, nonce)
        log.debug("round %s: %s -> %s %s drops (%s)", round_no, wallet.address, recipient, amount, txn.tx_hash)
        return txn

    async def _reserve(self, round_no: int) -> Decimal:
        try:
            return Decimal(await self.ledger.get_reserve())
        except Exception as e:
            raise errors.FundingError(round_no, f"cannot read the account reserve: {e}") from e

    async def _confirm(self, round_no: int, txns: list[SignedTransaction]) -> None:
        report = await self.tracker.track([t.tx_hash for t in txns])
        # Nonces may have moved on the ledger; never carry them across a confirmation boundary
        self.nonces.invalidate()
        for r in report.results.values():
            if r.state != TxState.INCLUDED:
                raise errors.FundingError(round_no, f"transfer {r.state}: {r.error or 'not included'}", r.tx_hash)

    async def _run_round(self, round_no: int, transfers: list[tuple[Wallet, str, Decimal]]) -> list[SignedTransaction]:
        outcomes = await asyncio.gather(
            *(self._send(round_no, w, dst, amt) for w, dst, amt in transfers), return_exceptions=True
        )
        for o in outcomes:
            if isinstance(o, asyncio.CancelledError):
                raise o
        if failed := [o for o in outcomes if isinstance(o, BaseException)]:
            first = failed[0]
            if isinstance(first, errors.FundingError):
                raise first
            raise errors.FundingError(round_no, f"{type(first).__name__}: {first}") from first
        await self._confirm(round_no, outcomes)
        return outcomes

    async def fund(self, seed: Wallet, accounts: list[Account], total_fund: int | Decimal) -> FundingResult:
        """Fan `total_fund` out over `accounts`. Raises FundingError on the first failed transfer."""
        n = len(accounts)
        total_fund = Decimal(total_fund)
        result = FundingResult(accounts=list(accounts), rounds=0, total_fund=total_fund)
        if n == 0:
            return result

        wallets = [self.factory.wallet_for(a) for a in accounts]
        rounds = fanout_rounds(n)
        reserve = await self._reserve(0)
        # Every halving costs the sender a fee; the smallest share must still open an account
        leaf = total_fund / 2**rounds - self.factory.fee * rounds
        if leaf < reserve:
            raise errors.FundingError(
                0, f"{total_fund} drops over {n} accounts leaves {leaf:.0f} per account, below the {reserve} reserve"
            )

        log.info("Funding %s accounts with %s drops in %s fan-out rounds", n, total_fund, rounds)
        self.nonces.invalidate()
        txns = await self._run_round(0, [(seed, accounts[0].address, total_fund)])
        result.tx_hashes += [t.tx_hash for t in txns]
        result.transfers.append(TransferRecord(seed.address, accounts[0].address, total_fund, Decimal(txns[0].fee)))

        funded = 1
        round_no = 0
        while funded < n:
            round_no += 1
            dest = min(funded, n - funded)
            balances = await asyncio.gather(*(self.ledger.get_balance(accounts[i].address) for i in range(dest)))
            plan = [(wallets[i], accounts[funded + i].address, Decimal(balances[i]) // 2) for i in range(dest)]
            for _, dst, amt in plan:
                if amt <= 0:
                    raise errors.FundingError(round_no, f"nothing left to send to {dst}")
            txns = await self._run_round(round_no, plan)
            result.tx_hashes += [t.tx_hash for t in txns]
            result.transfers += [TransferRecord(t.sender, t.recipient, t.amount, Decimal(t.fee)) for t in txns]
            funded += dest
            log.info("Fan-out round %s done: %s/%s accounts funded", round_no, funded, n)

        result.rounds = round_no
        result.accounts = await self.refresh(accounts)
        return result

    async def fund_serially(self, seed: Wallet, accounts: list[Account], amount: int | Decimal) -> FundingResult:
        """Send `amount` from the seed to every account, one nonce after another, then confirm all."""
        amount = Decimal(amount)
        result = FundingResult(accounts=list(accounts), rounds=1, total_fund=amount * len(accounts))
        if not accounts:
            result.rounds = 0
            return result
        if amount < (reserve := await self._reserve(1)):
            raise errors.FundingError(1, f"{amount} drops per account is below the {reserve} reserve")
        self.nonces.invalidate()
        txns = []
        for a in accounts:
            try:
                txns.append(await self._send(1, seed, a.address, amount))
            except errors.FundingError:
                raise
            except Exception as e:
                raise errors.FundingError(1, f"{type(e).__name__}: {e}") from e
        await self._confirm(1, txns)
        result.tx_hashes = [t.tx_hash for t in txns]
        result.transfers = [TransferRecord(t.sender, t.recipient, t.amount, Decimal(t.fee)) for t in txns]
        result.accounts = await self.refresh(accounts)
        log.info("Serially funded %s accounts with %s drops each", len(accounts), amount)
        return result

    async def refresh(self, accounts: list[Account]) -> list[Account]:
        balances = await asyncio.gather(*(self.ledger.get_balance(a.address) for a in accounts))
        return [a.with_balance(b) for a, b in zip(accounts, balances)]
