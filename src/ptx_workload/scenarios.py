"""Scenarios: what the CLI and the HTTP app drive.

A `Harness` owns no module-level state; everything it needs arrives in a
`HarnessContext`, so several harnesses can run side by side (e.g. in tests).
"""

import asyncio
import logging
import time
from collections import defaultdict
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path

from xrpl import CryptoAlgorithm
from xrpl.wallet import Wallet

from ptx_workload import errors, snapshots
from ptx_workload.accounts import AccountProvisioner, FileKeystore, Keystore
from ptx_workload.config import endpoint_urls
from ptx_workload.confirmation import ConfirmationTracker
from ptx_workload.constants import DispatchState, TxState
from ptx_workload.dispatch import DispatchPool
from ptx_workload.funding import FundDistributor
from ptx_workload.generation import GenerationPipeline
from ptx_workload.ledger import Ledger, XrplLedger
from ptx_workload.models import (
    Account,
    ConfirmationReport,
    FundingResult,
    SignedTransaction,
    ThroughputReport,
    TransferRecord,
    VerificationReport,
)
from ptx_workload.nonces import NonceBook
from ptx_workload.sim_ledger import BASE_RESERVE_DROPS, GENESIS_DROPS, InMemoryLedger
from ptx_workload.txn_factory import TransactionFactory
from ptx_workload.verify import ConsistencyVerifier

log = logging.getLogger("ptx_workload.scenarios")


@dataclass
class HarnessContext:
    config: dict
    ledger: Ledger
    keystore: Keystore
    factory: TransactionFactory
    stop: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def from_config(
        cls,
        config: dict,
        *,
        simulated: bool = False,
        ledger: Ledger | None = None,
        keystore: Keystore | None = None,
    ) -> "HarnessContext":
        a = config["accounts"]
        keystore = keystore or FileKeystore(a["keystore_dir"], a["algorithm"])
        if ledger is None:
            if simulated:
                ledger = InMemoryLedger({config["funding_account"]["address"]: GENESIS_DROPS},
                                        reserve=BASE_RESERVE_DROPS)
            else:
                ledger = XrplLedger.from_config(config)
        return cls(config=config, ledger=ledger, keystore=keystore,
                   factory=TransactionFactory.from_config(config, keystore))

    def channels(self, k: int | None = None) -> list[Ledger]:
        k = k or self.config["dispatch"]["channels"]
        return self.ledger.channel_pool(k, endpoint_urls(self.config))

    def snapshot_path(self, name: str) -> Path:
        s = self.config["snapshots"]
        return Path(s["directory"]) / s.get(name, name)


def wave_order(txns: list[SignedTransaction]) -> list[list[SignedTransaction]]:
    """Split txns into waves with at most one txn per sender, in nonce order per sender."""
    by_sender: dict[str, list[SignedTransaction]] = defaultdict(list)
    for t in txns:
        by_sender[t.sender].append(t)
    waves: list[list[SignedTransaction]] = []
    for seq in by_sender.values():
        for w, t in enumerate(sorted(seq, key=lambda t: t.nonce)):
            if w == len(waves):
                waves.append([])
            waves[w].append(t)
    return waves


def _failure(t: SignedTransaction, state: str, error: str | None) -> dict:
    return {"tx_hash": t.tx_hash, "sender": t.sender, "nonce": t.nonce, "state": str(state), "error": error}


class Harness:
    def __init__(self, ctx: HarnessContext):
        self.ctx = ctx
        self.config = ctx.config
        self.nonces = NonceBook(ctx.ledger)
        self.provisioner = AccountProvisioner(ctx.keystore, passphrase_prefix=self.config["accounts"]["passphrase_prefix"])
        self.verifier = ConsistencyVerifier()
        self.accounts: list[Account] = []
        self.transfers: list[TransferRecord] = []
        self.last_funding: FundingResult | None = None
        self.last_throughput: ThroughputReport | None = None
        self.last_verification: VerificationReport | None = None

    def tracker(self) -> ConfirmationTracker:
        return ConfirmationTracker.from_config(self.config, self.ctx.ledger, self.ctx.stop)

    def seed_wallet(self, seed: Wallet | str | None = None) -> Wallet:
        if isinstance(seed, Wallet):
            return seed
        f = self.config["funding_account"]
        return Wallet.from_seed(seed or f["seed"], algorithm=CryptoAlgorithm(f["algorithm"]))

    def load_accounts(self) -> list[Account]:
        """Accounts from the last funding run; falls back to the accounts snapshot."""
        if not self.accounts:
            self.accounts = self.provisioner.load(self.ctx.snapshot_path("accounts_file"))
        return self.accounts

    async def _sign(self, wallet: Wallet, recipient: str, amount) -> SignedTransaction:
        nonce = await self.nonces.alloc(wallet.address)
        try:
            return self.ctx.factory.build(wallet, nonce, recipient, amount)
        except errors.EncodingError:
            await self.nonces.release(wallet.address, nonce)
            raise

    async def _dispatch(
        self, pool: DispatchPool, txns: list[SignedTransaction] | tuple[SignedTransaction, ...], blocked: set[str]
    ) -> tuple[float, list[SignedTransaction], list[dict]]:
        """Submit txns whose sender has no unsubmitted earlier nonce.

        A sender whose txn does not go in lands in `blocked`; its later txns
        could never apply, so they are failed here instead of submitted.
        """
        ready = [t for t in txns if t.sender not in blocked]
        failures = [_failure(t, DispatchState.FAILED, "blocked by nonce gap") for t in txns if t.sender in blocked]
        if not ready:
            return 0.0, [], failures
        report = await pool.dispatch([t.blob for t in ready])
        accepted = []
        for t, o in zip(ready, report.outcomes):
            if o.submitted:
                accepted.append(t)
                self.nonces.mark_submitted(t.sender, t.nonce)
            else:
                blocked.add(t.sender)
                failures.append(_failure(t, o.state, o.error))
        return report.elapsed, accepted, failures

    async def _submit_and_confirm(
        self, txns: list[SignedTransaction], concurrency: int | None
    ) -> tuple[float, list[dict], ConfirmationReport]:
        """Dispatch txns wave by wave, then confirm every accepted one. Returns (elapsed, failures, report)."""
        pool = DispatchPool(self.ctx.channels(concurrency), stop=self.ctx.stop)
        failures: list[dict] = []
        accepted: list[str] = []
        blocked: set[str] = set()
        elapsed = 0.0
        for wave in wave_order(txns):
            spent, ok, failed = await self._dispatch(pool, wave, blocked)
            elapsed += spent
            accepted += [t.tx_hash for t in ok]
            failures += failed
        confirmation = await self.tracker().track(accepted)
        self.nonces.invalidate()
        by_hash = {t.tx_hash: t for t in txns}
        for r in confirmation.results.values():
            if not r.included:
                failures.append(_failure(by_hash[r.tx_hash], r.state, r.error))
        return elapsed, failures, confirmation

    async def run_funding_scenario(
        self,
        seed: Wallet | str | None = None,
        target_count: int | None = None,
        *,
        total_fund: int | None = None,
        serial: bool = False,
    ) -> FundingResult:
        a = self.config["accounts"]
        target_count = target_count or a["count"]
        accounts = self.provisioner.provision(target_count, a["offset"])
        if len(accounts) < target_count:
            log.warning("Only %s of %s accounts provisioned; funding those", len(accounts), target_count)

        wallet = self.seed_wallet(seed)
        fee = self.ctx.factory.fee
        if total_fund is None:
            per_account = a["initial_fund"]
            if per_account:
                total_fund = per_account * len(accounts)
            else:
                # The seed keeps its reserve and pays one fee per transfer it sends itself
                balance, reserve = await asyncio.gather(
                    self.ctx.ledger.get_balance(wallet.address), self.ctx.ledger.get_reserve()
                )
                total_fund = balance - reserve - fee * (len(accounts) if serial else 1)

        distributor = FundDistributor(self.ctx.ledger, self.ctx.factory, self.tracker(), self.nonces)
        start = time.perf_counter()
        if serial:
            result = await distributor.fund_serially(wallet, accounts, Decimal(total_fund) // max(len(accounts), 1))
        else:
            result = await distributor.fund(wallet, accounts, total_fund)
        log.info("Funding finished in %.2fs: %s accounts, %s rounds", time.perf_counter() - start,
                 len(result.accounts), result.rounds)

        self.accounts = result.accounts
        self.transfers.extend(result.transfers)
        self.last_funding = result
        self.provisioner.persist(result.accounts, self.ctx.snapshot_path("accounts_file"))
        return result

    async def run_throughput_scenario(
        self,
        batch_size: int,
        concurrency: int | None = None,
        *,
        batches: int = 1,
        amount: int | None = None,
        pattern: str | None = None,
        payload: bytes | None = None,
    ) -> ThroughputReport:
        accounts = self.load_accounts()
        g = self.config["generation"]
        amount = self.config["transactions"]["amount"] if amount is None else amount
        pool = DispatchPool(self.ctx.channels(concurrency), stop=self.ctx.stop)
        pipeline = GenerationPipeline(
            self.ctx.factory,
            self.nonces,
            accounts,
            batch_size=batch_size,
            batch_count=batches,
            amount=amount,
            payload=payload,
            pattern=pattern or g["pattern"],
            queue_depth=g["queue_depth"],
            workers=g["workers"],
            stop=self.ctx.stop,
        )
        self.nonces.invalidate()
        log.info("Throughput run: %s batch(es) of %s over %s channels", batches, batch_size, pool.k)

        failures: list[dict] = []
        accepted: dict[str, SignedTransaction] = {}
        blocked: set[str] = set()
        elapsed = 0.0
        error = None
        try:
            async with aclosing(pipeline.batches()) as stream:
                async for batch in stream:
                    spent, ok, failed = await self._dispatch(pool, batch.transactions, blocked)
                    elapsed += spent
                    accepted.update((t.tx_hash, t) for t in ok)
                    failures += failed
                    log.info("Batch %s: %s/%s submitted in %.3fs", batch.number, len(ok), len(batch), spent)
        except Exception as e:
            # Batches already dispatched are still confirmed and reported below
            error = f"{type(e).__name__}: {e}"
            log.error("Generation stopped after %s txns: %s", len(pipeline.produced), error)

        confirmation = await self.tracker().track(list(accepted))
        self.nonces.invalidate()
        included = 0
        for r in confirmation.results.values():
            t = accepted[r.tx_hash]
            if r.included:
                included += 1
                self.transfers.append(TransferRecord(t.sender, t.recipient, t.amount, Decimal(t.fee)))
            else:
                failures.append(_failure(t, r.state, r.error))

        result = ThroughputReport(
            count=len(pipeline.produced),
            elapsed=elapsed,
            failures=failures,
            submitted=len(accepted),
            included=included,
            confirm_elapsed=confirmation.elapsed,
            cancelled=confirmation.cancelled or self.ctx.stop.is_set(),
            error=error,
        )
        if bad := self.nonces.audit():
            log.warning("Nonce audit found %s sender(s) with gaps or repeats", len(bad))
        log.info("Throughput: %s txns, %.1f tps, %s included, %s failures", result.count, result.tps,
                 result.included, len(result.failures))
        self.last_throughput = result
        return result

    async def run_consistency_scenario(
        self, transfer_graph: list[TransferRecord] | list[tuple[str, str, int]] | None = None,
        concurrency: int | None = None,
        *,
        amount: int | None = None,
    ) -> VerificationReport:
        """Execute a transfer graph and check every touched balance against it.

        Without a graph, each account in the pool sends `amount` (default: the
        configured amount) to its pairwise partner. Balances are checked against
        the applied transfers only; the rest come back as `failures`.
        """
        accounts = self.load_accounts()
        wallets = {a.address: a for a in accounts}
        if transfer_graph is None:
            amount = self.config["transactions"]["amount"] if amount is None else amount
            transfer_graph = [(accounts[2 * j].address, accounts[2 * j + 1].address, amount)
                              for j in range(len(accounts) // 2)]
        edges = [(r.sender, r.recipient, r.amount) if isinstance(r, TransferRecord) else tuple(r)
                 for r in transfer_graph]

        seed = self.seed_wallet()
        touched = sorted({x for s, d, _ in edges for x in (s, d)})
        initial = dict(zip(touched, await asyncio.gather(*(self.ctx.ledger.get_balance(a) for a in touched))))

        self.nonces.invalidate()
        txns: list[SignedTransaction] = []
        for sender, recipient, value in edges:
            if sender == seed.address:
                wallet = seed
            elif sender in wallets:
                wallet = self.ctx.factory.wallet_for(wallets[sender])
            else:
                raise ValueError(f"no credential for sender {sender}")
            txns.append(await self._sign(wallet, recipient, value))

        _, failures, confirmation = await self._submit_and_confirm(txns, concurrency)
        if confirmation.cancelled:
            raise errors.WorkloadError("consistency run cancelled before every transfer was confirmed")
        for f in failures:
            log.warning("Transfer %s from %s did not land: %s %s", f["tx_hash"], f["sender"], f["state"], f["error"])

        included = {r.tx_hash for r in confirmation.results.values() if r.included}
        records = [TransferRecord(t.sender, t.recipient, t.amount, Decimal(t.fee)) for t in txns if t.tx_hash in included]
        self.transfers += records

        observed = dict(zip(touched, await asyncio.gather(*(self.ctx.ledger.get_balance(a) for a in touched))))
        report = replace(self.verifier.verify(records, initial, observed), failures=tuple(failures))
        self.last_verification = report
        return report

    async def generate_transactions(
        self, path: str | Path | None = None, *, batch_size: int, batches: int = 1, amount: int | None = None
    ) -> list[SignedTransaction]:
        """Pre-sign a transaction set and write it to a snapshot for a later replay."""
        accounts = self.load_accounts()
        g = self.config["generation"]
        pipeline = GenerationPipeline(
            self.ctx.factory,
            self.nonces,
            accounts,
            batch_size=batch_size,
            batch_count=batches,
            amount=self.config["transactions"]["amount"] if amount is None else amount,
            pattern=g["pattern"],
            queue_depth=g["queue_depth"],
            workers=g["workers"],
            stop=self.ctx.stop,
        )
        self.nonces.invalidate()
        start = time.perf_counter()
        await pipeline.collect()
        path = path or self.ctx.snapshot_path("transactions_file")
        snapshots.save_transactions(pipeline.produced, path)
        log.info("Generated %s txns in %.2fs into %s", len(pipeline.produced), time.perf_counter() - start, path)
        return pipeline.produced

    async def replay_transactions(self, path: str | Path | None = None, concurrency: int | None = None) -> ThroughputReport:
        path = path or self.ctx.snapshot_path("transactions_file")
        txns = snapshots.load_transactions(path)
        log.info("Replaying %s txns from %s", len(txns), path)
        elapsed, failures, confirmation = await self._submit_and_confirm(txns, concurrency)
        included = confirmation.by_state(TxState.INCLUDED)
        result = ThroughputReport(
            count=len(txns),
            elapsed=elapsed,
            failures=failures,
            submitted=len(confirmation.results),
            included=len(included),
            confirm_elapsed=confirmation.elapsed,
            cancelled=confirmation.cancelled,
        )
        self.last_throughput = result
        return result

    def bench_signing(self, n: int = 1000) -> dict:
        """Sign and hash n transfers from the funding wallet; nothing is submitted."""
        wallet = self.seed_wallet()
        destination = Wallet.create().address
        start = time.perf_counter()
        for nonce in range(1, n + 1):
            self.ctx.factory.build(wallet, nonce, destination, 1)
        elapsed = time.perf_counter() - start
        rate = n / elapsed if elapsed > 0 else 0.0
        log.info("Signed %s txns in %.3fs (%.1f/s)", n, elapsed, rate)
        return {"count": n, "elapsed": elapsed, "tps": rate}

    def summary(self) -> dict:
        return {
            "ledger": type(self.ctx.ledger).__name__,
            "accounts": len(self.accounts),
            "transfers": len(self.transfers),
            "nonce_violations": sorted(self.nonces.audit()),
            "last_funding": None if self.last_funding is None else {
                "accounts": len(self.last_funding.accounts),
                "rounds": self.last_funding.rounds,
                "total_fund": str(self.last_funding.total_fund),
            },
            "last_throughput": None if self.last_throughput is None else {
                "count": self.last_throughput.count,
                "elapsed": self.last_throughput.elapsed,
                "tps": self.last_throughput.tps,
                "included": self.last_throughput.included,
                "failures": len(self.last_throughput.failures),
                "error": self.last_throughput.error,
            },
            "last_verification": None if self.last_verification is None else {
                "accounts": len(self.last_verification.expected),
                "mismatches": len(self.last_verification.mismatches),
                "failures": len(self.last_verification.failures),
            },
        }
