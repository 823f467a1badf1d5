"""In-process ledger with XRPL encoding, for tests and `--simulated` runs.

Submitted blobs are decoded and signature-checked, then queued. Queued
transactions are applied per sender in strict nonce order whenever a ledger
closes; a gap blocks the sender's later nonces until it is filled. With a
non-zero `reserve`, payments follow the XRPL account reserve rules.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal

from xrpl.core.binarycodec import decode
from xrpl.core.binarycodec.exceptions import XRPLBinaryCodecException

from ptx_workload.constants import TxState
from ptx_workload.ledger import InclusionStatus, SubmitResult
from ptx_workload.txn_factory import signature_is_valid, txid_from_blob

log = logging.getLogger("ptx_workload.sim")

# Whole XRP supply in drops, as held by genesis on a fresh network
GENESIS_DROPS = 100_000_000_000_000_000
# Base reserve a current network votes for: 1 XRP
BASE_RESERVE_DROPS = 1_000_000


@dataclass(slots=True)
class SimAccount:
    balance: Decimal
    nonce: int


@dataclass(slots=True)
class SimTx:
    tx_hash: str
    sender: str
    nonce: int
    recipient: str | None
    amount: Decimal
    fee: Decimal


class InMemoryLedger:
    def __init__(
        self,
        balances: dict[str, int | Decimal] | None = None,
        *,
        start_nonce: int = 1,
        auto_close: bool = True,
        verify_signatures: bool = True,
        latency: float = 0.0,
        reserve: int | Decimal = 0,
    ):
        self.start_nonce = start_nonce
        self.auto_close = auto_close
        self.verify_signatures = verify_signatures
        self.latency = latency
        self.reserve = Decimal(reserve)
        self.ledger_index = 1
        self.accounts: dict[str, SimAccount] = {}
        self._queue: dict[str, dict[int, SimTx]] = {}
        self._status: dict[str, tuple[TxState, str | None]] = {}
        # Fault injection, keyed by tx hash
        self.fail_submissions: set[str] = set()  # raise a transport error on submit
        self.drop: set[str] = set()  # accepted, never applied
        self.reject: set[str] = set()  # accepted, then rejected when applied
        self.submissions: list[tuple[str, int, str]] = []  # (sender, nonce, hash) in acceptance order
        self.applied: list[tuple[str, int, str]] = []
        for address, amount in (balances or {}).items():
            self.fund(address, amount)

    def channel_pool(self, k: int, urls: list[str] | None = None) -> list["InMemoryLedger"]:
        return [self] * k

    def fund(self, address: str, amount: int | Decimal) -> None:
        acct = self.accounts.setdefault(address, SimAccount(Decimal(0), self.start_nonce))
        acct.balance += Decimal(amount)

    def balance_of(self, address: str) -> Decimal:
        acct = self.accounts.get(address)
        return acct.balance if acct else Decimal(0)

    @property
    def queued(self) -> int:
        return sum(len(q) for q in self._queue.values())

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    async def submit(self, blob: str) -> SubmitResult:
        await self._io()
        try:
            tx = decode(blob)
            sender, nonce = tx["Account"], int(tx["Sequence"])
        except (XRPLBinaryCodecException, ValueError, KeyError, IndexError, TypeError) as e:
            return SubmitResult(accepted=False, error=f"temMALFORMED: {e}", engine_result="temMALFORMED")
        tx_hash = txid_from_blob(blob)
        if tx_hash in self.fail_submissions:
            raise ConnectionError(f"simulated transport failure for {tx_hash}")
        if self.verify_signatures and not signature_is_valid(tx):
            return SubmitResult(accepted=False, error="temBAD_SIGNATURE", engine_result="temBAD_SIGNATURE")
        if tx_hash in self._status:
            return SubmitResult(accepted=False, error="tefALREADY", engine_result="tefALREADY")

        acct = self.accounts.get(sender)
        if acct is None:
            return SubmitResult(accepted=False, error="terNO_ACCOUNT", engine_result="terNO_ACCOUNT")
        if nonce < acct.nonce:
            return SubmitResult(accepted=False, error="tefPAST_SEQ", engine_result="tefPAST_SEQ")
        queue = self._queue.setdefault(sender, {})
        if nonce in queue:
            return SubmitResult(accepted=False, error="telCAN_NOT_QUEUE", engine_result="telCAN_NOT_QUEUE")

        queue[nonce] = SimTx(
            tx_hash=tx_hash,
            sender=sender,
            nonce=nonce,
            recipient=tx.get("Destination"),
            amount=Decimal(tx.get("Amount", 0)),
            fee=Decimal(tx["Fee"]),
        )
        self._status[tx_hash] = (TxState.PENDING, None)
        self.submissions.append((sender, nonce, tx_hash))
        log.debug("queued %s#%s %s", sender, nonce, tx_hash)
        return SubmitResult(accepted=True, engine_result="terQUEUED")

    def _apply(self, t: SimTx) -> None:
        acct = self.accounts[t.sender]
        acct.nonce += 1
        if t.tx_hash in self.reject:
            self._status[t.tx_hash] = (TxState.REJECTED, "tecNO_PERMISSION")
            return
        if t.recipient is not None and t.recipient not in self.accounts and t.amount < self.reserve:
            self._status[t.tx_hash] = (TxState.REJECTED, "tecNO_DST_INSUF_XRP")
            return
        # A payment must leave the sender its reserve; the fee alone may dip into it
        floor = max(self.reserve, t.fee) if t.recipient is not None else t.fee
        if acct.balance < t.amount + floor:
            self._status[t.tx_hash] = (TxState.REJECTED, "tecUNFUNDED_PAYMENT")
            return
        acct.balance -= t.amount + t.fee
        if t.recipient is not None:
            self.fund(t.recipient, t.amount)
        self._status[t.tx_hash] = (TxState.INCLUDED, "tesSUCCESS")
        self.applied.append((t.sender, t.nonce, t.tx_hash))

    def close_ledger(self) -> int:
        """Apply every queued txn whose nonce is next for its sender. Returns the count applied."""
        applied = 0
        progress = True
        while progress:
            progress = False
            for sender, queue in self._queue.items():
                acct = self.accounts[sender]
                while (t := queue.get(acct.nonce)) is not None and t.tx_hash not in self.drop:
                    del queue[acct.nonce]
                    self._apply(t)
                    applied += 1
                    progress = True
        self.ledger_index += 1
        if applied:
            log.debug("ledger %s closed with %s txns", self.ledger_index, applied)
        return applied

    async def get_nonce(self, address: str) -> int:
        await self._io()
        acct = self.accounts.get(address)
        if acct is None:
            raise LookupError(f"actNotFound: {address}")
        return acct.nonce

    async def get_balance(self, address: str) -> Decimal:
        await self._io()
        return self.balance_of(address)

    async def get_reserve(self) -> Decimal:
        await self._io()
        return self.reserve

    async def is_included(self, tx_hash: str) -> InclusionStatus:
        await self._io()
        if self.auto_close:
            self.close_ledger()
        state, detail = self._status.get(tx_hash, (None, "txnNotFound"))
        if state == TxState.INCLUDED:
            return InclusionStatus(included=True, detail=detail)
        if state == TxState.REJECTED:
            return InclusionStatus(included=False, permanently_rejected=True, detail=detail)
        return InclusionStatus(included=False, detail=detail)
