"""Harness data structures.

Everything handed between stages is immutable; balances on `Account` are
snapshots taken when the record was produced, never live ledger views.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal

from ptx_workload import errors
from ptx_workload.constants import DispatchState, TxState, TxType


@dataclass(frozen=True, slots=True)
class Account:
    address: str
    balance: Decimal
    credential: str  # keystore reference
    index: int

    def with_balance(self, balance: Decimal) -> "Account":
        return replace(self, balance=Decimal(balance))


@dataclass(frozen=True, slots=True)
class SignedTransaction:
    tx_hash: str
    blob: str  # signed, encoded transaction (hex)
    sender: str
    recipient: str | None
    nonce: int
    amount: Decimal | None
    payload: bytes | None
    fee: int
    signature: str
    transaction_type: TxType

    def __str__(self):
        return f"{self.transaction_type} -- {self.sender}#{self.nonce} -- {self.tx_hash[:12]}"


@dataclass(frozen=True, slots=True)
class Batch:
    number: int
    transactions: tuple[SignedTransaction, ...]

    def __len__(self) -> int:
        return len(self.transactions)

    @property
    def hashes(self) -> list[str]:
        return [t.tx_hash for t in self.transactions]

    @property
    def blobs(self) -> list[str]:
        return [t.blob for t in self.transactions]


@dataclass(frozen=True, slots=True)
class DispatchTicket:
    index: int  # position within the dispatched batch
    blob: str
    channel: int


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    index: int
    channel: int
    state: DispatchState
    error: str | None = None
    engine_result: str | None = None

    @property
    def submitted(self) -> bool:
        return self.state == DispatchState.SUBMITTED


@dataclass(slots=True)
class DispatchReport:
    outcomes: list[DispatchOutcome]
    assignments: list[int]  # items per channel
    elapsed: float
    cancelled: bool = False

    @property
    def submitted(self) -> list[DispatchOutcome]:
        return [o for o in self.outcomes if o.state == DispatchState.SUBMITTED]

    @property
    def failures(self) -> list[DispatchOutcome]:
        return [o for o in self.outcomes if o.state != DispatchState.SUBMITTED]


@dataclass(frozen=True, slots=True)
class ConfirmationResult:
    tx_hash: str
    state: TxState
    error: str | None = None

    @property
    def included(self) -> bool:
        return self.state == TxState.INCLUDED


@dataclass(slots=True)
class ConfirmationReport:
    results: dict[str, ConfirmationResult]  # in submission order
    elapsed: float = 0.0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and all(r.included for r in self.results.values())

    def by_state(self, state: TxState) -> list[ConfirmationResult]:
        return [r for r in self.results.values() if r.state == state]

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for r in self.results.values():
            counts[r.state.name] = counts.get(r.state.name, 0) + 1
        return counts

    def raise_for_failures(self) -> None:
        """Raise for the first hash (in submission order) that did not end up included."""
        for r in self.results.values():
            if r.state == TxState.REJECTED:
                raise errors.RejectionError(r.tx_hash, r.error)
            if r.state in (TxState.TIMED_OUT, TxState.PENDING):
                raise errors.TimeoutError(r.tx_hash)


@dataclass(frozen=True, slots=True)
class TransferRecord:
    sender: str
    recipient: str
    amount: Decimal
    fee: Decimal = Decimal(0)

    @property
    def sender_delta(self) -> Decimal:
        return -(self.amount + self.fee)

    @property
    def recipient_delta(self) -> Decimal:
        return self.amount


@dataclass(frozen=True, slots=True)
class Mismatch:
    address: str
    expected: Decimal
    observed: Decimal | None

    def as_error(self) -> errors.VerificationMismatch:
        return errors.VerificationMismatch(self.address, self.expected, self.observed)


@dataclass(frozen=True, slots=True)
class VerificationReport:
    expected: dict[str, Decimal]
    mismatches: tuple[Mismatch, ...]
    failures: tuple[dict, ...] = ()  # transfers that were never applied

    @property
    def ok(self) -> bool:
        return not self.mismatches and not self.failures


@dataclass(slots=True)
class FundingResult:
    accounts: list[Account]
    rounds: int
    total_fund: Decimal
    tx_hashes: list[str] = field(default_factory=list)
    transfers: list[TransferRecord] = field(default_factory=list)


@dataclass(slots=True)
class ThroughputReport:
    count: int
    elapsed: float  # submission wall time, dispatch start to barrier
    failures: list[dict]
    submitted: int = 0
    included: int = 0
    confirm_elapsed: float = 0.0
    cancelled: bool = False
    error: str | None = None  # generation stopped early

    @property
    def tps(self) -> float:
        return self.count / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def success(self) -> bool:
        return not self.failures and not self.cancelled and self.error is None
