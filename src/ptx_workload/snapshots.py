"""Whole-file JSON snapshots of accounts and transactions.

A write replaces the entire file; a read parses the entire file. There is no
append format.
"""

import json
import logging
import os
from decimal import Decimal
from pathlib import Path

from pydantic import BaseModel, TypeAdapter, ValidationError

from ptx_workload import errors
from ptx_workload.models import Account, SignedTransaction
from ptx_workload.txn_factory import from_blob

log = logging.getLogger("ptx_workload.snapshots")


class AccountRecord(BaseModel):
    address: str
    balance: Decimal
    credential: str
    index: int

    @classmethod
    def from_account(cls, a: Account) -> "AccountRecord":
        return cls(address=a.address, balance=a.balance, credential=a.credential, index=a.index)

    def to_account(self) -> Account:
        return Account(address=self.address, balance=self.balance, credential=self.credential, index=self.index)


class TransactionRecord(BaseModel):
    tx_hash: str
    blob: str
    sender: str
    recipient: str | None = None
    nonce: int
    amount: Decimal | None = None

    @classmethod
    def from_transaction(cls, t: SignedTransaction) -> "TransactionRecord":
        return cls(tx_hash=t.tx_hash, blob=t.blob, sender=t.sender, recipient=t.recipient,
                   nonce=t.nonce, amount=t.amount)


def write_snapshot(path: str | Path, records: list[BaseModel]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps([r.model_dump(mode="json") for r in records], indent=2)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(data + "\n", encoding="utf-8")
    os.replace(tmp, path)
    log.debug("Wrote %s records to %s", len(records), path)
    return path


def read_snapshot(path: str | Path, model: type[BaseModel]) -> list:
    path = Path(path)
    if not path.is_file():
        raise errors.NotFoundError(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return TypeAdapter(list[model]).validate_python(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise errors.CorruptError(path, f"not valid JSON: {e}") from e
    except ValidationError as e:
        raise errors.CorruptError(path, f"{e.error_count()} invalid record field(s)") from e


def save_accounts(accounts: list[Account], path: str | Path) -> Path:
    return write_snapshot(path, [AccountRecord.from_account(a) for a in accounts])


def load_accounts(path: str | Path) -> list[Account]:
    return [r.to_account() for r in read_snapshot(path, AccountRecord)]


def save_transactions(txns: list[SignedTransaction], path: str | Path) -> Path:
    return write_snapshot(path, [TransactionRecord.from_transaction(t) for t in txns])


def load_transactions(path: str | Path) -> list[SignedTransaction]:
    """Load transactions, rebuilding each from its blob and checking the recorded hash."""
    out = []
    for i, rec in enumerate(read_snapshot(path, TransactionRecord)):
        try:
            t = from_blob(rec.blob)
        except errors.EncodingError as e:
            raise errors.CorruptError(path, f"record {i}: {e}") from e
        if t.tx_hash != rec.tx_hash.upper():
            raise errors.CorruptError(path, f"record {i}: hash {rec.tx_hash} does not match its blob")
        out.append(t)
    return out
