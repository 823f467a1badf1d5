"""Harness error taxonomy.

Component-local failures (one account, one submission) are collected into
reports; pipeline-level failures (a funding round, a required snapshot) abort
the scenario by raising.

`TimeoutError` here shadows the builtin; import the module and use
`errors.TimeoutError`.
"""

from decimal import Decimal
from pathlib import Path


class WorkloadError(Exception):
    """Base for every error the harness raises."""


class EncodingError(WorkloadError):
    """Transaction could not be built or encoded. Not retried."""


class KeystoreError(WorkloadError):
    def __init__(self, index: int | None, message: str):
        where = f"account index {index}" if index is not None else "credential store"
        super().__init__(f"keystore failure for {where}: {message}")
        self.index = index


class NotFoundError(WorkloadError):
    def __init__(self, path: str | Path):
        super().__init__(f"snapshot not found: {path}")
        self.path = Path(path)


class CorruptError(WorkloadError):
    def __init__(self, path: str | Path, message: str):
        super().__init__(f"corrupt snapshot {path}: {message}")
        self.path = Path(path)


class FundingError(WorkloadError):
    def __init__(self, round_no: int, message: str, tx_hash: str | None = None):
        super().__init__(f"funding round {round_no} failed: {message}")
        self.round = round_no
        self.tx_hash = tx_hash


class SubmissionError(WorkloadError):
    def __init__(self, index: int, message: str):
        super().__init__(f"submission of item {index} failed: {message}")
        self.index = index


class ConfirmationError(WorkloadError):
    def __init__(self, tx_hash: str, message: str):
        super().__init__(f"{tx_hash}: {message}")
        self.tx_hash = tx_hash


class TimeoutError(ConfirmationError):
    def __init__(self, tx_hash: str):
        super().__init__(tx_hash, "not included before the confirmation timeout")


class RejectionError(ConfirmationError):
    def __init__(self, tx_hash: str, detail: str | None = None):
        super().__init__(tx_hash, f"permanently rejected ({detail or 'no detail'})")
        self.detail = detail


class VerificationMismatch(WorkloadError):
    def __init__(self, address: str, expected: Decimal, observed: Decimal | None):
        super().__init__(f"{address}: expected {expected}, observed {observed}")
        self.address = address
        self.expected = expected
        self.observed = observed
