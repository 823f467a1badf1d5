import logging
from collections.abc import Iterable, Mapping
from decimal import Decimal

from ptx_workload.models import Mismatch, TransferRecord, VerificationReport

log = logging.getLogger("ptx_workload.verify")


class ConsistencyVerifier:
    """Recompute balances from a transfer graph and compare them with observed ones.

    Pure: the same records and snapshots always produce the same report.
    Every touched account is checked; all mismatches are reported.
    """

    @staticmethod
    def expected_balances(
        records: Iterable[TransferRecord], initial: Mapping[str, Decimal]
    ) -> dict[str, Decimal]:
        expected = {a: Decimal(b) for a, b in initial.items()}
        for r in records:
            expected[r.sender] = expected.get(r.sender, Decimal(0)) + r.sender_delta
            expected[r.recipient] = expected.get(r.recipient, Decimal(0)) + r.recipient_delta
        return expected

    def verify(
        self,
        records: Iterable[TransferRecord],
        initial: Mapping[str, Decimal],
        observed: Mapping[str, Decimal],
    ) -> VerificationReport:
        expected = self.expected_balances(records, initial)
        mismatches = []
        for address in sorted(expected):
            seen = observed.get(address)
            if seen is None or Decimal(seen) != expected[address]:
                mismatches.append(Mismatch(address, expected[address], None if seen is None else Decimal(seen)))

        for m in mismatches:
            log.warning("Balance mismatch: %s", m.as_error())
        log.info("Verified %s accounts, %s mismatches", len(expected), len(mismatches))
        return VerificationReport(expected=expected, mismatches=tuple(mismatches))
