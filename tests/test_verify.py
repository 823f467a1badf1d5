from decimal import Decimal

from ptx_workload.models import Mismatch, TransferRecord
from ptx_workload.verify import ConsistencyVerifier

A, B, C = "rA", "rB", "rC"


def test_single_transfer_matches():
    report = ConsistencyVerifier().verify(
        [TransferRecord(A, B, Decimal(40))],
        initial={A: Decimal(100), B: Decimal(0)},
        observed={A: Decimal(60), B: Decimal(40)},
    )
    assert report.expected == {A: Decimal(60), B: Decimal(40)}
    assert report.ok


def test_wrong_observed_balance_is_one_mismatch():
    report = ConsistencyVerifier().verify(
        [TransferRecord(A, B, Decimal(40))],
        initial={A: Decimal(100), B: Decimal(0)},
        observed={A: Decimal(50), B: Decimal(40)},
    )
    assert report.mismatches == (Mismatch(A, Decimal(60), Decimal(50)),)
    assert "expected 60, observed 50" in str(report.mismatches[0].as_error())


def test_every_mismatch_is_reported_sorted():
    records = [TransferRecord(C, A, Decimal(5)), TransferRecord(A, B, Decimal(10), fee=Decimal(1))]
    report = ConsistencyVerifier().verify(
        records,
        initial={A: Decimal(20), B: Decimal(0), C: Decimal(5)},
        observed={A: Decimal(0), B: Decimal(0)},
    )
    assert [m.address for m in report.mismatches] == [A, B, C]
    assert report.expected == {A: Decimal(14), B: Decimal(10), C: Decimal(0)}
    assert report.mismatches[2].observed is None


def test_verification_is_idempotent():
    v = ConsistencyVerifier()
    records = (TransferRecord(A, B, Decimal(40)),)
    initial = {A: Decimal(100), B: Decimal(0)}
    observed = {A: Decimal(50), B: Decimal(40)}
    assert v.verify(records, initial, observed) == v.verify(records, initial, observed)
