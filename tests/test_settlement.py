"""Tests for certificate settlement."""

import threading
from decimal import Decimal

import pytest

from orderledger.errors import BalanceConflictError, OrderCancelledError, OrderNotFoundError
from orderledger.models import ALREADY_SETTLED, FAILED, SETTLED, SHORTFALL
from orderledger.orders import OrderWriter
from orderledger.settlement import CertificateSettlement

from conftest import fixed_clock


@pytest.fixture
def writer(store):
    return OrderWriter(store)


@pytest.fixture
def settlement(writer, certificates):
    return CertificateSettlement(writer, certificates, max_retries=3, clock=fixed_clock)


@pytest.fixture
def make_order(writer, customer, items):
    def _make(order_id: str, applied: list[tuple[str, str]], total: str = "50.00"):
        return writer.create_order(
            {
                "id": order_id,
                "createdAt": "2025-06-15T12:00:00Z",
                "status": "Pending",
                "customer": customer,
                "items": items,
                "totals": {"subtotal": total, "tax": "0", "total": total},
                "appliedCertificates": [
                    {"code": code, "appliedAmount": amount} for code, amount in applied
                ],
            }
        )

    return _make


class TestSettle:
    def test_settles_applied_amount(self, settlement, certificates, add_certificate, make_order):
        add_certificate("GC-ABC123", "30.00")
        make_order("ORD-2025-1001-0001", [("GC-ABC123", "30.00")])

        result = settlement.settle("ORD-2025-1001-0001")

        assert result.complete
        assert not result.needs_reconciliation
        assert [(e.code, e.status, e.settled_amount) for e in result.entries] == [
            ("GC-ABC123", SETTLED, Decimal("30.00"))
        ]
        certificate = certificates.get("GC-ABC123")
        assert certificate.remaining_balance == Decimal("0.00")
        assert certificate.redemptions[0].order_id == "ORD-2025-1001-0001"
        assert certificate.redemptions[0].balance_after == Decimal("0.00")

    def test_marks_order_settled(self, settlement, writer, add_certificate, make_order):
        add_certificate("GC-A", "40.00")
        make_order("ORD-2025-1001-0001", [("GC-A", "15.00")])

        settlement.settle("ORD-2025-1001-0001")

        order = writer.get_order("ORD-2025-1001-0001")
        assert order.settled is True
        assert order.settlement["entries"][0]["settledAmount"] == "15.00"
        assert order.totals.total == Decimal("50.00")

    def test_second_call_is_idempotent(self, settlement, certificates, add_certificate, make_order):
        add_certificate("GC-A", "40.00")
        make_order("ORD-2025-1001-0001", [("GC-A", "15.00")])

        first = settlement.settle("ORD-2025-1001-0001")
        second = settlement.settle("ORD-2025-1001-0001")

        assert not first.already_settled
        assert second.already_settled
        assert second.settled_total == Decimal("15.00")
        certificate = certificates.get("GC-A")
        assert certificate.remaining_balance == Decimal("25.00")
        assert len(certificate.redemptions) == 1

    def test_order_without_certificates(self, settlement, writer, make_order):
        make_order("ORD-2025-1001-0001", [])

        result = settlement.settle("ORD-2025-1001-0001")

        assert result.entries == []
        assert writer.get_order("ORD-2025-1001-0001").settled

    def test_shortfall_settles_what_is_available(
        self, settlement, certificates, add_certificate, make_order
    ):
        add_certificate("GC-A", "30.00")
        add_certificate("GC-B", "20.00")
        make_order("ORD-2025-1001-0001", [("GC-A", "30.00"), ("GC-B", "20.00")])
        # Another order spent part of GC-A after checkout validated it
        certificates.store.merge("certificates", "GC-A", {"remainingBalance": "12.00"})

        result = settlement.settle("ORD-2025-1001-0001")

        entries = {e.code: e for e in result.entries}
        assert entries["GC-A"].status == SHORTFALL
        assert entries["GC-A"].settled_amount == Decimal("12.00")
        assert entries["GC-A"].shortfall == Decimal("18.00")
        assert entries["GC-B"].status == SETTLED
        assert result.needs_reconciliation
        assert result.complete
        assert certificates.get("GC-A").remaining_balance == Decimal("0.00")
        assert certificates.get("GC-B").remaining_balance == Decimal("0.00")

    def test_missing_certificate_is_shortfall(self, settlement, make_order):
        make_order("ORD-2025-1001-0001", [("GC-GONE", "10.00")])

        result = settlement.settle("ORD-2025-1001-0001")

        assert result.entries[0].status == SHORTFALL
        assert result.entries[0].settled_amount == Decimal("0.00")
        assert result.needs_reconciliation

    def test_cancelled_order_refused(self, settlement, writer, add_certificate, make_order):
        add_certificate("GC-A", "30.00")
        make_order("ORD-2025-1001-0001", [("GC-A", "10.00")])
        writer.merge_update("ORD-2025-1001-0001", {"status": "Cancelled"})

        with pytest.raises(OrderCancelledError):
            settlement.settle("ORD-2025-1001-0001")

    def test_settled_then_cancelled_returns_prior_result(
        self, settlement, writer, certificates, add_certificate, make_order
    ):
        add_certificate("GC-A", "30.00")
        make_order("ORD-2025-1001-0001", [("GC-A", "10.00")])
        settlement.settle("ORD-2025-1001-0001")
        writer.merge_update("ORD-2025-1001-0001", {"status": "Cancelled"})

        again = settlement.settle("ORD-2025-1001-0001")

        assert again.already_settled
        assert again.settled_total == Decimal("10.00")
        assert certificates.get("GC-A").remaining_balance == Decimal("20.00")

    def test_missing_order(self, settlement):
        with pytest.raises(OrderNotFoundError):
            settlement.settle("ORD-2025-1999-0000")

    def test_status_unchanged(self, settlement, writer, add_certificate, make_order):
        add_certificate("GC-A", "30.00")
        make_order("ORD-2025-1001-0001", [("GC-A", "10.00")])
        writer.merge_update("ORD-2025-1001-0001", {"status": "Processing"})

        settlement.settle("ORD-2025-1001-0001")

        assert writer.get_order("ORD-2025-1001-0001").status.value == "Processing"


class TestPartialRuns:
    def test_reentry_skips_settled_certificates(
        self, settlement, writer, certificates, add_certificate, make_order
    ):
        add_certificate("GC-A", "30.00")
        add_certificate("GC-B", "30.00")
        make_order("ORD-2025-1001-0001", [("GC-A", "10.00"), ("GC-B", "10.00")])

        # First run only reached GC-A before the process died
        order = writer.get_order("ORD-2025-1001-0001")
        settlement._settle_certificate(
            "ORD-2025-1001-0001", order.applied_certificates[0], fixed_clock()
        )

        result = settlement.settle("ORD-2025-1001-0001")

        statuses = {e.code: e.status for e in result.entries}
        assert statuses == {"GC-A": ALREADY_SETTLED, "GC-B": SETTLED}
        assert certificates.get("GC-A").remaining_balance == Decimal("20.00")
        assert certificates.get("GC-B").remaining_balance == Decimal("20.00")

    def test_conflicts_past_retry_limit_leave_order_unsettled(
        self, settlement, writer, certificates, add_certificate, make_order, monkeypatch
    ):
        add_certificate("GC-A", "30.00")
        make_order("ORD-2025-1001-0001", [("GC-A", "10.00")])

        def always_conflict(code, expected, new, redemption):
            raise BalanceConflictError(code, expected, Decimal("1.00"))

        monkeypatch.setattr(certificates, "compare_and_set_balance", always_conflict)

        result = settlement.settle("ORD-2025-1001-0001")

        assert result.entries[0].status == FAILED
        assert not result.complete
        assert result.needs_reconciliation
        assert writer.get_order("ORD-2025-1001-0001").settled is False

        monkeypatch.undo()
        retry = settlement.settle("ORD-2025-1001-0001")
        assert retry.complete
        assert certificates.get("GC-A").remaining_balance == Decimal("20.00")


class TestConcurrentSettlement:
    def test_two_orders_racing_for_one_certificate(
        self, settlement, certificates, add_certificate, make_order
    ):
        add_certificate("GC-SHARED", "30.00")
        make_order("ORD-2025-1001-0001", [("GC-SHARED", "30.00")])
        make_order("ORD-2025-1002-0002", [("GC-SHARED", "30.00")])
        results = {}

        def run(order_id):
            results[order_id] = settlement.settle(order_id)

        threads = [
            threading.Thread(target=run, args=(order_id,))
            for order_id in ["ORD-2025-1001-0001", "ORD-2025-1002-0002"]
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        total_settled = sum(r.settled_total for r in results.values())
        assert total_settled == Decimal("30.00")
        assert certificates.get("GC-SHARED").remaining_balance == Decimal("0.00")
        assert sum(r.needs_reconciliation for r in results.values()) == 1

    def test_same_order_settled_twice_concurrently(
        self, settlement, certificates, add_certificate, make_order
    ):
        add_certificate("GC-A", "30.00")
        make_order("ORD-2025-1001-0001", [("GC-A", "25.00")])
        results = []

        def run():
            results.append(settlement.settle("ORD-2025-1001-0001"))

        threads = [threading.Thread(target=run) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        certificate = certificates.get("GC-A")
        assert certificate.remaining_balance == Decimal("5.00")
        assert len(certificate.redemptions) == 1
        assert len(results) == 3
