"""Tests for the Ledger service."""

import dataclasses
from decimal import Decimal

import pytest

from orderledger.errors import (
    ConflictingFinalizeError,
    InvalidAmountError,
    InvalidOrderError,
    RevisionMismatchError,
)
from orderledger.models import OrderStatus, RejectionReason
from orderledger.notifications import CERTIFICATE_TEMPLATE, ORDER_CONFIRMATION_TEMPLATE

from conftest import NOW


class TestCheckout:
    def test_checkout_computes_totals(self, ledger, customer, items):
        result = ledger.checkout(customer, items)

        order = result.order
        assert order.id.startswith("ORD-2025-1001-")
        assert order.status == OrderStatus.PENDING
        assert order.totals.subtotal == Decimal("20.00")
        assert order.totals.tax == Decimal("2.40")
        assert order.totals.total == Decimal("22.40")
        assert result.amount_due == Decimal("22.40")
        assert order.created_at == "2025-06-15T12:00:00Z"

    def test_checkout_snapshots_inventory(self, ledger, customer):
        items = [
            {"id": "rose-1", "name": "Rose", "unitPrice": "7.50", "quantity": 1},
            {"id": "tulip-2", "name": "Tulip", "unitPrice": "5.00", "quantity": 1},
            {"id": "dahlia-3", "name": "Dahlia", "unitPrice": "9.00", "quantity": 1},
            {"id": "fern-9", "name": "Fern", "unitPrice": "4.00", "quantity": 1},
        ]

        order = ledger.checkout(customer, items).order

        assert [i.inventory_status for i in order.items] == [
            "In Stock",
            "Low Stock",
            "Out of Stock",
            "Unknown",
        ]

    def test_client_inventory_status_is_replaced(self, ledger, customer):
        items = [
            {
                "id": "dahlia-3",
                "name": "Dahlia",
                "unitPrice": "9.00",
                "quantity": 1,
                "inventoryStatus": "In Stock",
            }
        ]

        order = ledger.checkout(customer, items).order

        assert order.items[0].inventory_status == "Out of Stock"

    def test_without_inventory_status_is_unknown(self, ledger, customer, items):
        ledger.inventory = None
        items[0]["inventoryStatus"] = "In Stock"

        order = ledger.checkout(customer, items).order

        assert {i.inventory_status for i in order.items} == {"Unknown"}

    def test_checkout_applies_certificate(self, ledger, customer, add_certificate):
        add_certificate("GC-ABC123", "30.00")
        items = [{"id": "rose-1", "name": "Bouquet", "unitPrice": "50.00", "quantity": 1}]
        ledger.settings = dataclasses.replace(
            ledger.settings, gst_rate=Decimal("0"), pst_rate=Decimal("0")
        )

        result = ledger.checkout(customer, items, ["GC-ABC123"])

        assert result.order.totals.total == Decimal("50.00")
        assert result.order.certificate_total == Decimal("30.00")
        assert result.amount_due == Decimal("20.00")
        # Nothing is decremented until the order is finalized
        assert ledger.get_certificate("GC-ABC123").remaining_balance == Decimal("30.00")

    def test_checkout_reports_unusable_codes(self, ledger, customer, items, add_certificate):
        add_certificate("GC-OLD", "10.00", expires_in_days=-1)

        result = ledger.checkout(customer, items, ["GC-OLD", "GC-MISSING"])

        assert [e.reason for e in result.allocation_errors] == [
            RejectionReason.EXPIRED,
            RejectionReason.NOT_FOUND,
        ]
        assert result.amount_due == Decimal("22.40")

    def test_sequential_ids(self, ledger, customer, items):
        first = ledger.checkout(customer, items).order
        second = ledger.checkout(customer, items).order

        assert first.id.split("-")[2] == "1001"
        assert second.id.split("-")[2] == "1002"

    def test_checkout_requires_items(self, ledger, customer):
        with pytest.raises(InvalidOrderError):
            ledger.checkout(customer, [])

    def test_checkout_requires_customer(self, ledger, items):
        with pytest.raises(InvalidOrderError):
            ledger.checkout(None, items)

    def test_checkout_stamps_payment(self, ledger, customer, items):
        order = ledger.checkout(customer, items, payment={"method": "e-transfer"}).order
        assert order.payment.method == "e-transfer"
        assert order.payment.updated_at == "2025-06-15T12:00:00Z"


class TestIssueCertificate:
    def test_issue(self, ledger, email):
        certificate = ledger.issue_certificate(
            "75",
            recipient_name="Grace",
            recipient_email="grace@example.com",
            sender_name="Ada",
            message="Happy birthday",
        )

        assert certificate.code.startswith("GC-20250615-")
        assert certificate.initial_value == Decimal("75.00")
        assert certificate.remaining_balance == Decimal("75.00")
        assert certificate.date_expires.startswith("2026-06-15")
        assert len(email.sent) == 1
        assert email.sent[0].to == "grace@example.com"
        assert email.sent[0].template == CERTIFICATE_TEMPLATE
        assert email.sent[0].subject == "Ada sent you a gift certificate"

    def test_code_from_purchase_order(self, ledger):
        certificate = ledger.issue_certificate("20", purchase_order_id="ORD-2025-1001-4821")

        assert certificate.code == "GC-20250615-4821"
        assert ledger.list_certificates(purchase_order_id="ORD-2025-1001-4821") == [certificate]

    def test_two_certificates_from_one_order_get_distinct_codes(self, ledger):
        first = ledger.issue_certificate("20", purchase_order_id="ORD-2025-1001-4821")
        second = ledger.issue_certificate("20", purchase_order_id="ORD-2025-1001-4821")

        assert first.code != second.code

    def test_zero_amount_rejected(self, ledger):
        with pytest.raises(InvalidAmountError):
            ledger.issue_certificate("0")

    def test_email_failure_does_not_undo_issue(self, ledger, email):
        email.configure(should_succeed=False)

        certificate = ledger.issue_certificate("20", recipient_email="x@example.com")

        assert ledger.get_certificate(certificate.code).initial_value == Decimal("20.00")
        assert email.sent == []

    def test_list_by_state(self, ledger, add_certificate):
        add_certificate("GC-FRESH", "10.00")
        add_certificate("GC-HALF", "5.00", initial="10.00")
        add_certificate("GC-DONE", "0", initial="10.00")
        add_certificate("GC-OLD", "10.00", expires_in_days=-1)

        assert [c.code for c in ledger.list_certificates(state="active")] == ["GC-FRESH"]
        assert [c.code for c in ledger.list_certificates(state="partially-redeemed")] == [
            "GC-HALF"
        ]
        assert [c.code for c in ledger.list_certificates(state="fully-redeemed")] == ["GC-DONE"]
        assert [c.code for c in ledger.list_certificates(state="expired")] == ["GC-OLD"]


class TestAdminUpdates:
    def test_payment_update_keeps_order_intact(self, ledger, customer, items):
        order = ledger.checkout(customer, items).order

        updated = ledger.update_payment(order.id, "e-transfer")

        assert updated.totals.total == Decimal("22.40")
        assert updated.customer.email == "ada@example.com"
        assert [i.id for i in updated.items] == ["rose-1", "tulip-2"]
        assert updated.payment.method == "e-transfer"
        assert updated.payment.updated_at is not None

    def test_update_status(self, ledger, customer, items):
        order = ledger.checkout(customer, items).order

        assert ledger.update_status(order.id, "Shipped").status == OrderStatus.SHIPPED

    def test_ledger_managed_fields_rejected(self, ledger, customer, items):
        order = ledger.checkout(customer, items).order

        for fields in [{"settled": True}, {"appliedCertificates": []}, {"settlement": None}]:
            with pytest.raises(InvalidOrderError):
                ledger.update_order(order.id, fields)

    def test_stale_revision_rejected(self, ledger, customer, items):
        order = ledger.checkout(customer, items).order
        revision = ledger.get_order_revision(order.id)
        ledger.update_status(order.id, "Processing")

        with pytest.raises(RevisionMismatchError):
            ledger.update_order(order.id, {"notes": "late"}, expected_revision=revision)

    def test_edit_items_then_recalculate(self, ledger, customer, items):
        order = ledger.checkout(customer, items).order

        ledger.edit_items(
            order.id, [{"id": "rose-1", "name": "Rose", "unitPrice": "7.50", "quantity": 1}]
        )
        updated = ledger.recalculate_totals(order.id)

        assert updated.totals.total == Decimal("8.40")

    def test_completed_order_items_frozen(self, ledger, customer, items):
        order = ledger.checkout(customer, items).order
        ledger.update_status(order.id, "Completed")

        with pytest.raises(ConflictingFinalizeError):
            ledger.edit_items(order.id, items[:1])


class TestFinalize:
    def test_finalize_settles_and_confirms(self, ledger, email, customer, add_certificate):
        add_certificate("GC-ABC123", "30.00")
        items = [{"id": "rose-1", "name": "Bouquet", "unitPrice": "50.00", "quantity": 1}]
        order = ledger.checkout(customer, items, ["GC-ABC123"]).order

        result = ledger.finalize(order.id)

        assert result.settled_total == Decimal("30.00")
        assert ledger.get_certificate("GC-ABC123").remaining_balance == Decimal("0.00")
        assert [m.template for m in email.sent] == [ORDER_CONFIRMATION_TEMPLATE]
        assert email.sent[0].subject == f"Order Confirmation - {order.id}"

    def test_finalize_twice_sends_one_email(self, ledger, email, customer, items):
        order = ledger.checkout(customer, items).order

        ledger.finalize(order.id)
        second = ledger.finalize(order.id)

        assert second.already_settled
        assert len(email.sent) == 1


class TestAudit:
    def test_clean_orders(self, ledger, customer, items):
        ledger.checkout(customer, items)
        assert ledger.audit_orders() == []

    def test_reports_malformed_records(self, ledger, store):
        store.create("orders", "BROKEN-1", {"status": "Pending", "items": []})
        store.create(
            "orders",
            "BROKEN-2",
            {
                "id": "BROKEN-2",
                "createdAt": NOW.isoformat(),
                "status": "Lost",
                "customer": {"firstName": "Ada", "email": "ada@example.com"},
                "items": [{"id": "x", "name": "X", "unitPrice": "1.00", "quantity": 1}],
                "totals": {"subtotal": "1.00", "tax": "0", "total": "1.00"},
                "appliedCertificates": [{"code": "GC-A", "appliedAmount": "5.00"}],
                "settled": True,
            },
        )

        findings = {f.order_id: f.issues for f in ledger.audit_orders()}

        assert "missing id" in findings["BROKEN-1"]
        assert "missing customer" in findings["BROKEN-1"]
        assert "missing or empty items" in findings["BROKEN-1"]
        assert "zero or missing total" in findings["BROKEN-1"]
        assert "applied certificates exceed total" in findings["BROKEN-2"]
        assert "unknown status 'Lost'" in findings["BROKEN-2"]
        assert "settled without a settlement record" in findings["BROKEN-2"]
