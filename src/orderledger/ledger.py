"""Ledger service: wires stores, validation, allocation and settlement together."""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable

import structlog

from .allocator import RedemptionAllocator
from .certificate_store import CertificateStore
from .document_store import DocumentStore
from .errors import (
    CertificateExistsError,
    InvalidOrderError,
    LedgerError,
    OrderExistsError,
)
from .identifiers import generate_certificate_code, next_order_id
from .inventory import UNKNOWN, InventoryPort
from .models import (
    AllocationError,
    AllocationResult,
    GiftCertificate,
    Order,
    OrderItem,
    OrderStatus,
    SettlementResult,
    Totals,
    ValidationResult,
    format_timestamp,
    money_str,
    to_money,
)
from .notifications import (
    EmailPort,
    LogEmailAdapter,
    Notifier,
    certificate_message,
    order_confirmation_message,
)
from .orders import ORDERS, OrderWriter, certificate_sum
from .settings import Settings
from .settlement import CertificateSettlement
from .validator import Clock, CertificateValidator, utc_now

logger = structlog.get_logger(__name__)

# Attempts at a fresh ID when a concurrent writer takes the one we picked
ID_ATTEMPTS = 5

# Written at checkout and by settlement only
LEDGER_MANAGED_FIELDS = ("appliedCertificates", "settled", "settlement")


@dataclass
class CheckoutResult:
    """A created order plus the codes that could not be applied to it."""

    order: Order
    allocation_errors: list[AllocationError] = field(default_factory=list)

    @property
    def amount_due(self) -> Decimal:
        return self.order.amount_due

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.order.id,
            "order": self.order.to_dict(),
            "allocationErrors": [e.to_dict() for e in self.allocation_errors],
            "amountDue": money_str(self.amount_due),
        }


@dataclass
class AuditFinding:
    """Problems found on one stored order record."""

    order_id: str
    issues: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"orderId": self.order_id, "issues": self.issues}


def _parse_items(items: Any) -> list[OrderItem]:
    if not isinstance(items, list) or not items:
        raise InvalidOrderError("an order needs at least one item")
    try:
        return [OrderItem.from_dict(i) for i in items]
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise InvalidOrderError(f"items: {e}")


class Ledger:
    """Entry point for checkout, certificate issuance and order administration."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings | None = None,
        email: EmailPort | None = None,
        inventory: InventoryPort | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.clock = clock
        self.rng = rng or random.Random()
        self.inventory = inventory

        self.orders = OrderWriter(store)
        self.certificates = CertificateStore(store)
        self.validator = CertificateValidator(self.certificates, clock)
        self.allocator = RedemptionAllocator(self.validator)
        self.settlement = CertificateSettlement(
            self.orders,
            self.certificates,
            max_retries=self.settings.settlement_retries,
            clock=clock,
        )
        self.notifier = Notifier(email or LogEmailAdapter())

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "Ledger":
        """Create a Ledger over the data directory named in settings."""
        settings = settings or Settings.from_env()
        store = DocumentStore(settings.data_dir, lock_timeout=settings.lock_timeout)
        return cls(store, settings=settings, **kwargs)

    # --- Certificates ---

    def validate_certificate(self, code: str, amount: Any = None) -> ValidationResult:
        return self.validator.validate(code, amount)

    def preview_allocation(self, total: Any, codes: Iterable[str]) -> AllocationResult:
        """Show how codes would cover a total, without creating anything."""
        return self.allocator.allocate(total, codes)

    def get_certificate(self, code: str) -> GiftCertificate:
        return self.certificates.get(code)

    def list_certificates(
        self,
        state: str | None = None,
        recipient_email: str | None = None,
        purchase_order_id: str | None = None,
    ) -> list[GiftCertificate]:
        return self.certificates.list_certificates(
            self.clock(),
            state=state,
            recipient_email=recipient_email,
            purchase_order_id=purchase_order_id,
        )

    def issue_certificate(
        self,
        amount: Any,
        recipient_name: str | None = None,
        recipient_email: str | None = None,
        sender_name: str | None = None,
        message: str | None = None,
        purchase_order_id: str | None = None,
        expires: datetime | None = None,
    ) -> GiftCertificate:
        """
        Issue a new certificate with its full value available.

        The recipient is emailed when an address is given; a failed email
        does not undo the issuance.

        Raises:
            InvalidAmountError: If amount is not a positive number.
            CertificateExistsError: If no free code could be found.
        """
        now = self.clock()
        expires = expires or now + timedelta(days=self.settings.certificate_validity_days)

        for attempt in range(ID_ATTEMPTS):
            code = generate_certificate_code(
                self.certificates.codes(), issued=now, order_id=purchase_order_id, rng=self.rng
            )
            certificate = GiftCertificate.create(
                code,
                amount,
                issued=now,
                expires=expires,
                recipient_name=recipient_name,
                recipient_email=recipient_email,
                sender_name=sender_name,
                message=message,
                purchase_order_id=purchase_order_id,
            )
            try:
                certificate = self.certificates.add(certificate)
                break
            except CertificateExistsError:
                logger.info("certificate_code_taken", code=code, attempt=attempt)
                if attempt == ID_ATTEMPTS - 1:
                    raise

        logger.info(
            "certificate_issued",
            code=certificate.code,
            amount=money_str(certificate.initial_value),
            expires=certificate.date_expires,
        )
        email = certificate_message(certificate)
        if email is not None:
            self.notifier.dispatch(email)
        return certificate

    # --- Orders ---

    def get_order(self, order_id: str) -> Order:
        return self.orders.get_order(order_id)

    def get_order_revision(self, order_id: str) -> int:
        return self.orders.get_document(order_id).revision

    def list_orders(self, status: Any = None) -> list[Order]:
        parsed = OrderStatus.parse(status) if status else None
        return self.orders.list_orders(parsed)

    def checkout(
        self,
        customer: dict[str, Any],
        items: list[dict[str, Any]],
        certificate_codes: Iterable[str] = (),
        payment: dict[str, Any] | None = None,
        notes: str | None = None,
    ) -> CheckoutResult:
        """
        Create a Pending order from a cart.

        Totals are derived from the items. Certificates are allocated against
        the total but not yet decremented; that happens when the order is
        finalized. Codes that can't be used are returned rather than raised.

        Raises:
            InvalidOrderError: If the customer or items are malformed.
        """
        parsed_items = _parse_items(items)
        for item in parsed_items:
            item.inventory_status = (
                self.inventory.stock_status(item.id) if self.inventory is not None else UNKNOWN
            )

        totals = Totals.compute(parsed_items, self.settings.tax_rate)
        allocation = self.allocator.allocate(totals.total, certificate_codes)

        now = self.clock()
        fields: dict[str, Any] = {
            "createdAt": format_timestamp(now),
            "status": OrderStatus.PENDING.value,
            "customer": customer,
            "items": [i.to_dict() for i in parsed_items],
            "totals": totals.to_dict(),
            "appliedCertificates": [a.to_dict() for a in allocation.allocations],
        }
        if payment is not None:
            fields["payment"] = {**payment, "updatedAt": format_timestamp(now)}
        if notes is not None:
            fields["notes"] = notes

        for attempt in range(ID_ATTEMPTS):
            order_id = next_order_id(self.orders.order_ids(), now.year, rng=self.rng)
            try:
                order = self.orders.create_order({"id": order_id, **fields})
                break
            except OrderExistsError:
                logger.info("order_id_taken", order_id=order_id, attempt=attempt)
                if attempt == ID_ATTEMPTS - 1:
                    raise

        logger.info(
            "order_checked_out",
            order_id=order.id,
            total=money_str(totals.total),
            certificate_total=money_str(order.certificate_total),
            amount_due=money_str(order.amount_due),
        )
        return CheckoutResult(order=order, allocation_errors=allocation.errors)

    def update_order(
        self,
        order_id: str,
        fields: dict[str, Any],
        expected_revision: int | None = None,
    ) -> Order:
        """
        Merge an admin's partial update into an order.

        Raises:
            InvalidOrderError: If a field is unknown, malformed or managed by the ledger.
        """
        managed = sorted(set(fields) & set(LEDGER_MANAGED_FIELDS))
        if managed:
            raise InvalidOrderError(
                f"{', '.join(managed)} cannot be set directly", order_id
            )
        if isinstance(fields.get("payment"), dict):
            fields = dict(fields)
            fields["payment"] = {**fields["payment"], "updatedAt": format_timestamp(self.clock())}
        return self.orders.merge_update(order_id, fields, expected_revision=expected_revision)

    def update_status(
        self, order_id: str, status: Any, expected_revision: int | None = None
    ) -> Order:
        return self.update_order(order_id, {"status": status}, expected_revision)

    def update_payment(
        self,
        order_id: str,
        method: str,
        timing: str | None = None,
        expected_revision: int | None = None,
    ) -> Order:
        payment: dict[str, Any] = {"method": method}
        if timing is not None:
            payment["timing"] = timing
        return self.update_order(order_id, {"payment": payment}, expected_revision)

    def edit_items(self, order_id: str, items: list[dict[str, Any]]) -> Order:
        _parse_items(items)
        return self.orders.edit_items(order_id, items)

    def recalculate_totals(self, order_id: str) -> Order:
        return self.orders.recalculate_totals(order_id, self.settings.tax_rate)

    def finalize(self, order_id: str) -> SettlementResult:
        """
        Settle an order's certificates and confirm it to the customer.

        The confirmation goes out once, on the first complete settlement.
        """
        result = self.settlement.settle(order_id)
        if result.complete and not result.already_settled:
            email = order_confirmation_message(self.orders.get_order(order_id), result)
            if email is not None:
                self.notifier.dispatch(email)
        return result

    def audit_orders(self) -> list[AuditFinding]:
        """Report stored orders that are malformed or break an order invariant."""
        findings: list[AuditFinding] = []
        for doc in self.store.list_documents(ORDERS):
            data = doc.data
            issues: list[str] = []

            if not data.get("id"):
                issues.append("missing id")
            elif data["id"] != doc.key:
                issues.append(f"id {data['id']!r} does not match record key")
            if not data.get("createdAt"):
                issues.append("missing createdAt")

            customer = data.get("customer")
            if not customer:
                issues.append("missing customer")
            elif not isinstance(customer, dict) or not (
                customer.get("firstName") or customer.get("email")
            ):
                issues.append("customer has no name or email")

            if not data.get("items"):
                issues.append("missing or empty items")

            try:
                total = to_money((data.get("totals") or {}).get("total", 0))
                if total == 0:
                    issues.append("zero or missing total")
                elif certificate_sum(data) > total:
                    issues.append("applied certificates exceed total")
            except (AttributeError, KeyError, LedgerError):
                issues.append("unreadable totals or applied certificates")

            try:
                OrderStatus.parse(data.get("status"))
            except InvalidOrderError:
                issues.append(f"unknown status {data.get('status')!r}")

            if data.get("settled") and not data.get("settlement"):
                issues.append("settled without a settlement record")

            if issues:
                findings.append(AuditFinding(order_id=doc.key, issues=issues))

        logger.info("orders_audited", malformed=len(findings))
        return findings
