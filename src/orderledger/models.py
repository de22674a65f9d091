"""Data models for orderledger."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from .errors import InvalidAmountError, InvalidOrderError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def to_money(value: Any) -> Decimal:
    """
    Convert a number or numeric string to a non-negative amount in cents.

    Floats go through str() so 22.4 becomes 22.40, not its binary expansion.

    Raises:
        InvalidAmountError: If the value is not a finite, non-negative number.
    """
    if isinstance(value, bool):
        raise InvalidAmountError(value, "not a number")
    try:
        amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(value, "not a number")
    if not amount.is_finite():
        raise InvalidAmountError(value, "not a finite number")
    if amount < 0:
        raise InvalidAmountError(value, "must not be negative")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(amount: Decimal) -> str:
    """Format an amount the way it is persisted ("22.40")."""
    return str(amount.quantize(CENT, rounding=ROUND_HALF_UP))


def normalize_code(code: str) -> str:
    """Certificate codes are case-insensitive; store and compare upper case."""
    return code.strip().upper()


class OrderStatus(str, Enum):
    """Closed set of order statuses."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    SHIPPED = "Shipped"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        """
        Parse a status, accepting any letter case.

        Raises:
            InvalidOrderError: If the value is not a known status.
        """
        if isinstance(value, OrderStatus):
            return value
        if isinstance(value, str):
            for status in cls:
                if status.value.lower() == value.strip().lower():
                    return status
        allowed = ", ".join(s.value for s in cls)
        raise InvalidOrderError(f"unknown status {value!r} (expected one of {allowed})")

    @property
    def freezes_items(self) -> bool:
        """Terminal statuses freeze items and totals."""
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class RejectionReason(str, Enum):
    """Why a certificate code was not applied."""

    NOT_FOUND = "NotFound"
    EXPIRED = "Expired"
    EXHAUSTED = "Exhausted"
    DUPLICATE_CODE = "DuplicateCode"
    ORDER_FULLY_COVERED = "OrderFullyCovered"


# Models for orders


@dataclass
class Customer:
    """Customer contact details attached to an order."""

    first_name: str
    last_name: str
    email: str
    phone: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "phone": self.phone,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Customer":
        return cls(
            first_name=data["firstName"],
            last_name=data.get("lastName", ""),
            email=data["email"],
            phone=data.get("phone", ""),
        )


@dataclass
class OrderItem:
    """A line item; inventory_status is a snapshot taken at creation."""

    id: str
    name: str
    unit_price: Decimal
    quantity: int
    inventory_status: str | None = None

    @property
    def line_total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENT, rounding=ROUND_HALF_UP)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "unitPrice": money_str(self.unit_price),
            "quantity": self.quantity,
        }
        if self.inventory_status is not None:
            result["inventoryStatus"] = self.inventory_status
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        quantity = data["quantity"]
        if isinstance(quantity, bool) or int(quantity) != quantity or int(quantity) < 1:
            raise ValueError(f"invalid quantity {quantity!r}")
        return cls(
            id=str(data["id"]),
            name=data["name"],
            unit_price=to_money(data["unitPrice"]),
            quantity=int(quantity),
            inventory_status=data.get("inventoryStatus"),
        )


@dataclass
class Totals:
    """Order totals derived from items."""

    subtotal: Decimal
    tax: Decimal
    total: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtotal": money_str(self.subtotal),
            "tax": money_str(self.tax),
            "total": money_str(self.total),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Totals":
        return cls(
            subtotal=to_money(data["subtotal"]),
            tax=to_money(data.get("tax", 0)),
            total=to_money(data["total"]),
        )

    @classmethod
    def compute(cls, items: list[OrderItem], tax_rate: Decimal) -> "Totals":
        """Derive totals from line items at the given combined tax rate."""
        subtotal = sum((item.line_total for item in items), ZERO)
        tax = (subtotal * tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)
        return cls(subtotal=subtotal, tax=tax, total=subtotal + tax)


@dataclass
class AppliedCertificate:
    """Amount of one certificate applied to an order at checkout."""

    code: str
    applied_amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "appliedAmount": money_str(self.applied_amount)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppliedCertificate":
        return cls(
            code=normalize_code(data["code"]),
            applied_amount=to_money(data["appliedAmount"]),
        )


@dataclass
class Payment:
    """Payment details attached to an order after creation."""

    method: str
    timing: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"method": self.method}
        if self.timing is not None:
            result["timing"] = self.timing
        if self.updated_at is not None:
            result["updatedAt"] = self.updated_at
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Payment":
        if not data.get("method"):
            raise ValueError("payment method is required")
        return cls(
            method=data["method"],
            timing=data.get("timing"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class Order:
    """A customer's purchase record."""

    id: str
    status: OrderStatus
    customer: Customer | None
    items: list[OrderItem]
    totals: Totals | None
    applied_certificates: list[AppliedCertificate] = field(default_factory=list)
    payment: Payment | None = None
    notes: str | None = None
    created_at: str = field(default_factory=_utc_now)
    settled: bool = False
    settlement: dict[str, Any] | None = None

    @property
    def certificate_total(self) -> Decimal:
        return sum((c.applied_amount for c in self.applied_certificates), ZERO)

    @property
    def amount_due(self) -> Decimal:
        """What remains payable by other means after certificates."""
        if self.totals is None:
            return ZERO
        return max(self.totals.total - self.certificate_total, ZERO)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "createdAt": self.created_at,
            "status": self.status.value,
            "items": [i.to_dict() for i in self.items],
            "appliedCertificates": [c.to_dict() for c in self.applied_certificates],
            "settled": self.settled,
        }
        if self.customer is not None:
            result["customer"] = self.customer.to_dict()
        if self.totals is not None:
            result["totals"] = self.totals.to_dict()
        if self.payment is not None:
            result["payment"] = self.payment.to_dict()
        if self.notes is not None:
            result["notes"] = self.notes
        if self.settlement is not None:
            result["settlement"] = self.settlement
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        customer = None
        if data.get("customer"):
            customer = Customer.from_dict(data["customer"])
        totals = None
        if data.get("totals"):
            totals = Totals.from_dict(data["totals"])
        payment = None
        if data.get("payment"):
            payment = Payment.from_dict(data["payment"])
        return cls(
            id=data["id"],
            status=OrderStatus.parse(data.get("status", OrderStatus.PENDING.value)),
            customer=customer,
            items=[OrderItem.from_dict(i) for i in data.get("items", [])],
            totals=totals,
            applied_certificates=[
                AppliedCertificate.from_dict(c) for c in data.get("appliedCertificates", [])
            ],
            payment=payment,
            notes=data.get("notes"),
            created_at=data.get("createdAt", ""),
            settled=bool(data.get("settled", False)),
            settlement=data.get("settlement"),
        )


# Models for gift certificates


@dataclass
class Redemption:
    """One settled decrement of a certificate balance."""

    order_id: str
    amount: Decimal
    date: str
    balance_after: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "amount": money_str(self.amount),
            "date": self.date,
            "balanceAfter": money_str(self.balance_after),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Redemption":
        return cls(
            order_id=data["orderId"],
            amount=to_money(data["amount"]),
            date=data.get("date", ""),
            balance_after=to_money(data["balanceAfter"]),
        )


@dataclass
class GiftCertificate:
    """A prepaid, balance-bearing credit instrument."""

    code: str
    initial_value: Decimal
    remaining_balance: Decimal
    date_issued: str
    date_expires: str
    recipient_name: str | None = None
    recipient_email: str | None = None
    sender_name: str | None = None
    message: str | None = None
    purchase_order_id: str | None = None
    redemptions: list[Redemption] = field(default_factory=list)

    def is_expired(self, now: datetime) -> bool:
        return now > parse_timestamp(self.date_expires)

    def state(self, now: datetime) -> str:
        """active, partially-redeemed, fully-redeemed or expired."""
        if self.remaining_balance <= 0:
            return "fully-redeemed"
        if self.is_expired(now):
            return "expired"
        if self.remaining_balance < self.initial_value:
            return "partially-redeemed"
        return "active"

    def redemption_for(self, order_id: str) -> Redemption | None:
        for redemption in self.redemptions:
            if redemption.order_id == order_id:
                return redemption
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.code,
            "initialValue": money_str(self.initial_value),
            "remainingBalance": money_str(self.remaining_balance),
            "dateIssued": self.date_issued,
            "dateExpires": self.date_expires,
            "redemptions": [r.to_dict() for r in self.redemptions],
        }
        if self.recipient_name is not None:
            result["recipientName"] = self.recipient_name
        if self.recipient_email is not None:
            result["recipientEmail"] = self.recipient_email
        if self.sender_name is not None:
            result["senderName"] = self.sender_name
        if self.message is not None:
            result["message"] = self.message
        if self.purchase_order_id is not None:
            result["purchaseOrderId"] = self.purchase_order_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GiftCertificate":
        return cls(
            code=normalize_code(data["code"]),
            initial_value=to_money(data["initialValue"]),
            remaining_balance=to_money(data["remainingBalance"]),
            date_issued=data.get("dateIssued", ""),
            date_expires=data["dateExpires"],
            recipient_name=data.get("recipientName"),
            recipient_email=data.get("recipientEmail"),
            sender_name=data.get("senderName"),
            message=data.get("message"),
            purchase_order_id=data.get("purchaseOrderId"),
            redemptions=[Redemption.from_dict(r) for r in data.get("redemptions", [])],
        )

    @classmethod
    def create(
        cls,
        code: str,
        amount: Decimal,
        issued: datetime,
        expires: datetime,
        recipient_name: str | None = None,
        recipient_email: str | None = None,
        sender_name: str | None = None,
        message: str | None = None,
        purchase_order_id: str | None = None,
    ) -> "GiftCertificate":
        """Create a new certificate with its full value available."""
        value = to_money(amount)
        if value <= 0:
            raise InvalidAmountError(amount, "certificate value must be positive")
        return cls(
            code=normalize_code(code),
            initial_value=value,
            remaining_balance=value,
            date_issued=format_timestamp(issued),
            date_expires=format_timestamp(expires),
            recipient_name=recipient_name,
            recipient_email=recipient_email,
            sender_name=sender_name,
            message=message,
            purchase_order_id=purchase_order_id,
        )


# Models for validation, allocation and settlement results


@dataclass
class ValidationResult:
    """Outcome of validating one certificate code."""

    code: str
    valid: bool
    available_balance: Decimal
    reason: RejectionReason | None = None
    requested_amount: Decimal | None = None
    certificate: GiftCertificate | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.code,
            "valid": self.valid,
            "availableBalance": money_str(self.available_balance),
            "reason": self.reason.value if self.reason else None,
        }
        if self.requested_amount is not None:
            result["requestedAmount"] = money_str(self.requested_amount)
        return result


@dataclass
class AllocationError:
    """A code that contributed nothing to an allocation, and why."""

    code: str
    reason: RejectionReason

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "reason": self.reason.value}


@dataclass
class AllocationResult:
    """How a batch of certificate codes covers an order total."""

    requested_total: Decimal
    allocations: list[AppliedCertificate]
    errors: list[AllocationError]

    @property
    def applied_total(self) -> Decimal:
        return sum((a.applied_amount for a in self.allocations), ZERO)

    @property
    def remaining_total(self) -> Decimal:
        return self.requested_total - self.applied_total

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestedTotal": money_str(self.requested_total),
            "allocations": [a.to_dict() for a in self.allocations],
            "errors": [e.to_dict() for e in self.errors],
            "appliedTotal": money_str(self.applied_total),
            "remainingTotal": money_str(self.remaining_total),
        }


# Settlement entry statuses
SETTLED = "settled"
ALREADY_SETTLED = "already-settled"
SHORTFALL = "shortfall"
FAILED = "failed"


@dataclass
class SettlementEntry:
    """Settlement outcome for one applied certificate."""

    code: str
    applied_amount: Decimal
    settled_amount: Decimal
    status: str  # settled | already-settled | shortfall | failed
    balance_after: Decimal | None = None
    error: str | None = None

    @property
    def shortfall(self) -> Decimal:
        return self.applied_amount - self.settled_amount

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.code,
            "appliedAmount": money_str(self.applied_amount),
            "settledAmount": money_str(self.settled_amount),
            "status": self.status,
        }
        if self.balance_after is not None:
            result["balanceAfter"] = money_str(self.balance_after)
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SettlementEntry":
        balance_after = None
        if data.get("balanceAfter") is not None:
            balance_after = to_money(data["balanceAfter"])
        return cls(
            code=data["code"],
            applied_amount=to_money(data["appliedAmount"]),
            settled_amount=to_money(data["settledAmount"]),
            status=data["status"],
            balance_after=balance_after,
            error=data.get("error"),
        )


@dataclass
class SettlementResult:
    """Result of settling an order's applied certificates."""

    order_id: str
    entries: list[SettlementEntry]
    settled_at: str
    needs_reconciliation: bool = False
    already_settled: bool = False

    @property
    def complete(self) -> bool:
        """False when any certificate write failed and settlement must be re-run."""
        return all(e.status != FAILED for e in self.entries)

    @property
    def settled_total(self) -> Decimal:
        return sum((e.settled_amount for e in self.entries), ZERO)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "entries": [e.to_dict() for e in self.entries],
            "settledAt": self.settled_at,
            "settledTotal": money_str(self.settled_total),
            "needsReconciliation": self.needs_reconciliation,
            "alreadySettled": self.already_settled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SettlementResult":
        return cls(
            order_id=data["orderId"],
            entries=[SettlementEntry.from_dict(e) for e in data.get("entries", [])],
            settled_at=data.get("settledAt", ""),
            needs_reconciliation=data.get("needsReconciliation", False),
            already_settled=data.get("alreadySettled", False),
        )
