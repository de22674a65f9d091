"""Order storage: the merge-writer and the read side.

Every order write goes through ``OrderWriter.merge_update`` semantics: only the
top-level fields supplied are replaced, all others stay exactly as stored.
Creation is the same merge applied onto an empty document. There is no
whole-document replace for orders.
"""

from decimal import Decimal
from typing import Any

import structlog

from .document_store import Document, DocumentStore
from .errors import (
    ConflictingFinalizeError,
    DocumentExistsError,
    DocumentNotFoundError,
    InvalidOrderError,
    LedgerError,
    OrderExistsError,
    OrderNotFoundError,
)
from .models import (
    ZERO,
    AppliedCertificate,
    Customer,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    Totals,
    to_money,
)

logger = structlog.get_logger(__name__)

ORDERS = "orders"

# Fields an order terminal status freezes
FROZEN_FIELDS = ("items", "totals")

# Completed and Cancelled are terminal: the status itself is frozen too
TERMINAL_FIELDS = FROZEN_FIELDS + ("status",)
REQUIRED_ON_CREATE = ("status", "customer", "items", "totals")


def _normalize_items(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        raise TypeError("expected a list of items")
    return [OrderItem.from_dict(i).to_dict() for i in value]


def _normalize_applied(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        raise TypeError("expected a list of applied certificates")
    return [AppliedCertificate.from_dict(c).to_dict() for c in value]


def _normalize_customer(value: Any) -> dict[str, Any]:
    if value is None:
        raise ValueError("customer cannot be cleared")
    return Customer.from_dict(value).to_dict()


def _normalize_payment(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    return Payment.from_dict(value).to_dict()


def _normalize_text(value: Any) -> str | None:
    if value is not None and not isinstance(value, str):
        raise TypeError("expected text")
    return value


def _normalize_flag(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError("expected true or false")
    return value


def _normalize_settlement(value: Any) -> dict[str, Any] | None:
    if value is not None and not isinstance(value, dict):
        raise TypeError("expected an object")
    return value


_NORMALIZERS = {
    "status": lambda v: OrderStatus.parse(v).value,
    "customer": _normalize_customer,
    "items": _normalize_items,
    "totals": lambda v: Totals.from_dict(v).to_dict(),
    "appliedCertificates": _normalize_applied,
    "payment": _normalize_payment,
    "notes": _normalize_text,
    "createdAt": _normalize_text,
    "settled": _normalize_flag,
    "settlement": _normalize_settlement,
}

MERGEABLE_FIELDS = frozenset(_NORMALIZERS)


def normalize_fields(fields: dict[str, Any], order_id: str | None = None) -> dict[str, Any]:
    """
    Validate supplied order fields and convert them to their stored form.

    Raises:
        InvalidOrderError: On an unknown field, an attempt to change the ID,
            or a value that doesn't fit its field.
    """
    normalized: dict[str, Any] = {}
    for name, value in fields.items():
        if name == "id":
            raise InvalidOrderError("id cannot be changed", order_id)
        normalizer = _NORMALIZERS.get(name)
        if normalizer is None:
            raise InvalidOrderError(f"unknown field {name!r}", order_id)
        try:
            normalized[name] = normalizer(value)
        except InvalidOrderError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidOrderError(f"{name}: {e}", order_id)
    return normalized


def certificate_sum(data: dict[str, Any]) -> Decimal:
    return sum(
        (to_money(c["appliedAmount"]) for c in data.get("appliedCertificates") or []),
        ZERO,
    )


class OrderWriter:
    """Creates, reads and merge-updates order records."""

    def __init__(self, store: DocumentStore):
        self.store = store

    # --- Read side ---

    def get_document(self, order_id: str) -> Document:
        """
        Get the raw order document with its revision.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
        """
        try:
            return self.store.get(ORDERS, order_id)
        except DocumentNotFoundError:
            raise OrderNotFoundError(order_id)

    def get_order(self, order_id: str) -> Order:
        return Order.from_dict(self.get_document(order_id).data)

    def order_ids(self) -> list[str]:
        return self.store.keys(ORDERS)

    def list_documents(self) -> list[Document]:
        return self.store.list_documents(ORDERS)

    def list_orders(self, status: OrderStatus | None = None) -> list[Order]:
        """List well-formed orders, newest first. Malformed records are skipped (see audit)."""
        orders: list[Order] = []
        for doc in self.list_documents():
            try:
                order = Order.from_dict(doc.data)
            except (KeyError, TypeError, ValueError, LedgerError) as e:
                logger.warning("order_unreadable", order_id=doc.key, error=str(e))
                continue
            if status is None or order.status == status:
                orders.append(order)
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    # --- Write side ---

    def _precondition(self, order_id: str, supplied: dict[str, Any]):
        """Build the check run against the stored and merged record inside the lock."""

        def check(current: dict[str, Any] | None, merged: dict[str, Any]) -> None:
            if current is not None:
                status = OrderStatus.parse(current.get("status", OrderStatus.PENDING.value))
                if status.freezes_items:
                    touched = [
                        name
                        for name in TERMINAL_FIELDS
                        if name in supplied and supplied[name] != current.get(name)
                    ]
                    if touched:
                        raise ConflictingFinalizeError(order_id, status.value, touched)

            total = to_money((merged.get("totals") or {}).get("total", 0))
            applied = certificate_sum(merged)
            if applied > total:
                raise InvalidOrderError(
                    f"applied certificates ({applied}) exceed order total ({total})",
                    order_id,
                )

        return check

    def create_order(self, fields: dict[str, Any]) -> Order:
        """
        Create an order by merging the full record onto an empty document.

        Args:
            fields: Complete order fields including "id".

        Raises:
            InvalidOrderError: If required fields are missing or malformed.
            OrderExistsError: If the ID is already taken.
        """
        order_id = fields.get("id")
        if not order_id or not isinstance(order_id, str):
            raise InvalidOrderError("id is required")
        missing = [name for name in REQUIRED_ON_CREATE if name not in fields]
        if missing:
            raise InvalidOrderError(f"missing {', '.join(missing)}", order_id)

        data = {"id": order_id}
        data.update(normalize_fields({k: v for k, v in fields.items() if k != "id"}, order_id))
        data.setdefault("appliedCertificates", [])
        data.setdefault("settled", False)

        try:
            doc = self.store.merge(
                ORDERS,
                order_id,
                data,
                create=True,
                precondition=self._precondition(order_id, data),
            )
        except DocumentExistsError:
            raise OrderExistsError(order_id)
        except DocumentNotFoundError:
            # Only raised for keys that can't name a document
            raise InvalidOrderError("malformed id", order_id)

        logger.info("order_created", order_id=order_id, revision=doc.revision)
        return Order.from_dict(doc.data)

    def merge_update(
        self,
        order_id: str,
        partial_fields: dict[str, Any],
        expected_revision: int | None = None,
        expect: dict[str, Any] | None = None,
    ) -> Order:
        """
        Apply a partial update to an order.

        Only the top-level keys in partial_fields are replaced; every other
        field keeps its stored value.

        Args:
            order_id: Order ID.
            partial_fields: Top-level fields to replace.
            expected_revision: Only apply if the stored revision matches.
            expect: Only apply if each named stored field holds the given value.

        Returns:
            The updated Order.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            ConflictingFinalizeError: If items, totals or status change on a
                Completed or Cancelled order.
            RevisionMismatchError: If expected_revision is stale.
            FieldMismatchError: If a field named in expect holds another value.
            InvalidOrderError: If a field is unknown or malformed.
        """
        if not partial_fields:
            raise InvalidOrderError("no fields to update", order_id)
        normalized = normalize_fields(partial_fields, order_id)

        try:
            doc = self.store.merge(
                ORDERS,
                order_id,
                normalized,
                expected_revision=expected_revision,
                expect=expect,
                precondition=self._precondition(order_id, normalized),
            )
        except DocumentNotFoundError:
            raise OrderNotFoundError(order_id)

        logger.info(
            "order_merged", order_id=order_id, fields=sorted(normalized), revision=doc.revision
        )
        return Order.from_dict(doc.data)

    def edit_items(self, order_id: str, items: list[dict[str, Any]]) -> Order:
        """Replace an order's items. Totals are left alone until recalculated."""
        return self.merge_update(order_id, {"items": items})

    def recalculate_totals(self, order_id: str, tax_rate: Decimal) -> Order:
        """
        Recompute totals from the current items.

        Conditional on the revision the items were read at, so an item edit
        racing with the recalculation is not silently priced against stale items.
        """
        doc = self.get_document(order_id)
        order = Order.from_dict(doc.data)
        totals = Totals.compute(order.items, tax_rate)
        return self.merge_update(
            order_id, {"totals": totals.to_dict()}, expected_revision=doc.revision
        )
