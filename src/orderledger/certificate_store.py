"""Gift certificate storage for orderledger."""

from datetime import datetime
from decimal import Decimal

from .document_store import DocumentStore
from .errors import (
    BalanceConflictError,
    CertificateExistsError,
    CertificateNotFoundError,
    DocumentExistsError,
    DocumentNotFoundError,
    FieldMismatchError,
    RevisionMismatchError,
)
from .models import GiftCertificate, Redemption, money_str, normalize_code, to_money

CERTIFICATES = "certificates"


class CertificateStore:
    """Reads and writes certificate records; holds no business rules."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def exists(self, code: str) -> bool:
        return self.store.exists(CERTIFICATES, normalize_code(code))

    def find(self, code: str) -> GiftCertificate | None:
        """Get a certificate by code (any case), or None."""
        normalized = normalize_code(code)
        if not normalized:
            return None
        doc = self.store.find(CERTIFICATES, normalized)
        if doc is None:
            return None
        return GiftCertificate.from_dict(doc.data)

    def get(self, code: str) -> GiftCertificate:
        """
        Get a certificate by code (any case).

        Raises:
            CertificateNotFoundError: If no certificate has this code.
        """
        certificate = self.find(code)
        if certificate is None:
            raise CertificateNotFoundError(code)
        return certificate

    def codes(self) -> list[str]:
        return self.store.keys(CERTIFICATES)

    def list_certificates(
        self,
        now: datetime,
        state: str | None = None,
        recipient_email: str | None = None,
        purchase_order_id: str | None = None,
    ) -> list[GiftCertificate]:
        """
        List certificates, newest first.

        Args:
            now: Reference time for the state filter.
            state: active, partially-redeemed, fully-redeemed or expired.
            recipient_email: Only certificates sent to this address.
            purchase_order_id: Only certificates bought by this order.
        """
        certificates = [
            GiftCertificate.from_dict(doc.data)
            for doc in self.store.list_documents(CERTIFICATES)
        ]
        if state:
            certificates = [c for c in certificates if c.state(now) == state]
        if recipient_email:
            wanted = recipient_email.lower()
            certificates = [
                c for c in certificates if (c.recipient_email or "").lower() == wanted
            ]
        if purchase_order_id:
            certificates = [c for c in certificates if c.purchase_order_id == purchase_order_id]
        certificates.sort(key=lambda c: c.date_issued, reverse=True)
        return certificates

    def add(self, certificate: GiftCertificate) -> GiftCertificate:
        """
        Store a newly issued certificate.

        Raises:
            CertificateExistsError: If the code is already taken.
        """
        try:
            doc = self.store.create(CERTIFICATES, certificate.code, certificate.to_dict())
        except DocumentExistsError:
            raise CertificateExistsError(certificate.code)
        return GiftCertificate.from_dict(doc.data)

    def compare_and_set_balance(
        self,
        code: str,
        expected_balance: Decimal,
        new_balance: Decimal,
        redemption: Redemption,
    ) -> GiftCertificate:
        """
        Atomically move the balance from expected_balance to new_balance.

        The redemption record is appended in the same write.

        Raises:
            CertificateNotFoundError: If no certificate has this code.
            BalanceConflictError: If the stored balance is not expected_balance.
        """
        normalized = normalize_code(code)
        try:
            current = self.store.get(CERTIFICATES, normalized)
        except DocumentNotFoundError:
            raise CertificateNotFoundError(code)

        redemptions = list(current.data.get("redemptions", []))
        redemptions.append(redemption.to_dict())
        try:
            doc = self.store.merge(
                CERTIFICATES,
                normalized,
                {"remainingBalance": money_str(new_balance), "redemptions": redemptions},
                expected_revision=current.revision,
                expect={"remainingBalance": money_str(expected_balance)},
            )
        except FieldMismatchError as e:
            found = to_money(e.found) if e.found is not None else Decimal("0.00")
            raise BalanceConflictError(normalized, expected_balance, found)
        except RevisionMismatchError:
            # Redemptions were appended under us; the caller re-reads and retries
            latest = self.get(normalized)
            raise BalanceConflictError(normalized, expected_balance, latest.remaining_balance)
        return GiftCertificate.from_dict(doc.data)
