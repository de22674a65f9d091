"""Gift certificate validation."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from .certificate_store import CertificateStore
from .models import ZERO, RejectionReason, ValidationResult, normalize_code, to_money

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CertificateValidator:
    """
    Decides whether a certificate code can be redeemed right now.

    Validation is a pure read: it never reserves or decrements a balance, so
    it is safe to call any number of times. Business-rule failures come back
    as a result with a reason rather than as exceptions.
    """

    def __init__(self, certificates: CertificateStore, clock: Clock = utc_now):
        self.certificates = certificates
        self.clock = clock

    def validate(self, code: str, requested_amount: Any = None) -> ValidationResult:
        """
        Validate a code.

        Args:
            code: Certificate code, any letter case.
            requested_amount: Informational only; echoed back in the result.

        Returns:
            ValidationResult with reason NotFound, Expired or Exhausted when invalid,
            and available_balance set to the remaining balance when valid.
        """
        requested: Decimal | None = None
        if requested_amount is not None:
            requested = to_money(requested_amount)

        normalized = normalize_code(code or "")
        certificate = self.certificates.find(normalized) if normalized else None

        if certificate is None:
            return ValidationResult(
                code=normalized,
                valid=False,
                available_balance=ZERO,
                reason=RejectionReason.NOT_FOUND,
                requested_amount=requested,
            )

        if certificate.is_expired(self.clock()):
            return ValidationResult(
                code=certificate.code,
                valid=False,
                available_balance=ZERO,
                reason=RejectionReason.EXPIRED,
                requested_amount=requested,
                certificate=certificate,
            )

        if certificate.remaining_balance <= 0:
            return ValidationResult(
                code=certificate.code,
                valid=False,
                available_balance=ZERO,
                reason=RejectionReason.EXHAUSTED,
                requested_amount=requested,
                certificate=certificate,
            )

        return ValidationResult(
            code=certificate.code,
            valid=True,
            available_balance=certificate.remaining_balance,
            requested_amount=requested,
            certificate=certificate,
        )
