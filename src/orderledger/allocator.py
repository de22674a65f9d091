"""Redemption allocation: how a batch of certificate codes covers an order."""

from typing import Any, Iterable

import structlog

from .models import (
    AllocationError,
    AllocationResult,
    AppliedCertificate,
    RejectionReason,
    normalize_code,
    to_money,
)
from .validator import CertificateValidator

logger = structlog.get_logger(__name__)


class RedemptionAllocator:
    """Computes certificate allocations without touching stored balances."""

    def __init__(self, validator: CertificateValidator):
        self.validator = validator

    def allocate(self, order_remaining_total: Any, codes: Iterable[str]) -> AllocationResult:
        """
        Allocate certificate balances against an order total.

        Codes are processed in the order given, so earlier codes win when the
        order balance is scarce. A code that cannot be used is reported in
        ``errors`` and skipped; the rest of the batch still applies.

        Raises:
            InvalidAmountError: If the order total is negative or not a number.
        """
        total = to_money(order_remaining_total)
        remaining = total
        seen: set[str] = set()
        allocations: list[AppliedCertificate] = []
        errors: list[AllocationError] = []

        for raw_code in codes:
            code = normalize_code(raw_code or "")

            if code in seen:
                errors.append(AllocationError(code=code, reason=RejectionReason.DUPLICATE_CODE))
                continue
            seen.add(code)

            if remaining <= 0:
                errors.append(
                    AllocationError(code=code, reason=RejectionReason.ORDER_FULLY_COVERED)
                )
                continue

            validation = self.validator.validate(code)
            if not validation.valid:
                errors.append(AllocationError(code=code, reason=validation.reason))
                continue

            applied = min(validation.available_balance, remaining)
            remaining -= applied
            allocations.append(AppliedCertificate(code=validation.code, applied_amount=applied))

        result = AllocationResult(requested_total=total, allocations=allocations, errors=errors)
        logger.info(
            "certificates_allocated",
            requested_total=str(total),
            applied_total=str(result.applied_total),
            allocated=[a.code for a in allocations],
            rejected=[(e.code, e.reason.value) for e in errors],
        )
        return result
