"""Certificate settlement: turning an order's applied certificates into real decrements."""

from datetime import datetime

import structlog

from .certificate_store import CertificateStore
from .errors import (
    BalanceConflictError,
    CertificateNotFoundError,
    FieldMismatchError,
    InsufficientBalanceError,
    OrderCancelledError,
    TransientError,
)
from .models import (
    ALREADY_SETTLED,
    FAILED,
    SETTLED,
    SHORTFALL,
    ZERO,
    AppliedCertificate,
    OrderStatus,
    Redemption,
    SettlementEntry,
    SettlementResult,
    format_timestamp,
)
from .orders import OrderWriter
from .validator import Clock, utc_now

logger = structlog.get_logger(__name__)


class CertificateSettlement:
    """
    Settles orders against certificate balances.

    Each certificate is decremented with a compare-and-set on its balance and
    the decrement is recorded as a redemption keyed by order ID in the same
    write. A certificate that already holds a redemption for the order is
    left alone, so settlement can be re-run after a partial failure without
    charging anything twice.
    """

    def __init__(
        self,
        orders: OrderWriter,
        certificates: CertificateStore,
        max_retries: int = 5,
        clock: Clock = utc_now,
    ):
        self.orders = orders
        self.certificates = certificates
        self.max_retries = max_retries
        self.clock = clock

    def settle(self, order_id: str) -> SettlementResult:
        """
        Settle every certificate applied to an order.

        Args:
            order_id: Order to settle.

        Returns:
            SettlementResult. When the order was settled before, the stored
            result is returned with already_settled set and nothing is decremented.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            OrderCancelledError: If the order is cancelled before it was settled.
        """
        order = self.orders.get_order(order_id)
        if order.settled:
            return self._prior_result(order_id)
        if order.status == OrderStatus.CANCELLED:
            raise OrderCancelledError(order_id)

        now = self.clock()
        entries: list[SettlementEntry] = []
        for applied in order.applied_certificates:
            try:
                entry = self._settle_certificate(order_id, applied, now)
            except InsufficientBalanceError as e:
                logger.warning(
                    "settlement_shortfall",
                    order_id=order_id,
                    code=e.code,
                    requested=str(e.requested),
                    settled=str(e.settled),
                    shortfall=str(e.shortfall),
                )
                entry = SettlementEntry(
                    code=e.code,
                    applied_amount=e.requested,
                    settled_amount=e.settled,
                    status=SHORTFALL,
                    balance_after=ZERO,
                    error=str(e),
                )
            except CertificateNotFoundError as e:
                logger.warning("settlement_certificate_missing", order_id=order_id, code=e.code)
                entry = SettlementEntry(
                    code=applied.code,
                    applied_amount=applied.applied_amount,
                    settled_amount=ZERO,
                    status=SHORTFALL,
                    error=str(e),
                )
            except TransientError as e:
                logger.error(
                    "settlement_write_failed", order_id=order_id, code=applied.code, error=str(e)
                )
                entry = SettlementEntry(
                    code=applied.code,
                    applied_amount=applied.applied_amount,
                    settled_amount=ZERO,
                    status=FAILED,
                    error=str(e),
                )
            entries.append(entry)

        result = SettlementResult(
            order_id=order_id,
            entries=entries,
            settled_at=format_timestamp(now),
            needs_reconciliation=any(e.status == FAILED or e.shortfall > 0 for e in entries),
        )

        if not result.complete:
            logger.error(
                "settlement_incomplete",
                order_id=order_id,
                failed=[e.code for e in entries if e.status == FAILED],
            )
            return result

        try:
            self.orders.merge_update(
                order_id,
                {"settled": True, "settlement": result.to_dict()},
                expect={"settled": False},
            )
        except FieldMismatchError:
            # Another settlement of this order finished first
            return self._prior_result(order_id)

        logger.info(
            "order_settled",
            order_id=order_id,
            settled_total=str(result.settled_total),
            needs_reconciliation=result.needs_reconciliation,
        )
        return result

    def _prior_result(self, order_id: str) -> SettlementResult:
        order = self.orders.get_order(order_id)
        if order.settlement:
            result = SettlementResult.from_dict(order.settlement)
        else:
            result = SettlementResult(order_id=order_id, entries=[], settled_at="")
        result.already_settled = True
        logger.info("order_already_settled", order_id=order_id)
        return result

    def _settle_certificate(
        self, order_id: str, applied: AppliedCertificate, now: datetime
    ) -> SettlementEntry:
        """
        Decrement one certificate for one order.

        Raises:
            InsufficientBalanceError: After settling what was available, when
                the balance could not cover the applied amount.
            CertificateNotFoundError: If the certificate no longer exists.
        """
        for attempt in range(self.max_retries + 1):
            certificate = self.certificates.get(applied.code)

            prior = certificate.redemption_for(order_id)
            if prior is not None:
                return SettlementEntry(
                    code=certificate.code,
                    applied_amount=applied.applied_amount,
                    settled_amount=prior.amount,
                    status=ALREADY_SETTLED,
                    balance_after=prior.balance_after,
                )

            balance = certificate.remaining_balance
            amount = min(applied.applied_amount, balance)
            new_balance = balance - amount
            redemption = Redemption(
                order_id=order_id,
                amount=amount,
                date=format_timestamp(now),
                balance_after=new_balance,
            )
            try:
                self.certificates.compare_and_set_balance(
                    certificate.code, balance, new_balance, redemption
                )
            except BalanceConflictError as e:
                logger.debug(
                    "settlement_retry",
                    order_id=order_id,
                    code=certificate.code,
                    attempt=attempt,
                    error=str(e),
                )
                continue

            logger.info(
                "certificate_settled",
                order_id=order_id,
                code=certificate.code,
                amount=str(amount),
                balance_after=str(new_balance),
            )
            if amount < applied.applied_amount:
                raise InsufficientBalanceError(certificate.code, applied.applied_amount, amount)
            return SettlementEntry(
                code=certificate.code,
                applied_amount=applied.applied_amount,
                settled_amount=amount,
                status=SETTLED,
                balance_after=new_balance,
            )

        logger.error(
            "settlement_retries_exhausted",
            order_id=order_id,
            code=applied.code,
            retries=self.max_retries,
        )
        return SettlementEntry(
            code=applied.code,
            applied_amount=applied.applied_amount,
            settled_amount=ZERO,
            status=FAILED,
            error=f"balance kept changing after {self.max_retries} retries",
        )
