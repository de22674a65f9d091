"""Email notifications emitted by the ledger.

The ledger only builds messages and hands them to an ``EmailPort``. Rendering
and delivery belong to the adapter. A delivery failure is logged and never
undoes the ledger write that triggered it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import structlog

from .models import GiftCertificate, Order, SettlementResult, money_str

logger = structlog.get_logger(__name__)

CERTIFICATE_TEMPLATE = "gift-certificate"
ORDER_CONFIRMATION_TEMPLATE = "order-confirmation"


@dataclass
class EmailMessage:
    """An email to be rendered from a named template."""

    to: str
    subject: str
    template: str
    template_data: dict[str, Any] = field(default_factory=dict)


class EmailPort(ABC):
    """Abstract interface for email dispatch adapters."""

    @abstractmethod
    def send(self, message: EmailMessage) -> dict:
        """Send an email message.

        Returns:
            dict with keys: message_id, status ("sent" or "failed"), error (optional)
        """
        ...


class MemoryEmailAdapter(EmailPort):
    """Email adapter that records messages in memory."""

    def __init__(self):
        self.sent: list[EmailMessage] = []
        self.should_succeed = True
        self.failure_reason = "Email delivery failed"

    def configure(self, should_succeed: bool = True, failure_reason: str = "Email delivery failed"):
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def send(self, message: EmailMessage) -> dict:
        if not self.should_succeed:
            return {"message_id": None, "status": "failed", "error": self.failure_reason}
        self.sent.append(message)
        return {"message_id": f"email-{uuid4().hex[:12]}", "status": "sent"}

    def reset(self):
        self.sent.clear()
        self.should_succeed = True
        self.failure_reason = "Email delivery failed"


class LogEmailAdapter(EmailPort):
    """Email adapter that writes each message to the log instead of sending it."""

    def send(self, message: EmailMessage) -> dict:
        message_id = f"email-{uuid4().hex[:12]}"
        logger.info(
            "email_logged",
            message_id=message_id,
            to=message.to,
            subject=message.subject,
            template=message.template,
        )
        return {"message_id": message_id, "status": "sent"}


class Notifier:
    """Fire-and-forget dispatch over an EmailPort."""

    def __init__(self, port: EmailPort):
        self.port = port

    def dispatch(self, message: EmailMessage) -> bool:
        """Send a message; returns False on failure instead of raising."""
        try:
            outcome = self.port.send(message)
        except Exception as e:
            logger.warning(
                "email_failed", to=message.to, template=message.template, error=str(e)
            )
            return False
        if outcome.get("status") != "sent":
            logger.warning(
                "email_failed",
                to=message.to,
                template=message.template,
                error=outcome.get("error"),
            )
            return False
        logger.info(
            "email_sent",
            to=message.to,
            template=message.template,
            message_id=outcome.get("message_id"),
        )
        return True


def certificate_message(certificate: GiftCertificate) -> EmailMessage | None:
    """Build the email delivering a newly issued certificate, if it has a recipient."""
    if not certificate.recipient_email:
        return None
    sender = certificate.sender_name or "Someone"
    return EmailMessage(
        to=certificate.recipient_email,
        subject=f"{sender} sent you a gift certificate",
        template=CERTIFICATE_TEMPLATE,
        template_data={
            "code": certificate.code,
            "amount": money_str(certificate.initial_value),
            "recipientName": certificate.recipient_name,
            "senderName": certificate.sender_name,
            "message": certificate.message,
            "dateExpires": certificate.date_expires,
        },
    )


def order_confirmation_message(
    order: Order, settlement: SettlementResult | None = None
) -> EmailMessage | None:
    """Build the order confirmation email, if the order has a customer address."""
    if order.customer is None or not order.customer.email:
        return None
    data: dict[str, Any] = {
        "orderId": order.id,
        "customerName": order.customer.full_name,
        "items": [i.to_dict() for i in order.items],
        "totals": order.totals.to_dict() if order.totals else None,
        "appliedCertificates": [c.to_dict() for c in order.applied_certificates],
        "amountDue": money_str(order.amount_due),
    }
    if settlement is not None:
        data["settledTotal"] = money_str(settlement.settled_total)
    return EmailMessage(
        to=order.customer.email,
        subject=f"Order Confirmation - {order.id}",
        template=ORDER_CONFIRMATION_TEMPLATE,
        template_data=data,
    )
