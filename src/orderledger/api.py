"""FastAPI REST API for the order ledger."""

from typing import Any, Optional, Union

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .document_store import Document
from .errors import (
    BalanceConflictError,
    CertificateExistsError,
    CertificateNotFoundError,
    ConflictError,
    ConflictingFinalizeError,
    ConsistencyError,
    DocumentNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidOrderError,
    LedgerError,
    OrderCancelledError,
    OrderExistsError,
    OrderNotFoundError,
    RevisionMismatchError,
    StoreUnavailableError,
    TransientError,
    ValidationError,
)
from .ledger import Ledger
from .models import Order
from .settings import Settings

# JSON numbers or decimal strings; converted to cents by the ledger
Money = Union[float, str]


# --- Pydantic Schemas ---


class CamelModel(BaseModel):
    """Accepts and emits the camelCase keys of the stored records."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerSchema(CamelModel):
    first_name: str
    last_name: str = ""
    email: str
    phone: str = ""


class ItemSchema(CamelModel):
    id: str
    name: str
    unit_price: Money
    quantity: int


class TotalsSchema(CamelModel):
    subtotal: Money
    tax: Money = 0
    total: Money


class PaymentSchema(CamelModel):
    method: str
    timing: Optional[str] = None


class CheckoutRequest(CamelModel):
    """Request body for placing an order."""

    customer: CustomerSchema
    items: list[ItemSchema]
    certificate_codes: list[str] = Field(default_factory=list)
    payment: Optional[PaymentSchema] = None
    notes: Optional[str] = None


class OrderUpdateRequest(CamelModel):
    """
    Request body for a partial order update.

    Only the keys present in the body are merged. Keys this schema doesn't
    name are passed through so the ledger can reject them by name.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    status: Optional[str] = None
    customer: Optional[CustomerSchema] = None
    items: Optional[list[ItemSchema]] = None
    totals: Optional[TotalsSchema] = None
    payment: Optional[PaymentSchema] = None
    notes: Optional[str] = None


class CertificateIssueRequest(CamelModel):
    amount: Money
    recipient_name: Optional[str] = None
    recipient_email: Optional[str] = None
    sender_name: Optional[str] = None
    message: Optional[str] = None
    purchase_order_id: Optional[str] = None


class ValidateRequest(CamelModel):
    code: str
    amount: Optional[Money] = None


class AllocateRequest(CamelModel):
    total: Money
    codes: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    detail: str
    error_type: str


# --- Helpers ---


def get_ledger() -> Ledger:
    """Get a Ledger over the configured data directory."""
    return Ledger.from_settings(Settings.from_env())


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_unset=True)


def order_payload(doc: Document) -> dict[str, Any]:
    """An order with its store revision, for conditional updates."""
    return {"order": Order.from_dict(doc.data).to_dict(), "revision": doc.revision}


# --- FastAPI App ---


app = FastAPI(
    title="orderledger API",
    description="REST API for orders and gift certificates",
    version="0.1.0",
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes; the closest listed base class wins
ERROR_STATUS_CODES: dict[type, int] = {
    CertificateNotFoundError: 404,
    OrderNotFoundError: 404,
    DocumentNotFoundError: 404,
    InvalidOrderError: 400,
    InvalidAmountError: 400,
    ValidationError: 400,
    ConflictingFinalizeError: 409,
    RevisionMismatchError: 409,
    OrderExistsError: 409,
    CertificateExistsError: 409,
    BalanceConflictError: 409,
    OrderCancelledError: 409,
    ConflictError: 409,
    InsufficientBalanceError: 422,
    ConsistencyError: 422,
    StoreUnavailableError: 503,
    TransientError: 503,
}


def status_code_for(exc: LedgerError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Map LedgerError subclasses to appropriate HTTP responses."""
    return JSONResponse(
        status_code=status_code_for(exc),
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


# --- Endpoints ---


@app.get("/api/health")
def health_check():
    """
    Health check endpoint.

    Reports whether the data directory can be read.
    """
    ledger = get_ledger()
    try:
        return {
            "status": "ok",
            "order_count": len(ledger.orders.order_ids()),
            "certificate_count": len(ledger.certificates.codes()),
        }
    except (LedgerError, OSError) as e:
        return {
            "status": "error",
            "detail": str(e),
        }


# --- Certificate Endpoints ---


@app.post("/api/certificates", status_code=201)
def issue_certificate(request: CertificateIssueRequest):
    """Issue a new gift certificate."""
    ledger = get_ledger()
    certificate = ledger.issue_certificate(
        request.amount,
        recipient_name=request.recipient_name,
        recipient_email=request.recipient_email,
        sender_name=request.sender_name,
        message=request.message,
        purchase_order_id=request.purchase_order_id,
    )
    return certificate.to_dict()


@app.get("/api/certificates")
def list_certificates(
    state: Optional[str] = Query(None, description="active, partially-redeemed, fully-redeemed or expired"),
    recipient_email: Optional[str] = Query(None),
    purchase_order_id: Optional[str] = Query(None),
):
    """List certificates, newest first."""
    ledger = get_ledger()
    certificates = ledger.list_certificates(
        state=state, recipient_email=recipient_email, purchase_order_id=purchase_order_id
    )
    return {
        "certificates": [c.to_dict() for c in certificates],
        "count": len(certificates),
    }


@app.post("/api/certificates/validate")
def validate_certificate(request: ValidateRequest):
    """Check whether a code can be redeemed. Never reserves any balance."""
    ledger = get_ledger()
    return ledger.validate_certificate(request.code, request.amount).to_dict()


@app.post("/api/certificates/allocate")
def preview_allocation(request: AllocateRequest):
    """Show how a list of codes would cover a total."""
    ledger = get_ledger()
    return ledger.preview_allocation(request.total, request.codes).to_dict()


@app.get("/api/certificates/{code}")
def get_certificate(code: str):
    """Get a certificate by code (any case)."""
    ledger = get_ledger()
    return ledger.get_certificate(code).to_dict()


# --- Order Endpoints ---


@app.post("/api/orders", status_code=201)
def checkout(request: CheckoutRequest):
    """Place an order, applying any gift certificate codes."""
    ledger = get_ledger()
    result = ledger.checkout(
        customer=_dump(request.customer),
        items=[_dump(i) for i in request.items],
        certificate_codes=request.certificate_codes,
        payment=_dump(request.payment) if request.payment else None,
        notes=request.notes,
    )
    return result.to_dict()


@app.get("/api/orders")
def list_orders(status: Optional[str] = Query(None)):
    """List orders, newest first."""
    ledger = get_ledger()
    orders = ledger.list_orders(status)
    return {"orders": [o.to_dict() for o in orders], "count": len(orders)}


@app.get("/api/orders/audit")
def audit_orders():
    """Report malformed order records."""
    ledger = get_ledger()
    findings = ledger.audit_orders()
    return {"findings": [f.to_dict() for f in findings], "count": len(findings)}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str):
    """Get an order and its current revision."""
    ledger = get_ledger()
    return order_payload(ledger.orders.get_document(order_id))


@app.patch("/api/orders/{order_id}")
def update_order(
    order_id: str,
    request: OrderUpdateRequest,
    expected_revision: Optional[int] = Query(None, ge=0),
):
    """
    Merge a partial update into an order.

    Only the fields in the body change. With expected_revision the update
    is refused if the order was written since that revision was read.
    """
    ledger = get_ledger()
    ledger.update_order(order_id, _dump(request), expected_revision=expected_revision)
    return order_payload(ledger.orders.get_document(order_id))


@app.post("/api/orders/{order_id}/recalculate")
def recalculate_totals(order_id: str):
    """Recompute an order's totals from its current items."""
    ledger = get_ledger()
    ledger.recalculate_totals(order_id)
    return order_payload(ledger.orders.get_document(order_id))


@app.post("/api/orders/{order_id}/finalize")
def finalize_order(order_id: str):
    """Settle an order's gift certificates. Safe to repeat."""
    ledger = get_ledger()
    return ledger.finalize(order_id).to_dict()
