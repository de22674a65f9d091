"""Command-line interface for orderledger."""

import argparse
import dataclasses
import json
import sys
from pathlib import Path

from . import __version__
from .errors import LedgerError
from .ledger import Ledger
from .log import configure_logging
from .models import GiftCertificate, Order, SettlementResult, money_str
from .settings import Settings


def get_settings(args: argparse.Namespace) -> Settings:
    """Settings from the environment, with --data-dir taking precedence."""
    settings = Settings.from_env()
    if getattr(args, "data_dir", None):
        settings = dataclasses.replace(settings, data_dir=Path(args.data_dir))
    return settings


def get_ledger(args: argparse.Namespace) -> Ledger:
    return Ledger.from_settings(get_settings(args))


def format_certificate(certificate: GiftCertificate, verbose: bool = False) -> str:
    line = (
        f"  {certificate.code}  {money_str(certificate.remaining_balance)}"
        f" of {money_str(certificate.initial_value)}"
        f"  expires {certificate.date_expires[:10]}"
    )
    if not verbose:
        return line
    lines = [line]
    if certificate.recipient_name or certificate.recipient_email:
        lines.append(
            f"    To: {certificate.recipient_name or ''} <{certificate.recipient_email or ''}>"
        )
    if certificate.purchase_order_id:
        lines.append(f"    Bought with order: {certificate.purchase_order_id}")
    for redemption in certificate.redemptions:
        lines.append(
            f"    Redeemed {money_str(redemption.amount)} on {redemption.order_id}"
            f" (balance {money_str(redemption.balance_after)})"
        )
    return "\n".join(lines)


def format_order(order: Order, verbose: bool = False) -> str:
    total = money_str(order.totals.total) if order.totals else "-"
    name = order.customer.full_name if order.customer else "-"
    line = f"  {order.id}  {order.status.value:<10}  {total:>9}  {name}"
    if not verbose:
        return line
    lines = [line]
    for item in order.items:
        lines.append(f"    {item.quantity} x {item.name} @ {money_str(item.unit_price)}")
    for applied in order.applied_certificates:
        lines.append(f"    Certificate {applied.code}: -{money_str(applied.applied_amount)}")
    lines.append(f"    Amount due: {money_str(order.amount_due)}")
    if order.payment:
        lines.append(f"    Payment: {order.payment.method}")
    lines.append(f"    Settled: {'yes' if order.settled else 'no'}")
    return "\n".join(lines)


def format_settlement(result: SettlementResult) -> str:
    header = "Already settled" if result.already_settled else "Settled"
    lines = [f"{header} {result.order_id}: {money_str(result.settled_total)}"]
    for entry in result.entries:
        line = (
            f"  {entry.code}  {money_str(entry.settled_amount)}"
            f" of {money_str(entry.applied_amount)}  {entry.status}"
        )
        if entry.error:
            line += f"  ({entry.error})"
        lines.append(line)
    if result.needs_reconciliation:
        lines.append("Needs reconciliation.")
    return "\n".join(lines)


# --- Certificate commands ---


def cmd_certificates_issue(args: argparse.Namespace) -> int:
    """Issue a new gift certificate."""
    try:
        ledger = get_ledger(args)
        certificate = ledger.issue_certificate(
            args.amount,
            recipient_name=args.recipient_name,
            recipient_email=args.recipient_email,
            sender_name=args.sender_name,
            message=args.message,
            purchase_order_id=args.order,
        )

        if args.json:
            print(json.dumps(certificate.to_dict(), indent=2))
        else:
            print(f"Issued certificate: {certificate.code}")
            print(f"  Value: {money_str(certificate.initial_value)}")
            print(f"  Expires: {certificate.date_expires}")
        return 0

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_certificates_list(args: argparse.Namespace) -> int:
    """List gift certificates."""
    try:
        ledger = get_ledger(args)
        certificates = ledger.list_certificates(
            state=args.state, recipient_email=args.email, purchase_order_id=args.order
        )

        if not certificates:
            print("No certificates found.")
            return 0

        if args.json:
            print(json.dumps([c.to_dict() for c in certificates], indent=2))
        else:
            print(f"Certificates ({len(certificates)}):")
            print()
            for certificate in certificates:
                print(format_certificate(certificate, verbose=args.verbose))
        return 0

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_certificates_show(args: argparse.Namespace) -> int:
    """Show one gift certificate."""
    try:
        ledger = get_ledger(args)
        certificate = ledger.get_certificate(args.code)

        if args.json:
            print(json.dumps(certificate.to_dict(), indent=2))
        else:
            print(format_certificate(certificate, verbose=True))
        return 0

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_certificates_validate(args: argparse.Namespace) -> int:
    """Check whether a code can be redeemed."""
    try:
        ledger = get_ledger(args)
        result = ledger.validate_certificate(args.code, args.amount)

        if args.json:
            print(json.dumps(result.to_dict(), indent=2))
        elif result.valid:
            print(f"{result.code}: valid, {money_str(result.available_balance)} available")
        else:
            print(f"{result.code}: not valid ({result.reason.value})")
        return 0 if result.valid else 2

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


# --- Order commands ---


def cmd_orders_create(args: argparse.Namespace) -> int:
    """Place an order from a JSON cart file."""
    try:
        try:
            cart = json.loads(Path(args.cart).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error: cannot read cart {args.cart}: {e}", file=sys.stderr)
            return 1

        ledger = get_ledger(args)
        result = ledger.checkout(
            customer=cart.get("customer"),
            items=cart.get("items"),
            certificate_codes=cart.get("certificateCodes", []),
            payment=cart.get("payment"),
            notes=cart.get("notes"),
        )

        if args.json:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print(f"Created order: {result.order.id}")
            print(f"  Certificates applied: {money_str(result.order.certificate_total)}")
            print(f"  Amount due: {money_str(result.amount_due)}")
            for error in result.allocation_errors:
                print(f"  Not applied: {error.code} ({error.reason.value})")
        return 0

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_list(args: argparse.Namespace) -> int:
    """List orders."""
    try:
        ledger = get_ledger(args)
        orders = ledger.list_orders(args.status)

        if not orders:
            print("No orders found.")
            return 0

        if args.json:
            print(json.dumps([o.to_dict() for o in orders], indent=2))
        else:
            print(f"Orders ({len(orders)}):")
            print()
            for order in orders:
                print(format_order(order, verbose=args.verbose))
        return 0

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_show(args: argparse.Namespace) -> int:
    """Show one order."""
    try:
        ledger = get_ledger(args)
        doc = ledger.orders.get_document(args.order_id)
        order = Order.from_dict(doc.data)

        if args.json:
            print(json.dumps({"order": order.to_dict(), "revision": doc.revision}, indent=2))
        else:
            print(format_order(order, verbose=True))
            print(f"    Revision: {doc.revision}")
        return 0

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_set_status(args: argparse.Namespace) -> int:
    """Change an order's status."""
    try:
        ledger = get_ledger(args)
        order = ledger.update_status(
            args.order_id, args.status, expected_revision=args.expected_revision
        )
        print(f"Order {order.id} is now {order.status.value}")
        return 0

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_set_payment(args: argparse.Namespace) -> int:
    """Record how an order is being paid."""
    try:
        ledger = get_ledger(args)
        order = ledger.update_payment(
            args.order_id,
            args.method,
            timing=args.timing,
            expected_revision=args.expected_revision,
        )
        print(f"Order {order.id} payment: {order.payment.method}")
        return 0

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_recalculate(args: argparse.Namespace) -> int:
    """Recompute an order's totals from its items."""
    try:
        ledger = get_ledger(args)
        order = ledger.recalculate_totals(args.order_id)
        print(f"Order {order.id} total: {money_str(order.totals.total)}")
        return 0

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_finalize(args: argparse.Namespace) -> int:
    """Settle an order's gift certificates."""
    try:
        ledger = get_ledger(args)
        result = ledger.finalize(args.order_id)

        if args.json:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print(format_settlement(result))
        return 0 if result.complete else 1

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_audit(args: argparse.Namespace) -> int:
    """Report malformed order records."""
    try:
        ledger = get_ledger(args)
        findings = ledger.audit_orders()

        if args.json:
            print(json.dumps([f.to_dict() for f in findings], indent=2))
        elif not findings:
            print("No malformed orders found.")
        else:
            print(f"Malformed orders ({len(findings)}):")
            print()
            for finding in findings:
                print(f"  {finding.order_id}")
                for issue in finding.issues:
                    print(f"    - {issue}")
        return 0

    except LedgerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        settings = get_settings(args)
        print("Starting orderledger API server...")
        print(f"Data directory: {settings.data_dir}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "orderledger.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            workers=1,
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="orderledger",
        description="Track gift certificate balances and merge-safe order records.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--data-dir", help="Data directory (default: $ORDERLEDGER_DATA_DIR or ./data)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    # certificates (subcommand group)
    certificates_parser = subparsers.add_parser("certificates", help="Manage gift certificates")
    certificates_subparsers = certificates_parser.add_subparsers(dest="certificates_command")

    issue_parser = certificates_subparsers.add_parser("issue", help="Issue a certificate")
    issue_parser.add_argument("amount", help="Certificate value")
    issue_parser.add_argument("--recipient-name", help="Recipient's name")
    issue_parser.add_argument("--recipient-email", help="Recipient's email (receives the code)")
    issue_parser.add_argument("--sender-name", help="Sender's name")
    issue_parser.add_argument("--message", "-m", help="Personal message")
    issue_parser.add_argument("--order", help="Order that bought the certificate")
    issue_parser.add_argument("--json", action="store_true", help="Output as JSON")

    cert_list_parser = certificates_subparsers.add_parser("list", help="List certificates")
    cert_list_parser.add_argument(
        "--state",
        choices=["active", "partially-redeemed", "fully-redeemed", "expired"],
        help="Only certificates in this state",
    )
    cert_list_parser.add_argument("--email", help="Only certificates sent to this address")
    cert_list_parser.add_argument("--order", help="Only certificates bought by this order")
    cert_list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    cert_list_parser.add_argument(
        "--verbose", "-v", action="store_true", help="Show recipients and redemptions"
    )

    cert_show_parser = certificates_subparsers.add_parser("show", help="Show a certificate")
    cert_show_parser.add_argument("code", help="Certificate code")
    cert_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    validate_parser = certificates_subparsers.add_parser(
        "validate", help="Check whether a code can be redeemed"
    )
    validate_parser.add_argument("code", help="Certificate code")
    validate_parser.add_argument("--amount", help="Amount the customer wants to apply")
    validate_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # orders (subcommand group)
    orders_parser = subparsers.add_parser("orders", help="Manage orders")
    orders_subparsers = orders_parser.add_subparsers(dest="orders_command")

    create_order_parser = orders_subparsers.add_parser(
        "create", help="Place an order from a JSON cart file"
    )
    create_order_parser.add_argument(
        "cart", help="JSON file with customer, items and optional certificateCodes"
    )
    create_order_parser.add_argument("--json", action="store_true", help="Output as JSON")

    order_list_parser = orders_subparsers.add_parser("list", help="List orders")
    order_list_parser.add_argument("--status", help="Only orders with this status")
    order_list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    order_list_parser.add_argument(
        "--verbose", "-v", action="store_true", help="Show items and certificates"
    )

    order_show_parser = orders_subparsers.add_parser("show", help="Show an order")
    order_show_parser.add_argument("order_id", help="Order ID")
    order_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    status_parser = orders_subparsers.add_parser("set-status", help="Change an order's status")
    status_parser.add_argument("order_id", help="Order ID")
    status_parser.add_argument("status", help="Pending, Processing, Completed, Shipped or Cancelled")
    status_parser.add_argument(
        "--expected-revision", type=int, help="Only update if the order is at this revision"
    )

    payment_parser = orders_subparsers.add_parser("set-payment", help="Record the payment method")
    payment_parser.add_argument("order_id", help="Order ID")
    payment_parser.add_argument("method", help="Payment method (e.g. e-transfer, cash)")
    payment_parser.add_argument("--timing", help="When payment is expected (e.g. pickup)")
    payment_parser.add_argument(
        "--expected-revision", type=int, help="Only update if the order is at this revision"
    )

    recalculate_parser = orders_subparsers.add_parser(
        "recalculate", help="Recompute totals from the current items"
    )
    recalculate_parser.add_argument("order_id", help="Order ID")

    finalize_parser = orders_subparsers.add_parser(
        "finalize", help="Settle the order's gift certificates"
    )
    finalize_parser.add_argument("order_id", help="Order ID")
    finalize_parser.add_argument("--json", action="store_true", help="Output as JSON")

    audit_parser = orders_subparsers.add_parser("audit", help="Report malformed order records")
    audit_parser.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(get_settings(args))

    # Handle certificates subcommands
    if args.command == "certificates":
        if not getattr(args, "certificates_command", None):
            parser.parse_args(["certificates", "--help"])
            return 0
        certificate_commands = {
            "issue": cmd_certificates_issue,
            "list": cmd_certificates_list,
            "show": cmd_certificates_show,
            "validate": cmd_certificates_validate,
        }
        return certificate_commands[args.certificates_command](args)

    # Handle orders subcommands
    if args.command == "orders":
        if not getattr(args, "orders_command", None):
            parser.parse_args(["orders", "--help"])
            return 0
        order_commands = {
            "create": cmd_orders_create,
            "list": cmd_orders_list,
            "show": cmd_orders_show,
            "set-status": cmd_orders_set_status,
            "set-payment": cmd_orders_set_payment,
            "recalculate": cmd_orders_recalculate,
            "finalize": cmd_orders_finalize,
            "audit": cmd_orders_audit,
        }
        return order_commands[args.orders_command](args)

    commands = {
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
