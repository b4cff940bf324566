import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from numbers import Number as NumericValue
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from mealdesk import billing, ledger
from mealdesk.codes import allocate_code, generate_invoice_number
from mealdesk.config import settings
from mealdesk.errors import ConflictError, NotFoundError, ValidationError
from mealdesk.models import (
    BusinessMetrics,
    Customer,
    Invoice,
    InvoiceItem,
    Order,
    Subscription,
    SubscriptionPlan,
)
from mealdesk.pricing import Number, compute_totals, money, to_decimal

logger = logging.getLogger(__name__)

INVOICE_STATUSES = ("PENDING", "PAID", "OVERDUE", "CANCELLED", "REFUNDED")
PAYMENT_METHODS = ("WALLET", "ONLINE", "CARD", "UPI", "CASH", "BANK_TRANSFER")


@dataclass
class BillingSource:
    """What an invoice bills for: a subscription, an order, or manual lines."""

    subscription: Optional[Subscription] = None
    order: Optional[Order] = None
    items: list[dict[str, Any]] = field(default_factory=list)

    def kind(self) -> str:
        return single_source(self.subscription is not None, self.order is not None, bool(self.items))


def single_source(has_subscription: bool, has_order: bool, has_items: bool) -> str:
    supplied = [
        name
        for name, present in (("subscription", has_subscription), ("order", has_order), ("items", has_items))
        if present
    ]
    if not supplied:
        raise ValidationError("Invoice must be linked to subscription, order, or manual items")
    if len(supplied) > 1:
        raise ValidationError("Invoice must be linked to only one of subscription, order, or manual items")
    return supplied[0]


def _is_number(value: Any) -> bool:
    return isinstance(value, NumericValue) and not isinstance(value, bool)


def validate_manual_items(items: Optional[list[Any]]) -> None:
    for index, item in enumerate(items or []):
        if (
            not isinstance(item, dict)
            or not isinstance(item.get("description"), str)
            or not item["description"].strip()
            or not _is_number(item.get("quantity"))
            or not _is_number(item.get("unitPrice"))
        ):
            raise ValidationError(f"Invalid item structure at index {index}")
        if item["quantity"] <= 0 or item["unitPrice"] < 0:
            raise ValidationError("Quantity and unit price must be positive numbers")


def validate_due_date(due_date: Optional[date], today: Optional[date] = None) -> None:
    if due_date is not None and due_date < (today or billing.utc_today()):
        raise ValidationError("Due date cannot be in the past")


def validate_invoice_request(
    subscription_id: Optional[int],
    order_id: Optional[int],
    items: Optional[list[Any]],
    due_date: Optional[date],
) -> None:
    """Checks that need no database access, run before the transaction opens."""
    single_source(subscription_id is not None, order_id is not None, bool(items))
    validate_manual_items(items)
    validate_due_date(due_date)


def create_invoice(
    db: Session,
    customer: Customer,
    source: BillingSource,
    tax_rate: Optional[Number] = None,
    discount: Number = 0,
    due_date: Optional[date] = None,
    billing_address: Optional[dict] = None,
    notes: Optional[str] = None,
) -> tuple[Invoice, list[InvoiceItem]]:
    kind = source.kind()
    validate_manual_items(source.items)
    validate_due_date(due_date)
    rate = settings.default_tax_rate if tax_rate is None else to_decimal(tax_rate, "taxRate")

    if kind == "subscription":
        plan = db.get(SubscriptionPlan, source.subscription.plan_id)
        lines = [{"quantity": 1, "unitPrice": plan.price}]
    elif kind == "order":
        lines = [{"quantity": 1, "unitPrice": source.order.total_amount}]
    else:
        lines = source.items
    totals = compute_totals(lines, rate, discount)

    invoice = Invoice(
        business_id=customer.business_id,
        invoice_number=allocate_code(db, Invoice.invoice_number, generate_invoice_number, settings.code_max_attempts),
        customer_id=customer.id,
        subscription_id=source.subscription.id if source.subscription is not None else None,
        order_id=source.order.id if source.order is not None else None,
        subtotal_amount=totals.subtotal,
        tax_amount=totals.tax_amount,
        discount_amount=totals.discount_amount,
        total_amount=totals.total,
        status="PENDING",
        due_date=due_date or billing.due_in(settings.invoice_due_days),
        billing_address=billing_address or customer.address or {},
        notes=notes,
    )
    db.add(invoice)
    db.flush()

    invoice_items = []
    for item in source.items:
        quantity = to_decimal(item["quantity"], "quantity")
        unit_price = money(item["unitPrice"])
        invoice_item = InvoiceItem(
            invoice_id=invoice.id,
            description=item["description"].strip(),
            quantity=quantity,
            unit_price=unit_price,
            total_price=money(quantity * unit_price),
        )
        db.add(invoice_item)
        invoice_items.append(invoice_item)
    db.flush()
    logger.info("invoice %s issued for %s total=%s", invoice.invoice_number, kind, invoice.total_amount)
    return invoice, invoice_items


def resolve_billing_source(
    db: Session,
    business_id: int,
    customer: Customer,
    subscription_id: Optional[int] = None,
    order_id: Optional[int] = None,
    items: Optional[list[dict]] = None,
) -> BillingSource:
    source = BillingSource(items=items or [])
    if subscription_id is not None:
        source.subscription = db.execute(
            select(Subscription).where(
                Subscription.id == subscription_id,
                Subscription.business_id == business_id,
                Subscription.customer_id == customer.id,
            )
        ).scalar_one_or_none()
        if source.subscription is None:
            raise NotFoundError("Subscription not found")
    if order_id is not None:
        source.order = db.execute(
            select(Order).where(
                Order.id == order_id,
                Order.business_id == business_id,
                Order.customer_id == customer.id,
            )
        ).scalar_one_or_none()
        if source.order is None:
            raise NotFoundError("Order not found")
    return source


def record_revenue(db: Session, business_id: int, amount: Decimal, day: Optional[date] = None) -> BusinessMetrics:
    day = day or billing.utc_today()
    metrics = db.execute(
        select(BusinessMetrics)
        .where(BusinessMetrics.business_id == business_id, BusinessMetrics.metric_date == day)
        .with_for_update()
    ).scalar_one_or_none()
    if metrics is None:
        metrics = BusinessMetrics(
            business_id=business_id, metric_date=day, total_revenue=Decimal("0.00"), total_payments=0
        )
        db.add(metrics)
    metrics.total_revenue = money(metrics.total_revenue) + amount
    metrics.total_payments += 1
    db.flush()
    return metrics


def mark_paid(invoice: Invoice, payment_method: str, payment_reference: Optional[str]) -> None:
    invoice.status = "PAID"
    invoice.paid_at = datetime.now(timezone.utc)
    invoice.payment_method = payment_method
    invoice.payment_reference = payment_reference or f"{payment_method}_{int(time.time() * 1000)}"


def pay_invoice(
    db: Session,
    invoice: Invoice,
    payment_method: str = "WALLET",
    payment_reference: Optional[str] = None,
    amount: Optional[Number] = None,
) -> Invoice:
    """Settle an invoice: wallet debit, loyalty accrual, billing-date advance, revenue."""
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"Unsupported payment method: {payment_method}")
    if invoice.status == "PAID":
        raise ConflictError("Invoice already paid")
    if invoice.status in ("CANCELLED", "REFUNDED"):
        raise ConflictError(f"Invoice is {invoice.status.lower()} and cannot be paid")
    payment_amount = money(invoice.total_amount if amount is None else amount)
    if payment_amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    if payment_amount > money(invoice.total_amount):
        raise ValidationError(f"Payment amount cannot exceed the invoice total of {money(invoice.total_amount)}")

    customer = ledger.lock_customer(db, invoice.business_id, invoice.customer_id)
    if payment_method == "WALLET":
        ledger.apply_entry(
            db,
            customer,
            ledger.DEBIT,
            payment_amount,
            f"Payment for invoice {invoice.invoice_number}",
            invoice.invoice_number,
        )
    mark_paid(invoice, payment_method, payment_reference)
    ledger.accrue_loyalty(customer, payment_amount)

    if invoice.subscription_id is not None:
        subscription = db.get(Subscription, invoice.subscription_id)
        plan = db.get(SubscriptionPlan, subscription.plan_id)
        subscription.next_billing_date = billing.next_billing_date(subscription.next_billing_date, plan.type)

    record_revenue(db, invoice.business_id, payment_amount)
    db.flush()
    logger.info("invoice %s paid via %s amount=%s", invoice.invoice_number, payment_method, payment_amount)
    return invoice
