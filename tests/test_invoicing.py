from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from mealdesk import billing, invoicing, subscriptions
from mealdesk.errors import ConflictError, InsufficientBalanceError, ValidationError
from mealdesk.invoicing import BillingSource
from mealdesk.models import BusinessMetrics, InvoiceItem


def test_exactly_one_billing_source_is_required() -> None:
    with pytest.raises(ValidationError, match="must be linked to subscription, order, or manual items"):
        invoicing.validate_invoice_request(None, None, [], None)
    with pytest.raises(ValidationError, match="only one of"):
        invoicing.validate_invoice_request(1, 2, None, None)


@pytest.mark.parametrize(
    "items,message",
    [
        ([{"description": "Party tray", "quantity": "2", "unitPrice": 100}], "Invalid item structure at index 0"),
        ([{"quantity": 1, "unitPrice": 100}], "Invalid item structure at index 0"),
        (
            [{"description": "Tray", "quantity": 1, "unitPrice": 1}, "tray"],
            "Invalid item structure at index 1",
        ),
        ([{"description": "Tray", "quantity": 0, "unitPrice": 100}], "Quantity and unit price must be positive numbers"),
        ([{"description": "Tray", "quantity": 1, "unitPrice": -1}], "Quantity and unit price must be positive numbers"),
    ],
)
def test_manual_items_are_validated(items, message) -> None:
    with pytest.raises(ValidationError, match=message):
        invoicing.validate_invoice_request(None, None, items, None)


def test_due_date_cannot_be_in_the_past() -> None:
    with pytest.raises(ValidationError, match="Due date cannot be in the past"):
        invoicing.validate_due_date(date(2025, 1, 1), today=date(2025, 1, 2))
    invoicing.validate_due_date(date(2025, 1, 2), today=date(2025, 1, 2))


def test_manual_invoice_lines_and_totals(db, tenant) -> None:
    invoice, items = invoicing.create_invoice(
        db,
        tenant.customer,
        BillingSource(
            items=[
                {"description": "Party tray", "quantity": 1, "unitPrice": 299.99},
                {"description": "Sweets box", "quantity": 2, "unitPrice": 50.00},
            ]
        ),
        tax_rate=0.18,
    )
    db.commit()

    assert invoice.invoice_number.startswith("INV")
    assert invoice.subtotal_amount == Decimal("399.99")
    assert invoice.tax_amount == Decimal("72.00")
    assert invoice.total_amount == Decimal("471.99")
    assert invoice.due_date == billing.due_in(7)
    assert invoice.billing_address == tenant.customer.address
    assert [item.total_price for item in items] == [Decimal("299.99"), Decimal("100.00")]
    assert len(db.execute(select(InvoiceItem)).scalars().all()) == 2


def _subscribe(db, tenant):
    return subscriptions.create_subscription(
        db,
        tenant.owner,
        {
            "customer_id": tenant.customer.id,
            "plan_id": tenant.plan.id,
            "start_date": billing.utc_today() + timedelta(days=1),
        },
    )


def test_paying_a_subscription_invoice_advances_billing_and_records_revenue(db, tenant) -> None:
    subscription = _subscribe(db, tenant)
    first_billing = subscription.next_billing_date
    invoice, _ = invoicing.create_invoice(db, tenant.customer, BillingSource(subscription=subscription))
    db.commit()

    invoicing.pay_invoice(db, invoice, "WALLET")
    db.commit()

    assert invoice.status == "PAID"
    assert invoice.payment_method == "WALLET"
    assert invoice.paid_at is not None
    assert subscription.next_billing_date == billing.add_months(first_billing, 1)
    assert tenant.customer.wallet_balance == Decimal("292.02")
    assert tenant.customer.loyalty_points == 3
    metrics = db.execute(select(BusinessMetrics)).scalar_one()
    assert metrics.total_revenue == Decimal("353.99")
    assert metrics.total_payments == 1

    with pytest.raises(ConflictError, match="Invoice already paid"):
        invoicing.pay_invoice(db, invoice, "WALLET")


def test_external_payment_does_not_touch_the_wallet(db, tenant) -> None:
    invoice, _ = invoicing.create_invoice(
        db, tenant.customer, BillingSource(items=[{"description": "Catering", "quantity": 1, "unitPrice": 5000}])
    )
    invoicing.pay_invoice(db, invoice, "UPI", payment_reference="UPI-778")
    assert invoice.payment_reference == "UPI-778"
    assert tenant.customer.wallet_balance == Decimal("1000.00")


def test_wallet_payment_needs_funds(db, tenant) -> None:
    invoice, _ = invoicing.create_invoice(
        db, tenant.customer, BillingSource(items=[{"description": "Catering", "quantity": 1, "unitPrice": 5000}])
    )
    with pytest.raises(InsufficientBalanceError):
        invoicing.pay_invoice(db, invoice, "WALLET")
    with pytest.raises(ValidationError):
        invoicing.pay_invoice(db, invoice, "BARTER")


def test_payment_cannot_exceed_the_invoice_total(db, tenant) -> None:
    invoice, _ = invoicing.create_invoice(
        db, tenant.customer, BillingSource(items=[{"description": "Catering", "quantity": 1, "unitPrice": 100}])
    )
    with pytest.raises(ValidationError, match="cannot exceed the invoice total of 118.00"):
        invoicing.pay_invoice(db, invoice, "WALLET", amount="118.01")
    assert invoice.status == "PENDING"
    assert tenant.customer.wallet_balance == Decimal("1000.00")

    invoicing.pay_invoice(db, invoice, "WALLET", amount="118.00")
    assert invoice.status == "PAID"
    assert tenant.customer.wallet_balance == Decimal("882.00")
