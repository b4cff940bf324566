from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from mealdesk import billing, subscriptions
from mealdesk.errors import (
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from mealdesk.models import Invoice, Order, OrderItem, Subscription, WalletTransaction

from conftest import seed_tenant

START = billing.utc_today() + timedelta(days=1)


def _request(tenant, **overrides):
    request = {"customer_id": tenant.customer.id, "plan_id": tenant.plan.id, "start_date": START}
    request.update(overrides)
    return request


def _count(db, model):
    return db.execute(select(func.count(model.id))).scalar_one()


def test_monthly_subscription_end_to_end(db, tenant) -> None:
    subscription = subscriptions.create_subscription(db, tenant.owner, _request(tenant))

    assert subscription.status == "ACTIVE"
    assert subscription.kitchen_id == tenant.kitchen.id
    assert subscription.next_billing_date == billing.add_months(START, 1)

    invoice = db.execute(select(Invoice).where(Invoice.subscription_id == subscription.id)).scalar_one()
    assert invoice.subtotal_amount == Decimal("299.99")
    assert invoice.tax_amount == Decimal("54.00")
    assert invoice.total_amount == Decimal("353.99")
    assert invoice.status == "PAID"
    assert invoice.payment_reference == invoice.invoice_number

    assert tenant.customer.wallet_balance == Decimal("646.01")
    debit = db.execute(select(WalletTransaction).where(WalletTransaction.type == "DEBIT")).scalar_one()
    assert debit.description == f"Subscription {tenant.plan.name}"
    assert debit.reference == invoice.invoice_number
    assert debit.balance_after == Decimal("646.01")

    scheduled = db.execute(
        select(Order.scheduled_for).where(Order.subscription_id == subscription.id).order_by(Order.scheduled_for)
    ).scalars().all()
    assert [moment.date() for moment in scheduled] == [START, billing.add_months(START, 1), billing.add_months(START, 2)]

    data = subscriptions.hydrate(db, subscription)
    assert data["customer"]["walletBalance"] == Decimal("646.01")
    assert data["plan"]["name"] == tenant.plan.name
    assert len(data["plan"]["planItems"]) == 3
    assert data["kitchen"]["id"] == tenant.kitchen.id
    assert len(data["orders"]) == 3
    assert data["invoices"][0]["totalAmount"] == Decimal("353.99")


def test_daily_plan_materializes_a_week(db) -> None:
    tenant = seed_tenant(db, plan_type="DAILY", price="100")
    subscriptions.create_subscription(db, tenant.owner, _request(tenant))
    assert _count(db, Order) == 7
    # two plan lines plus the optional dessert on each order
    assert _count(db, OrderItem) == 21


def test_customizations_drop_optional_items_and_override_quantities(db, tenant) -> None:
    dessert, rice = tenant.menu_items[2].id, tenant.menu_items[1].id
    subscriptions.create_subscription(
        db,
        tenant.owner,
        _request(tenant, customizations={"excluded_items": [dessert], "item_quantities": {str(rice): 3}}),
    )
    lines = db.execute(select(OrderItem.menu_item_id, OrderItem.quantity)).all()
    assert dessert not in {menu_item_id for menu_item_id, _ in lines}
    assert {quantity for menu_item_id, quantity in lines if menu_item_id == rice} == {3}


def test_insufficient_balance_rolls_everything_back(db) -> None:
    tenant = seed_tenant(db, wallet="100")
    with pytest.raises(InsufficientBalanceError, match="Insufficient wallet balance"):
        subscriptions.create_subscription(db, tenant.owner, _request(tenant))

    assert _count(db, Subscription) == 0
    assert _count(db, Order) == 0
    assert _count(db, Invoice) == 0
    assert _count(db, WalletTransaction) == 1
    db.refresh(tenant.customer)
    assert tenant.customer.wallet_balance == Decimal("100.00")


def test_missing_fields_are_listed() -> None:
    with pytest.raises(ValidationError, match="Missing required fields: customerId, startDate"):
        subscriptions.validate_request({"plan_id": 1})


def test_dates_are_validated_before_anything_else(db, tenant) -> None:
    with pytest.raises(ValidationError, match="Start date cannot be in the past"):
        subscriptions.create_subscription(db, tenant.owner, _request(tenant, start_date=billing.utc_today() - timedelta(days=1)))
    with pytest.raises(ValidationError, match="End date cannot be before start date"):
        subscriptions.create_subscription(db, tenant.owner, _request(tenant, end_date=START - timedelta(days=1)))


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"customer_id": 9999}, "Customer not found"),
        ({"plan_id": 9999}, "Subscription plan not found"),
        ({"kitchen_id": 9999}, "Kitchen not found"),
    ],
)
def test_unknown_references_are_not_found(db, tenant, overrides, message) -> None:
    with pytest.raises(NotFoundError, match=message):
        subscriptions.create_subscription(db, tenant.owner, _request(tenant, **overrides))
    assert _count(db, Subscription) == 0


def test_other_tenants_records_are_invisible(db, tenant) -> None:
    other = seed_tenant(db, name="Dabba Express")
    with pytest.raises(NotFoundError, match="Customer not found"):
        subscriptions.create_subscription(db, tenant.owner, _request(tenant, customer_id=other.customer.id))
    with pytest.raises(NotFoundError, match="Subscription plan not found"):
        subscriptions.create_subscription(db, tenant.owner, _request(tenant, plan_id=other.plan.id))

    foreign = subscriptions.create_subscription(db, other.owner, _request(other))
    with pytest.raises(NotFoundError):
        subscriptions.get_scoped(db, tenant.owner, foreign.id)
    with pytest.raises(NotFoundError):
        subscriptions.update_subscription(db, tenant.owner, foreign.id, {"notes": "mine now"})
    with pytest.raises(NotFoundError):
        subscriptions.cancel_subscription(db, tenant.owner, foreign.id)
    rows, pagination = subscriptions.list_subscriptions(db, tenant.owner)
    assert rows == [] and pagination["totalItems"] == 0


def test_pause_update_and_cancel(db, tenant) -> None:
    subscription = subscriptions.create_subscription(db, tenant.owner, _request(tenant))

    pause_until = START + timedelta(days=10)
    subscriptions.update_subscription(
        db, tenant.owner, subscription.id, {"status": "PAUSED", "paused_until": pause_until.isoformat()}
    )
    assert subscription.status == "PAUSED"
    assert subscription.paused_until == pause_until

    with pytest.raises(ValidationError):
        subscriptions.update_subscription(db, tenant.owner, subscription.id, {"status": "ARCHIVED"})

    subscriptions.cancel_subscription(db, tenant.owner, subscription.id)
    assert subscription.status == "CANCELLED"
    assert subscription.auto_renew is False
    assert subscription.end_date is not None
    assert _count(db, Subscription) == 1

    with pytest.raises(ConflictError):
        subscriptions.update_subscription(db, tenant.owner, subscription.id, {"status": "ACTIVE"})


def test_listing_filters_by_plan_type(db, tenant) -> None:
    subscriptions.create_subscription(db, tenant.owner, _request(tenant))
    rows, pagination = subscriptions.list_subscriptions(db, tenant.owner, plan_type="MONTHLY")
    assert len(rows) == 1 and pagination["totalPages"] == 1
    rows, _ = subscriptions.list_subscriptions(db, tenant.owner, plan_type="DAILY")
    assert rows == []
