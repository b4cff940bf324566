"""Subscription lifecycle.

``create_subscription`` is the one place where a plan turns into money and
food: it validates the request, then resolves the customer, plan and kitchen,
materializes the first batch of orders, issues the first invoice and debits
the wallet inside a single unit of work. Any failure on the way leaves no
trace in the database.
"""
import logging
from datetime import date
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from mealdesk import billing, ledger
from mealdesk.auth import Principal
from mealdesk.db import paginate, unit_of_work
from mealdesk.errors import AccessDeniedError, ConflictError, NotFoundError, ValidationError
from mealdesk.invoicing import BillingSource, create_invoice, mark_paid
from mealdesk.models import (
    Customer,
    Invoice,
    Kitchen,
    Order,
    OrderItem,
    Subscription,
    SubscriptionPlan,
)
from mealdesk.orders import Customizations, assign_kitchen, materialize_orders, plan_rows
from mealdesk.serializers import (
    customer_data,
    invoice_data,
    kitchen_data,
    order_data,
    plan_data,
    subscription_data,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_STATUSES = ("ACTIVE", "PAUSED", "CANCELLED", "EXPIRED")
REQUIRED_FIELDS = (("customerId", "customer_id"), ("planId", "plan_id"), ("startDate", "start_date"))
# what a customer may change on their own subscription
CUSTOMER_FIELDS = frozenset(
    {"status", "paused_until", "auto_renew", "delivery_address", "delivery_instructions", "customizations", "notes"}
)
CUSTOMER_STATUSES = ("ACTIVE", "PAUSED", "CANCELLED")


def validate_request(request: dict[str, Any], today: Optional[date] = None) -> None:
    missing = [label for label, key in REQUIRED_FIELDS if request.get(key) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    start_date = billing.as_date(request["start_date"])
    if start_date < (today or billing.utc_today()):
        raise ValidationError("Start date cannot be in the past")
    end_date = request.get("end_date")
    if end_date is not None and billing.as_date(end_date) < start_date:
        raise ValidationError("End date cannot be before start date")


def create_subscription(db: Session, principal: Principal, request: dict[str, Any]) -> Subscription:
    """Create an ACTIVE subscription with its orders, invoice and wallet debit.

    ``request`` uses snake_case keys: ``customer_id``, ``plan_id``,
    ``start_date`` (required) and optionally ``kitchen_id``, ``end_date``,
    ``auto_renew``, ``delivery_address``, ``delivery_instructions``,
    ``customizations``, ``notes``.
    """
    principal.require("subscriptions:write")
    validate_request(request)
    customizations = Customizations.parse(request.get("customizations"))
    business_id = principal.business_id

    with unit_of_work(db):
        customer = ledger.lock_customer(db, business_id, request["customer_id"])
        plan = db.execute(
            select(SubscriptionPlan).where(
                SubscriptionPlan.id == request["plan_id"],
                SubscriptionPlan.business_id == business_id,
                SubscriptionPlan.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if plan is None:
            raise NotFoundError("Subscription plan not found")
        kitchen_id = assign_kitchen(db, business_id, request.get("kitchen_id"))

        start_date = billing.as_date(request["start_date"])
        end_date = request.get("end_date")
        subscription = Subscription(
            business_id=business_id,
            customer_id=customer.id,
            plan_id=plan.id,
            kitchen_id=kitchen_id,
            start_date=start_date,
            end_date=billing.as_date(end_date) if end_date is not None else None,
            next_billing_date=billing.next_billing_date(start_date, plan.type),
            status="ACTIVE",
            auto_renew=request.get("auto_renew", True),
            delivery_address=request.get("delivery_address"),
            delivery_instructions=request.get("delivery_instructions"),
            customizations=customizations.model_dump(mode="json") if request.get("customizations") else None,
            notes=request.get("notes"),
        )
        db.add(subscription)
        db.flush()

        materialize_orders(db, subscription, plan, customer)
        invoice, _ = create_invoice(
            db,
            customer,
            BillingSource(subscription=subscription),
            billing_address=subscription.delivery_address,
        )
        ledger.apply_entry(
            db,
            customer,
            ledger.DEBIT,
            invoice.total_amount,
            f"Subscription {plan.name}",
            invoice.invoice_number,
        )
        mark_paid(invoice, "WALLET", invoice.invoice_number)

    logger.info(
        "subscription %s created: customer=%s plan=%s invoice=%s",
        subscription.id,
        customer.customer_code,
        plan.name,
        invoice.invoice_number,
    )
    return subscription


def get_scoped(db: Session, principal: Principal, subscription_id: int) -> Subscription:
    subscription = principal.scope(db.query(Subscription), Subscription).filter(
        Subscription.id == subscription_id
    ).one_or_none()
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return subscription


def hydrate(db: Session, subscription: Subscription, order_limit: int = 5, invoice_limit: int = 1) -> dict:
    """Subscription with its customer, plan, kitchen and most recent orders and invoices."""
    data = subscription_data(subscription)
    plan = db.get(SubscriptionPlan, subscription.plan_id)
    plan_items = plan_rows(db, plan.id)
    orders = db.execute(
        select(Order)
        .where(Order.subscription_id == subscription.id)
        .order_by(Order.scheduled_for.desc(), Order.id.desc())
        .limit(order_limit)
    ).scalars().all()
    order_items: dict[int, list[OrderItem]] = {order.id: [] for order in orders}
    if orders:
        for item in db.execute(
            select(OrderItem).where(OrderItem.order_id.in_(order_items)).order_by(OrderItem.id)
        ).scalars():
            order_items[item.order_id].append(item)
    invoices = db.execute(
        select(Invoice)
        .where(Invoice.subscription_id == subscription.id)
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .limit(invoice_limit)
    ).scalars().all()

    data["customer"] = customer_data(db.get(Customer, subscription.customer_id))
    data["plan"] = plan_data(plan, plan_items)
    data["kitchen"] = kitchen_data(db.get(Kitchen, subscription.kitchen_id) if subscription.kitchen_id else None)
    data["orders"] = [order_data(order, order_items[order.id]) for order in orders]
    data["invoices"] = [invoice_data(invoice) for invoice in invoices]
    return data


def list_subscriptions(
    db: Session,
    principal: Principal,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    plan_type: Optional[str] = None,
    customer_id: Optional[int] = None,
) -> tuple[list[dict], dict]:
    principal.require("subscriptions:read")
    query = principal.scope(db.query(Subscription), Subscription)
    if status is not None:
        query = query.filter(Subscription.status == status)
    if customer_id is not None:
        query = query.filter(Subscription.customer_id == customer_id)
    if plan_type is not None:
        query = query.join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id).filter(
            SubscriptionPlan.type == plan_type
        )
    query = query.order_by(Subscription.created_at.desc(), Subscription.id.desc())
    rows, pagination = paginate(query, page, limit)
    return [hydrate(db, subscription, order_limit=5, invoice_limit=1) for subscription in rows], pagination


def _cancel(subscription: Subscription) -> None:
    subscription.status = "CANCELLED"
    subscription.end_date = billing.utc_today()
    subscription.auto_renew = False


def update_subscription(db: Session, principal: Principal, subscription_id: int, changes: dict[str, Any]) -> Subscription:
    """Apply a partial update; only keys present in ``changes`` are touched.

    Customers reach only their own subscriptions and may pause, resume or
    cancel them and adjust delivery details, but not reassign kitchens or
    move end dates.
    """
    principal.require("subscriptions:update")
    if principal.is_customer:
        forbidden = sorted(set(changes) - CUSTOMER_FIELDS)
        if forbidden:
            raise AccessDeniedError(f"Customers cannot change: {', '.join(forbidden)}")
    with unit_of_work(db):
        subscription = get_scoped(db, principal, subscription_id)
        status = changes.get("status")
        if status is not None and status != subscription.status:
            if status not in SUBSCRIPTION_STATUSES:
                raise ValidationError(f"Invalid subscription status: {status}")
            if principal.is_customer and status not in CUSTOMER_STATUSES:
                raise AccessDeniedError(f"Customers cannot set status {status}")
            if subscription.status == "CANCELLED":
                raise ConflictError("Cancelled subscriptions cannot change status")
        if "kitchen_id" in changes and changes["kitchen_id"] is not None:
            changes["kitchen_id"] = assign_kitchen(db, principal.business_id, changes["kitchen_id"])
        if "customizations" in changes and changes["customizations"] is not None:
            changes["customizations"] = Customizations.parse(changes["customizations"]).model_dump(mode="json")
        for key in ("end_date", "paused_until"):
            if changes.get(key) is not None:
                changes[key] = billing.as_date(changes[key])

        for key, value in changes.items():
            if key == "status":
                continue
            setattr(subscription, key, value)
        if status == "CANCELLED" and subscription.status != "CANCELLED":
            _cancel(subscription)
        elif status is not None:
            subscription.status = status
        db.flush()
    logger.info("subscription %s updated: %s", subscription.id, sorted(changes))
    return subscription


def cancel_subscription(db: Session, principal: Principal, subscription_id: int) -> Subscription:
    """Soft-cancel: subscriptions are never deleted."""
    principal.require("subscriptions:update")
    with unit_of_work(db):
        subscription = get_scoped(db, principal, subscription_id)
        _cancel(subscription)
        db.flush()
    logger.info("subscription %s cancelled", subscription.id)
    return subscription
