from datetime import datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mealdesk.errors import ValidationError
from mealdesk.models import Customer, Invoice, Order, Subscription
from mealdesk.pricing import money

RANGES = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
ACTIVE_ORDER_STATUSES = ("CONFIRMED", "PREPARING", "READY", "OUT_FOR_DELIVERY")


def range_start(range_key: str, now: datetime) -> datetime:
    if range_key not in RANGES:
        raise ValidationError(f"Unsupported range: {range_key}; expected one of {', '.join(RANGES)}")
    return now - timedelta(days=RANGES[range_key])


def dashboard_stats(db: Session, business_id: int, range_key: str = "30d", now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    since = range_start(range_key, now)
    today = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)

    def scalar(statement):
        return db.execute(statement).scalar_one()

    active_customers = scalar(
        select(func.count(Customer.id)).where(Customer.business_id == business_id, Customer.is_active.is_(True))
    )
    new_customers = scalar(
        select(func.count(Customer.id)).where(Customer.business_id == business_id, Customer.created_at >= since)
    )
    revenue = scalar(
        select(func.coalesce(func.sum(Invoice.total_amount), 0)).where(
            Invoice.business_id == business_id,
            Invoice.status == "PAID",
            Invoice.paid_at >= since,
        )
    )
    orders_in_range, order_value = db.execute(
        select(func.count(Order.id), func.coalesce(func.sum(Order.final_amount), 0)).where(
            Order.business_id == business_id,
            Order.created_at >= since,
            Order.status != "CANCELLED",
        )
    ).one()
    active_orders = scalar(
        select(func.count(Order.id)).where(
            Order.business_id == business_id, Order.status.in_(ACTIVE_ORDER_STATUSES)
        )
    )
    orders_today = scalar(
        select(func.count(Order.id)).where(
            Order.business_id == business_id,
            Order.scheduled_for >= today,
            Order.scheduled_for < today + timedelta(days=1),
        )
    )
    active_subscriptions = scalar(
        select(func.count(Subscription.id)).where(
            Subscription.business_id == business_id, Subscription.status == "ACTIVE"
        )
    )
    wallet_total = scalar(
        select(func.coalesce(func.sum(Customer.wallet_balance), 0)).where(Customer.business_id == business_id)
    )

    average_order_value = money(money(order_value) / orders_in_range) if orders_in_range else Decimal("0.00")
    return {
        "range": range_key,
        "since": since.isoformat(),
        "activeCustomers": active_customers,
        "newCustomers": new_customers,
        "revenue": money(revenue),
        "ordersInRange": orders_in_range,
        "activeOrders": active_orders,
        "ordersToday": orders_today,
        "averageOrderValue": average_order_value,
        "activeSubscriptions": active_subscriptions,
        "totalWalletBalance": money(wallet_total),
    }
