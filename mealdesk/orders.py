import logging
from datetime import datetime, time, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mealdesk import billing, ledger
from mealdesk.codes import allocate_code, generate_invoice_number, generate_order_number
from mealdesk.config import settings
from mealdesk.errors import ConflictError, NotFoundError, ValidationError
from mealdesk.models import (
    Customer,
    InventoryItem,
    Invoice,
    Kitchen,
    MenuItem,
    Order,
    OrderItem,
    PlanItem,
    StockMovement,
    Subscription,
    SubscriptionPlan,
)
from mealdesk.pricing import compute_price_totals, compute_totals, money

logger = logging.getLogger(__name__)

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
PREPARING = "PREPARING"
READY = "READY"
OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
DELIVERED = "DELIVERED"
CANCELLED = "CANCELLED"

DELIVERY_FLOW = (PENDING, CONFIRMED, PREPARING, READY, OUT_FOR_DELIVERY, DELIVERED)
ORDER_STATUSES = DELIVERY_FLOW + (CANCELLED,)
TERMINAL_STATUSES = (DELIVERED, CANCELLED)
CANCELLABLE_STATUSES = (PENDING, CONFIRMED, PREPARING)

ORDER_TYPES = ("SUBSCRIPTION", "BULK", "ONE_TIME")


class Customizations(BaseModel):
    """Per-subscription changes to a plan's item list, copied onto every order item."""

    model_config = {"extra": "forbid"}

    version: int = 1
    item_quantities: dict[int, int] = Field(default_factory=dict)
    excluded_items: list[int] = Field(default_factory=list)
    preferences: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def parse(cls, raw: Optional[dict]) -> "Customizations":
        if not raw:
            return cls()
        try:
            return cls.model_validate(raw)
        except ValueError as exc:
            raise ValidationError(f"Invalid customizations: {exc}") from None


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if target == CANCELLED:
        return current in CANCELLABLE_STATUSES
    if target not in DELIVERY_FLOW:
        return False
    return DELIVERY_FLOW.index(target) > DELIVERY_FLOW.index(current)


def default_delivery_address(customer: Customer, requested: Optional[dict] = None) -> dict:
    return requested or customer.address or {}


def assign_kitchen(db: Session, business_id: int, kitchen_id: Optional[int]) -> Optional[int]:
    """Validate a requested kitchen, or pick the active kitchen with the most capacity."""
    if kitchen_id is not None:
        kitchen = db.execute(
            select(Kitchen).where(
                Kitchen.id == kitchen_id,
                Kitchen.business_id == business_id,
                Kitchen.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if kitchen is None:
            raise NotFoundError("Kitchen not found")
        return kitchen.id
    kitchen = db.execute(
        select(Kitchen)
        .where(Kitchen.business_id == business_id, Kitchen.is_active.is_(True))
        .order_by(Kitchen.capacity.desc(), Kitchen.id)
        .limit(1)
    ).scalar_one_or_none()
    if kitchen is None:
        logger.warning("business %s has no active kitchen; leaving kitchen unassigned", business_id)
        return None
    return kitchen.id


def plan_rows(db: Session, plan_id: int) -> list[tuple[PlanItem, MenuItem]]:
    return db.execute(
        select(PlanItem, MenuItem)
        .join(MenuItem, MenuItem.id == PlanItem.menu_item_id)
        .where(PlanItem.plan_id == plan_id)
        .order_by(PlanItem.sort_order, PlanItem.id)
    ).all()


def plan_lines(db: Session, plan: SubscriptionPlan, customizations: Customizations) -> list[tuple[PlanItem, MenuItem, int]]:
    lines = []
    for plan_item, menu_item in plan_rows(db, plan.id):
        if plan_item.is_optional and menu_item.id in customizations.excluded_items:
            continue
        quantity = customizations.item_quantities.get(menu_item.id, plan_item.quantity)
        if quantity <= 0:
            raise ValidationError(f"Quantity for menu item {menu_item.id} must be positive")
        lines.append((plan_item, menu_item, quantity))
    return lines


def materialize_orders(
    db: Session,
    subscription: Subscription,
    plan: SubscriptionPlan,
    customer: Customer,
    tax_rate: Optional[Decimal] = None,
) -> list[Order]:
    """Create one PENDING order per projected delivery date of a subscription.

    Orders are flushed, never committed; they live or die with the caller's
    unit of work.
    """
    rate = settings.default_tax_rate if tax_rate is None else tax_rate
    customizations = Customizations.parse(subscription.customizations)
    lines = plan_lines(db, plan, customizations)
    totals = compute_price_totals(plan.price, rate)
    address = default_delivery_address(customer, subscription.delivery_address)

    orders = []
    for day in billing.project_order_dates(subscription.start_date, plan.type):
        order = Order(
            business_id=subscription.business_id,
            order_number=allocate_code(db, Order.order_number, generate_order_number, settings.code_max_attempts),
            customer_id=subscription.customer_id,
            kitchen_id=subscription.kitchen_id,
            subscription_id=subscription.id,
            type="SUBSCRIPTION",
            status=PENDING,
            scheduled_for=datetime.combine(day, time.min, tzinfo=timezone.utc),
            total_amount=totals.subtotal,
            tax_amount=totals.tax_amount,
            final_amount=totals.total,
            delivery_address=address,
            delivery_instructions=subscription.delivery_instructions,
        )
        db.add(order)
        db.flush()
        for _, menu_item, quantity in lines:
            db.add(
                OrderItem(
                    order_id=order.id,
                    menu_item_id=menu_item.id,
                    quantity=quantity,
                    unit_price=money(menu_item.price),
                    total_price=money(menu_item.price * quantity),
                    customizations=subscription.customizations,
                )
            )
        orders.append(order)
    db.flush()
    logger.info("materialized %d orders for subscription %s", len(orders), subscription.id)
    return orders


def consume_inventory(db: Session, order: Order, items: list[OrderItem]) -> None:
    if order.kitchen_id is None:
        return
    for item in items:
        stock_rows = db.execute(
            select(InventoryItem).where(
                InventoryItem.menu_item_id == item.menu_item_id,
                InventoryItem.kitchen_id == order.kitchen_id,
                InventoryItem.is_active.is_(True),
            )
        ).scalars().all()
        for stock in stock_rows:
            used = Decimal(item.quantity) * settings.inventory_units_per_item
            stock.current_stock = stock.current_stock - used
            db.add(
                StockMovement(
                    business_id=order.business_id,
                    inventory_item_id=stock.id,
                    type="OUT",
                    quantity=used,
                    reason="Order fulfillment",
                    reference=order.order_number,
                )
            )
    db.flush()


def restore_inventory(db: Session, order: Order) -> None:
    """Put back exactly what the order took out of stock."""
    consumed = db.execute(
        select(StockMovement.inventory_item_id, func.sum(StockMovement.quantity))
        .where(
            StockMovement.business_id == order.business_id,
            StockMovement.reference == order.order_number,
            StockMovement.type == "OUT",
        )
        .group_by(StockMovement.inventory_item_id)
    ).all()
    for inventory_item_id, quantity in consumed:
        stock = db.get(InventoryItem, inventory_item_id)
        stock.current_stock = stock.current_stock + quantity
        db.add(
            StockMovement(
                business_id=order.business_id,
                inventory_item_id=inventory_item_id,
                type="IN",
                quantity=quantity,
                reason="Order cancellation",
                reference=order.order_number,
            )
        )
    db.flush()


def create_one_time_order(
    db: Session,
    business_id: int,
    customer: Customer,
    items: list[dict],
    scheduled_for: datetime,
    order_type: str = "ONE_TIME",
    kitchen_id: Optional[int] = None,
    delivery_address: Optional[dict] = None,
    delivery_instructions: Optional[str] = None,
    special_requests: Optional[str] = None,
) -> tuple[Order, list[OrderItem], Optional[Invoice]]:
    if order_type not in ("ONE_TIME", "BULK"):
        raise ValidationError("Order type must be ONE_TIME or BULK")
    if not items:
        raise ValidationError("Order must have at least one item")

    priced = []
    for index, line in enumerate(items):
        quantity = line.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError(f"Invalid quantity at index {index}")
        menu_item = db.execute(
            select(MenuItem).where(
                MenuItem.id == line.get("menuItemId"),
                MenuItem.business_id == business_id,
                MenuItem.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if menu_item is None:
            raise NotFoundError(f"Menu item {line.get('menuItemId')} not found")
        priced.append((menu_item, quantity, line.get("customizations")))

    totals = compute_totals(
        [{"quantity": quantity, "unitPrice": menu_item.price} for menu_item, quantity, _ in priced],
        settings.default_tax_rate,
    )
    order = Order(
        business_id=business_id,
        order_number=allocate_code(db, Order.order_number, generate_order_number, settings.code_max_attempts),
        customer_id=customer.id,
        kitchen_id=assign_kitchen(db, business_id, kitchen_id),
        type=order_type,
        status=PENDING,
        scheduled_for=scheduled_for,
        total_amount=totals.subtotal,
        tax_amount=totals.tax_amount,
        final_amount=totals.total,
        delivery_address=default_delivery_address(customer, delivery_address),
        delivery_instructions=delivery_instructions,
        special_requests=special_requests,
    )
    db.add(order)
    db.flush()
    order_items = []
    for menu_item, quantity, customizations in priced:
        order_item = OrderItem(
            order_id=order.id,
            menu_item_id=menu_item.id,
            quantity=quantity,
            unit_price=money(menu_item.price),
            total_price=money(menu_item.price * quantity),
            customizations=customizations,
        )
        db.add(order_item)
        order_items.append(order_item)
    db.flush()

    invoice = None
    if order_type == "ONE_TIME":
        invoice = Invoice(
            business_id=business_id,
            invoice_number=allocate_code(
                db, Invoice.invoice_number, generate_invoice_number, settings.code_max_attempts
            ),
            customer_id=customer.id,
            order_id=order.id,
            subtotal_amount=totals.subtotal,
            tax_amount=totals.tax_amount,
            discount_amount=totals.discount_amount,
            total_amount=totals.total,
            status="PENDING",
            due_date=billing.due_in(settings.order_invoice_due_days),
            billing_address=order.delivery_address,
        )
        db.add(invoice)
        db.flush()

    consume_inventory(db, order, order_items)
    logger.info("order %s created for customer %s", order.order_number, customer.customer_code)
    return order, order_items, invoice


def order_invoice(db: Session, order: Order) -> Optional[Invoice]:
    return db.execute(
        select(Invoice).where(Invoice.order_id == order.id).order_by(Invoice.id.desc()).limit(1)
    ).scalar_one_or_none()


def transition_order(db: Session, order: Order, target: str, changes: Optional[dict[str, Any]] = None) -> Order:
    """Move an order to ``target`` and apply that state's side effects.

    ``changes`` carries plain field updates (delivery details, explicit
    ``prepared_at``/``delivered_at``) applied alongside the transition.
    """
    changes = changes or {}
    if target not in ORDER_STATUSES:
        raise ValidationError(f"Unknown order status: {target}")
    current = order.status
    if not can_transition(current, target):
        raise ConflictError(f"Cannot move order {order.order_number} from {current} to {target}")

    for field_name, value in changes.items():
        setattr(order, field_name, value)
    if current == target:
        db.flush()
        return order

    now = datetime.now(timezone.utc)
    order.status = target
    if target == READY and changes.get("prepared_at") is None:
        order.prepared_at = now
    if target == DELIVERED:
        if changes.get("delivered_at") is None:
            order.delivered_at = now
        _settle_delivered(db, order, now)
    if target == CANCELLED:
        _compensate_cancelled(db, order)
    db.flush()
    logger.info("order %s %s -> %s", order.order_number, current, target)
    return order


def _settle_delivered(db: Session, order: Order, now: datetime) -> None:
    invoice = order_invoice(db, order)
    if invoice is not None and invoice.status != "PAID":
        invoice.status = "PAID"
        invoice.paid_at = now
        invoice.payment_method = "WALLET"
    customer = ledger.lock_customer(db, order.business_id, order.customer_id)
    ledger.accrue_loyalty(customer, order.final_amount)


def _compensate_cancelled(db: Session, order: Order) -> None:
    invoice = order_invoice(db, order)
    if invoice is not None and invoice.status == "PAID":
        customer = ledger.lock_customer(db, order.business_id, order.customer_id)
        ledger.apply_entry(
            db,
            customer,
            ledger.REFUND,
            order.final_amount,
            f"Refund for cancelled order {order.order_number}",
            order.order_number,
        )
        invoice.status = "REFUNDED"
    elif invoice is not None and invoice.status in ("PENDING", "OVERDUE"):
        invoice.status = "CANCELLED"
    restore_inventory(db, order)
