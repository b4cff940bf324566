from datetime import date, datetime
from typing import Iterable, Optional

from mealdesk.models import (
    Customer,
    Invoice,
    InvoiceItem,
    Kitchen,
    MenuItem,
    Order,
    OrderItem,
    PlanItem,
    Subscription,
    SubscriptionPlan,
    WalletTransaction,
)

LOYALTY_TIERS = (
    ("platinum", 10000),
    ("gold", 5000),
    ("silver", 1000),
    ("bronze", 0),
)


def _iso(value: Optional[date | datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def loyalty_tier(points: int) -> str:
    for tier, floor in LOYALTY_TIERS:
        if points >= floor:
            return tier
    return "bronze"


def customer_data(customer: Customer) -> dict:
    return {
        "id": customer.id,
        "customerCode": customer.customer_code,
        "businessId": customer.business_id,
        "email": customer.email,
        "firstName": customer.first_name,
        "lastName": customer.last_name,
        "phone": customer.phone,
        "address": customer.address,
        "preferences": customer.preferences,
        "walletBalance": customer.wallet_balance,
        "loyaltyPoints": customer.loyalty_points,
        "loyaltyTier": loyalty_tier(customer.loyalty_points),
        "isActive": customer.is_active,
        "createdAt": _iso(customer.created_at),
    }


def kitchen_data(kitchen: Optional[Kitchen]) -> Optional[dict]:
    if kitchen is None:
        return None
    return {
        "id": kitchen.id,
        "name": kitchen.name,
        "capacity": kitchen.capacity,
        "isActive": kitchen.is_active,
    }


def menu_item_data(menu_item: MenuItem) -> dict:
    return {
        "id": menu_item.id,
        "name": menu_item.name,
        "description": menu_item.description,
        "price": menu_item.price,
        "isActive": menu_item.is_active,
    }


def plan_data(plan: SubscriptionPlan, items: Iterable[tuple[PlanItem, MenuItem]] = ()) -> dict:
    return {
        "id": plan.id,
        "businessId": plan.business_id,
        "name": plan.name,
        "description": plan.description,
        "type": plan.type,
        "price": plan.price,
        "duration": plan.duration,
        "isActive": plan.is_active,
        "planItems": [
            {
                "id": plan_item.id,
                "menuItem": menu_item_data(menu_item),
                "quantity": plan_item.quantity,
                "isOptional": plan_item.is_optional,
            }
            for plan_item, menu_item in items
        ],
    }


def order_item_data(item: OrderItem) -> dict:
    return {
        "id": item.id,
        "menuItemId": item.menu_item_id,
        "quantity": item.quantity,
        "unitPrice": item.unit_price,
        "totalPrice": item.total_price,
        "customizations": item.customizations,
    }


def order_data(order: Order, items: Iterable[OrderItem] = ()) -> dict:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "businessId": order.business_id,
        "customerId": order.customer_id,
        "kitchenId": order.kitchen_id,
        "subscriptionId": order.subscription_id,
        "type": order.type,
        "status": order.status,
        "scheduledFor": _iso(order.scheduled_for),
        "totalAmount": order.total_amount,
        "taxAmount": order.tax_amount,
        "finalAmount": order.final_amount,
        "deliveryAddress": order.delivery_address,
        "deliveryInstructions": order.delivery_instructions,
        "specialRequests": order.special_requests,
        "preparedAt": _iso(order.prepared_at),
        "deliveredAt": _iso(order.delivered_at),
        "createdAt": _iso(order.created_at),
        "orderItems": [order_item_data(item) for item in items],
    }


def invoice_data(invoice: Invoice, items: Iterable[InvoiceItem] = ()) -> dict:
    return {
        "id": invoice.id,
        "invoiceNumber": invoice.invoice_number,
        "businessId": invoice.business_id,
        "customerId": invoice.customer_id,
        "subscriptionId": invoice.subscription_id,
        "orderId": invoice.order_id,
        "subtotalAmount": invoice.subtotal_amount,
        "taxAmount": invoice.tax_amount,
        "discountAmount": invoice.discount_amount,
        "totalAmount": invoice.total_amount,
        "status": invoice.status,
        "dueDate": _iso(invoice.due_date),
        "paidAt": _iso(invoice.paid_at),
        "paymentMethod": invoice.payment_method,
        "paymentReference": invoice.payment_reference,
        "billingAddress": invoice.billing_address,
        "notes": invoice.notes,
        "createdAt": _iso(invoice.created_at),
        "items": [
            {
                "id": item.id,
                "description": item.description,
                "quantity": item.quantity,
                "unitPrice": item.unit_price,
                "totalPrice": item.total_price,
            }
            for item in items
        ],
    }


def transaction_data(transaction: WalletTransaction) -> dict:
    return {
        "id": transaction.id,
        "customerId": transaction.customer_id,
        "type": transaction.type,
        "amount": transaction.amount,
        "description": transaction.description,
        "reference": transaction.reference,
        "status": transaction.status,
        "balanceAfter": transaction.balance_after,
        "createdAt": _iso(transaction.created_at),
    }


def subscription_data(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "businessId": subscription.business_id,
        "customerId": subscription.customer_id,
        "planId": subscription.plan_id,
        "kitchenId": subscription.kitchen_id,
        "startDate": _iso(subscription.start_date),
        "endDate": _iso(subscription.end_date),
        "nextBillingDate": _iso(subscription.next_billing_date),
        "pausedUntil": _iso(subscription.paused_until),
        "status": subscription.status,
        "autoRenew": subscription.auto_renew,
        "deliveryAddress": subscription.delivery_address,
        "deliveryInstructions": subscription.delivery_instructions,
        "customizations": subscription.customizations,
        "notes": subscription.notes,
        "createdAt": _iso(subscription.created_at),
    }
