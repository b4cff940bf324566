from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from mealdesk.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY = Numeric(12, 2)
QUANTITY = Numeric(12, 3)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Business(Base):
    __tablename__ = "business"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class User(Base):
    __tablename__ = "app_user"
    __table_args__ = (
        CheckConstraint(
            "role IN ('SUPER_ADMIN', 'BUSINESS_OWNER', 'KITCHEN_MANAGER', 'STAFF', 'CUSTOMER')",
            name="user_role",
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("business.id"))
    customer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("customer.id"))
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    api_token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Kitchen(Base):
    __tablename__ = "kitchen"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    address: Mapped[dict | None] = mapped_column(JSON_TYPE)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class MenuItem(Base):
    __tablename__ = "menu_item"
    __table_args__ = (CheckConstraint("price >= 0", name="menu_item_price_non_negative"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class InventoryItem(Base):
    __tablename__ = "inventory_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    kitchen_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("kitchen.id"), nullable=False)
    menu_item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("menu_item.id"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    current_stock: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class StockMovement(Base):
    __tablename__ = "stock_movement"
    __table_args__ = (
        CheckConstraint("type IN ('IN', 'OUT')", name="stock_movement_type"),
        Index("ix_stock_movement_reference", "reference"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    inventory_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("inventory_item.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    reference: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Customer(Base):
    __tablename__ = "customer"
    __table_args__ = (
        UniqueConstraint("business_id", "email", name="uq_customer_business_email"),
        CheckConstraint("wallet_balance >= 0", name="customer_wallet_non_negative"),
        CheckConstraint("loyalty_points >= 0", name="customer_loyalty_non_negative"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    customer_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32))
    address: Mapped[dict | None] = mapped_column(JSON_TYPE)
    preferences: Mapped[dict | None] = mapped_column(JSON_TYPE)
    wallet_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    loyalty_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __mapper_args__ = {"version_id_col": version}


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plan"
    __table_args__ = (
        CheckConstraint("type IN ('DAILY', 'WEEKLY', 'MONTHLY')", name="plan_type"),
        CheckConstraint("price >= 0", name="plan_price_non_negative"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PlanItem(Base):
    __tablename__ = "plan_item"
    __table_args__ = (CheckConstraint("quantity > 0", name="plan_item_quantity_positive"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("subscription_plan.id"), nullable=False)
    menu_item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("menu_item.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_optional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Subscription(Base):
    __tablename__ = "subscription"
    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'PAUSED', 'CANCELLED', 'EXPIRED')", name="subscription_status"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    customer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("customer.id"), nullable=False)
    plan_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("subscription_plan.id"), nullable=False)
    kitchen_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("kitchen.id"))
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    next_billing_date: Mapped[date] = mapped_column(Date, nullable=False)
    paused_until: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    delivery_address: Mapped[dict | None] = mapped_column(JSON_TYPE)
    delivery_instructions: Mapped[str | None] = mapped_column(Text)
    customizations: Mapped[dict | None] = mapped_column(JSON_TYPE)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("type IN ('SUBSCRIPTION', 'BULK', 'ONE_TIME')", name="order_type"),
        CheckConstraint(
            "status IN ('PENDING', 'CONFIRMED', 'PREPARING', 'READY', "
            "'OUT_FOR_DELIVERY', 'DELIVERED', 'CANCELLED')",
            name="order_status",
        ),
        Index("ix_orders_business_scheduled", "business_id", "scheduled_for"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("customer.id"), nullable=False)
    kitchen_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("kitchen.id"))
    subscription_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("subscription.id"))
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="PENDING")
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    final_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    delivery_address: Mapped[dict | None] = mapped_column(JSON_TYPE)
    delivery_instructions: Mapped[str | None] = mapped_column(Text)
    special_requests: Mapped[str | None] = mapped_column(Text)
    prepared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class OrderItem(Base):
    __tablename__ = "order_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("orders.id"), nullable=False)
    menu_item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("menu_item.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    customizations: Mapped[dict | None] = mapped_column(JSON_TYPE)


class Invoice(Base):
    __tablename__ = "invoice"
    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PAID', 'OVERDUE', 'CANCELLED', 'REFUNDED')", name="invoice_status"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("customer.id"), nullable=False)
    subscription_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("subscription.id"))
    order_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("orders.id"))
    subtotal_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_method: Mapped[str | None] = mapped_column(String(32))
    payment_reference: Mapped[str | None] = mapped_column(Text)
    billing_address: Mapped[dict | None] = mapped_column(JSON_TYPE)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class InvoiceItem(Base):
    __tablename__ = "invoice_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("invoice.id"), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)


class WalletTransaction(Base):
    __tablename__ = "wallet_transaction"
    __table_args__ = (
        CheckConstraint("type IN ('CREDIT', 'DEBIT', 'REFUND', 'BONUS')", name="wallet_txn_type"),
        CheckConstraint("status IN ('PENDING', 'COMPLETED', 'FAILED')", name="wallet_txn_status"),
        CheckConstraint("amount > 0", name="wallet_txn_amount_positive"),
        CheckConstraint("balance_after >= 0", name="wallet_txn_balance_non_negative"),
        Index("ix_wallet_transaction_customer_created", "customer_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    customer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("customer.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    reference: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="COMPLETED")
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class BusinessMetrics(Base):
    __tablename__ = "business_metrics"
    __table_args__ = (
        UniqueConstraint("business_id", "metric_date", name="uq_business_metrics_day"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("business.id"), nullable=False)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_revenue: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    total_payments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
