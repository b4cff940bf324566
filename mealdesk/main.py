import logging
import time as clock
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import func, or_, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from mealdesk import billing, invoicing, ledger, orders, stats, subscriptions
from mealdesk.auth import BUSINESS_OWNER, CUSTOMER, Principal, issue_token, resolve_principal
from mealdesk.codes import allocate_code, generate_customer_code
from mealdesk.config import settings
from mealdesk.db import Base, build_engine, build_session_factory, get_db, paginate, unit_of_work
from mealdesk.errors import ConflictError, MealdeskError, NotFoundError, ValidationError
from mealdesk.log import configure_logging
from mealdesk.models import (
    Business,
    Customer,
    InventoryItem,
    Invoice,
    InvoiceItem,
    Kitchen,
    MenuItem,
    Order,
    OrderItem,
    PlanItem,
    Subscription,
    SubscriptionPlan,
    User,
    WalletTransaction,
)
from mealdesk.serializers import (
    LOYALTY_TIERS,
    customer_data,
    invoice_data,
    kitchen_data,
    menu_item_data,
    order_data,
    plan_data,
    transaction_data,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    engine = build_engine(settings.database_url, echo=settings.sql_echo)
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.request_timeout_seconds = settings.request_timeout_seconds
    logger.info("mealdesk started")
    yield
    engine.dispose()


app = FastAPI(title="Mealdesk", lifespan=lifespan)


def _meta() -> dict:
    return {
        "request_id": f"req_{uuid4().hex}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _ok(data: Any, **extra: Any) -> dict:
    return {"success": True, "data": data, **extra, "meta": _meta()}


def _error(status_code: int, kind: str, message: str, data: Any = None) -> JSONResponse:
    content = {"success": False, "error": kind, "message": message, "meta": _meta()}
    if data is not None:
        content["data"] = data
    return JSONResponse(status_code=status_code, content=content)


def _field_name(loc: tuple) -> str:
    parts = [str(part) for part in loc if part not in ("body", "query", "path", "header")]
    return ".".join(parts) or "body"


@app.exception_handler(MealdeskError)
async def handle_domain_error(request: Request, exc: MealdeskError) -> JSONResponse:
    logger.warning("%s %s failed (%s): %s", request.method, request.url.path, exc.kind, exc.message)
    return _error(exc.status_code, exc.kind, exc.message)


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    missing = [_field_name(error["loc"]) for error in errors if error["type"] == "missing"]
    if missing:
        message = f"Missing required fields: {', '.join(missing)}"
    else:
        first = errors[0]
        message = f"Invalid {_field_name(first['loc'])}: {first['msg']}"
    logger.warning("%s %s rejected: %s", request.method, request.url.path, message)
    return _error(400, "Validation Error", message)


@app.exception_handler(IntegrityError)
@app.exception_handler(StaleDataError)
async def handle_write_conflict(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("%s %s write conflict: %s", request.method, request.url.path, exc)
    return _error(409, "Conflict", "The record was changed or already exists; retry the request")


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s failed", request.method, request.url.path)
    # reads degrade to an empty result instead of a bare failure
    data = [] if request.method == "GET" else None
    return _error(500, "Internal Server Error", "Something went wrong; please try again", data)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _scoped_one(db: Session, principal: Principal, model, entity_id: int, label: str):
    row = principal.scope(db.query(model), model).filter(model.id == entity_id).one_or_none()
    if row is None:
        raise NotFoundError(f"{label} not found")
    return row


def _day_bounds(from_date: Optional[date], to_date: Optional[date]) -> tuple[Optional[datetime], Optional[datetime]]:
    start = datetime.combine(from_date, time.min, tzinfo=timezone.utc) if from_date else None
    end = datetime.combine(to_date + timedelta(days=1), time.min, tzinfo=timezone.utc) if to_date else None
    return start, end


@app.get("/", tags=["root"])
def root() -> dict:
    return {"status": "ok", "service": "mealdesk"}


@app.get("/health", tags=["health"])
def health() -> dict:
    return {"status": "ok"}


@app.get("/api/v1/status", tags=["health"])
def status(db: Session = Depends(get_db)) -> dict:
    started = clock.perf_counter()
    db.execute(text("SELECT 1"))
    latency_ms = round((clock.perf_counter() - started) * 1000, 2)
    return _ok({"database": "ok", "latencyMs": latency_ms})


class BusinessCreate(ApiModel):
    name: str = Field(min_length=1)
    owner_email: str = Field(min_length=3)


@app.post("/api/v1/businesses", tags=["Businesses"], status_code=201)
def create_business(payload: BusinessCreate, db: Session = Depends(get_db)) -> dict:
    with unit_of_work(db):
        if db.execute(select(User.id).where(User.email == payload.owner_email)).first() is not None:
            raise ConflictError("A user with this email already exists")
        business = Business(name=payload.name.strip(), is_active=True)
        db.add(business)
        db.flush()
        token, token_hash = issue_token()
        owner = User(
            business_id=business.id,
            email=payload.owner_email,
            role=BUSINESS_OWNER,
            api_token_hash=token_hash,
            is_active=True,
        )
        db.add(owner)
        db.flush()
        data = {
            "business": {"id": business.id, "name": business.name},
            "owner": {"id": owner.id, "email": owner.email, "role": owner.role},
            "apiToken": token,
        }
    logger.info("business %s created with owner %s", data["business"]["id"], payload.owner_email)
    return _ok(data)


@app.get("/api/v1/businesses/public", tags=["Businesses"])
def list_public_businesses(db: Session = Depends(get_db)) -> dict:
    rows = db.execute(
        select(Business).where(Business.is_active.is_(True)).order_by(Business.name)
    ).scalars().all()
    return _ok([{"id": row.id, "name": row.name} for row in rows])


class KitchenCreate(ApiModel):
    name: str = Field(min_length=1)
    capacity: int = Field(default=0, ge=0)
    address: Optional[dict[str, Any]] = None
    is_active: bool = True


@app.post("/api/v1/kitchens", tags=["Kitchens"], status_code=201)
def create_kitchen(
    payload: KitchenCreate,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("kitchens:write")
    with unit_of_work(db):
        kitchen = Kitchen(business_id=principal.business_id, **payload.model_dump())
        db.add(kitchen)
        db.flush()
        data = kitchen_data(kitchen)
    return _ok(data)


@app.get("/api/v1/kitchens", tags=["Kitchens"])
def list_kitchens(
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    rows = principal.scope(db.query(Kitchen), Kitchen).order_by(Kitchen.id).all()
    return _ok([kitchen_data(row) for row in rows])


class MenuItemCreate(ApiModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    is_active: bool = True


@app.post("/api/v1/menu-items", tags=["Menu"], status_code=201)
def create_menu_item(
    payload: MenuItemCreate,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("menu:write")
    with unit_of_work(db):
        menu_item = MenuItem(business_id=principal.business_id, **payload.model_dump())
        db.add(menu_item)
        db.flush()
        data = menu_item_data(menu_item)
    return _ok(data)


@app.get("/api/v1/menu-items", tags=["Menu"])
def list_menu_items(
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    rows = principal.scope(db.query(MenuItem), MenuItem).order_by(MenuItem.id).all()
    return _ok([menu_item_data(row) for row in rows])


class PlanItemInput(ApiModel):
    menu_item_id: int
    quantity: int = Field(default=1, gt=0)
    is_optional: bool = False


class PlanCreate(ApiModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    type: str
    price: Decimal = Field(ge=0)
    duration: int = Field(gt=0)
    is_active: bool = True
    items: list[PlanItemInput] = Field(default_factory=list)


def _active_menu_item(db: Session, business_id: int, menu_item_id: int) -> MenuItem:
    menu_item = db.execute(
        select(MenuItem).where(
            MenuItem.id == menu_item_id,
            MenuItem.business_id == business_id,
            MenuItem.is_active.is_(True),
        )
    ).scalar_one_or_none()
    if menu_item is None:
        raise NotFoundError(f"Menu item {menu_item_id} not found")
    return menu_item


@app.post("/api/v1/plans", tags=["Plans"], status_code=201)
def create_plan(
    payload: PlanCreate,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("plans:write")
    if payload.type not in billing.PLAN_TYPES:
        raise ValidationError(f"Plan type must be one of {', '.join(billing.PLAN_TYPES)}")
    with unit_of_work(db):
        plan = SubscriptionPlan(
            business_id=principal.business_id,
            **payload.model_dump(exclude={"items"}),
        )
        db.add(plan)
        db.flush()
        for position, item in enumerate(payload.items):
            _active_menu_item(db, principal.business_id, item.menu_item_id)
            db.add(PlanItem(plan_id=plan.id, sort_order=position, **item.model_dump()))
        db.flush()
        data = plan_data(plan, orders.plan_rows(db, plan.id))
    return _ok(data)


@app.get("/api/v1/plans", tags=["Plans"])
def list_plans(
    plan_type: Optional[str] = Query(default=None, alias="type"),
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("plans:read")
    query = principal.scope(db.query(SubscriptionPlan), SubscriptionPlan).filter(
        SubscriptionPlan.is_active.is_(True)
    )
    if plan_type is not None:
        query = query.filter(SubscriptionPlan.type == plan_type)
    rows = query.order_by(SubscriptionPlan.id).all()
    return _ok([plan_data(plan, orders.plan_rows(db, plan.id)) for plan in rows])


@app.get("/api/v1/plans/{plan_id}", tags=["Plans"])
def get_plan(
    plan_id: int,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("plans:read")
    plan = _scoped_one(db, principal, SubscriptionPlan, plan_id, "Subscription plan")
    return _ok(plan_data(plan, orders.plan_rows(db, plan.id)))


class InventoryItemCreate(ApiModel):
    kitchen_id: int
    menu_item_id: int
    name: str = Field(min_length=1)
    current_stock: Decimal = Field(default=Decimal("0"), ge=0)


def _inventory_data(row: InventoryItem) -> dict:
    return {
        "id": row.id,
        "kitchenId": row.kitchen_id,
        "menuItemId": row.menu_item_id,
        "name": row.name,
        "currentStock": row.current_stock,
        "isActive": row.is_active,
    }


@app.post("/api/v1/inventory", tags=["Inventory"], status_code=201)
def create_inventory_item(
    payload: InventoryItemCreate,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("kitchens:write")
    with unit_of_work(db):
        orders.assign_kitchen(db, principal.business_id, payload.kitchen_id)
        _active_menu_item(db, principal.business_id, payload.menu_item_id)
        row = InventoryItem(business_id=principal.business_id, **payload.model_dump())
        db.add(row)
        db.flush()
        data = _inventory_data(row)
    return _ok(data)


@app.get("/api/v1/inventory", tags=["Inventory"])
def list_inventory(
    kitchen_id: Optional[int] = Query(default=None, alias="kitchenId"),
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("kitchens:write")
    query = principal.scope(db.query(InventoryItem), InventoryItem)
    if kitchen_id is not None:
        query = query.filter(InventoryItem.kitchen_id == kitchen_id)
    return _ok([_inventory_data(row) for row in query.order_by(InventoryItem.id).all()])


class CustomerCreate(ApiModel):
    email: str = Field(min_length=3)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: Optional[str] = None
    address: Optional[dict[str, Any]] = None
    preferences: Optional[dict[str, Any]] = None
    initial_wallet_balance: Decimal = Field(default=Decimal("0"), ge=0)
    create_login: bool = False


def _active_subscription_counts(db: Session, customer_ids: list[int]) -> dict[int, int]:
    if not customer_ids:
        return {}
    rows = db.execute(
        select(Subscription.customer_id, func.count(Subscription.id))
        .where(Subscription.customer_id.in_(customer_ids), Subscription.status == "ACTIVE")
        .group_by(Subscription.customer_id)
    ).all()
    return dict(rows)


@app.post("/api/v1/customers", tags=["Customers"], status_code=201)
def create_customer(
    payload: CustomerCreate,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("customers:write")
    token = None
    with unit_of_work(db):
        duplicate = db.execute(
            select(Customer.id).where(
                Customer.business_id == principal.business_id, Customer.email == payload.email
            )
        ).first()
        if duplicate is not None:
            raise ConflictError("Customer with this email already exists")
        customer = Customer(
            business_id=principal.business_id,
            customer_code=allocate_code(
                db, Customer.customer_code, generate_customer_code, settings.code_max_attempts
            ),
            wallet_balance=Decimal("0.00"),
            loyalty_points=0,
            **payload.model_dump(exclude={"initial_wallet_balance", "create_login"}),
        )
        db.add(customer)
        db.flush()
        if payload.initial_wallet_balance > 0:
            ledger.apply_entry(db, customer, ledger.CREDIT, payload.initial_wallet_balance, "Opening balance")
        if payload.create_login:
            if db.execute(select(User.id).where(User.email == payload.email)).first() is not None:
                raise ConflictError("A user with this email already exists")
            token, token_hash = issue_token()
            db.add(
                User(
                    business_id=principal.business_id,
                    customer_id=customer.id,
                    email=payload.email,
                    role=CUSTOMER,
                    api_token_hash=token_hash,
                    is_active=True,
                )
            )
            db.flush()
    data = customer_data(customer)
    if token is not None:
        data["apiToken"] = token
    logger.info("customer %s created in business %s", customer.customer_code, principal.business_id)
    return _ok(data)


@app.get("/api/v1/customers", tags=["Customers"])
def list_customers(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: Optional[str] = None,
    customer_status: Optional[str] = Query(default=None, alias="status"),
    loyalty_tier: Optional[str] = Query(default=None, alias="loyaltyTier"),
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("customers:read")
    query = principal.scope(db.query(Customer), Customer)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(
                Customer.email.ilike(pattern),
                Customer.first_name.ilike(pattern),
                Customer.last_name.ilike(pattern),
                Customer.customer_code.ilike(pattern),
            )
        )
    if customer_status == "active":
        query = query.filter(Customer.is_active.is_(True))
    elif customer_status == "inactive":
        query = query.filter(Customer.is_active.is_(False))
    if loyalty_tier is not None:
        floors = dict(LOYALTY_TIERS)
        if loyalty_tier not in floors:
            raise ValidationError(f"Unknown loyalty tier: {loyalty_tier}")
        query = query.filter(Customer.loyalty_points >= floors[loyalty_tier])
        ceilings = [floor for _, floor in LOYALTY_TIERS if floor > floors[loyalty_tier]]
        if ceilings:
            query = query.filter(Customer.loyalty_points < min(ceilings))
    rows, pagination = paginate(query.order_by(Customer.created_at.desc(), Customer.id.desc()), page, limit)
    counts = _active_subscription_counts(db, [row.id for row in rows])
    data = []
    for row in rows:
        item = customer_data(row)
        item["activeSubscriptions"] = counts.get(row.id, 0)
        data.append(item)
    return _ok(data, pagination=pagination)


@app.get("/api/v1/customers/{customer_id}", tags=["Customers"])
def get_customer(
    customer_id: int,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    if not (principal.is_customer and principal.customer_id == customer_id):
        principal.require("customers:read")
    customer = _scoped_one(db, principal, Customer, customer_id, "Customer")
    data = customer_data(customer)
    data["activeSubscriptions"] = _active_subscription_counts(db, [customer.id]).get(customer.id, 0)
    return _ok(data)


class SubscriptionCreate(ApiModel):
    customer_id: int
    plan_id: int
    start_date: date
    kitchen_id: Optional[int] = None
    end_date: Optional[date] = None
    auto_renew: bool = True
    delivery_address: Optional[dict[str, Any]] = None
    delivery_instructions: Optional[str] = None
    customizations: Optional[dict[str, Any]] = None
    notes: Optional[str] = None


class SubscriptionUpdate(ApiModel):
    status: Optional[str] = None
    kitchen_id: Optional[int] = None
    end_date: Optional[date] = None
    paused_until: Optional[date] = None
    auto_renew: Optional[bool] = None
    delivery_address: Optional[dict[str, Any]] = None
    delivery_instructions: Optional[str] = None
    customizations: Optional[dict[str, Any]] = None
    notes: Optional[str] = None


@app.post("/api/v1/subscriptions", tags=["Subscriptions"], status_code=201)
def create_subscription(
    payload: SubscriptionCreate,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    subscription = subscriptions.create_subscription(db, principal, payload.model_dump())
    return _ok(subscriptions.hydrate(db, subscription))


@app.get("/api/v1/subscriptions", tags=["Subscriptions"])
def list_subscriptions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    subscription_status: Optional[str] = Query(default=None, alias="status"),
    plan_type: Optional[str] = Query(default=None, alias="planType"),
    customer_id: Optional[int] = Query(default=None, alias="customerId"),
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    data, pagination = subscriptions.list_subscriptions(
        db,
        principal,
        page=page,
        limit=limit,
        status=subscription_status,
        plan_type=plan_type,
        customer_id=customer_id,
    )
    return _ok(data, pagination=pagination)


@app.get("/api/v1/subscriptions/{subscription_id}", tags=["Subscriptions"])
def get_subscription(
    subscription_id: int,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("subscriptions:read")
    subscription = subscriptions.get_scoped(db, principal, subscription_id)
    return _ok(subscriptions.hydrate(db, subscription, order_limit=10, invoice_limit=5))


@app.put("/api/v1/subscriptions/{subscription_id}", tags=["Subscriptions"])
def update_subscription(
    subscription_id: int,
    payload: SubscriptionUpdate,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    subscription = subscriptions.update_subscription(db, principal, subscription_id, changes)
    return _ok(subscriptions.hydrate(db, subscription))


@app.delete("/api/v1/subscriptions/{subscription_id}", tags=["Subscriptions"])
def cancel_subscription(
    subscription_id: int,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    subscription = subscriptions.cancel_subscription(db, principal, subscription_id)
    return _ok(subscriptions.hydrate(db, subscription), message="Subscription cancelled")


class OrderCreate(ApiModel):
    customer_id: Optional[int] = None
    kitchen_id: Optional[int] = None
    type: str = "ONE_TIME"
    scheduled_for: datetime
    items: list[dict[str, Any]]
    delivery_address: Optional[dict[str, Any]] = None
    delivery_instructions: Optional[str] = None
    special_requests: Optional[str] = None


class OrderUpdate(ApiModel):
    status: Optional[str] = None
    kitchen_id: Optional[int] = None
    delivery_address: Optional[dict[str, Any]] = None
    delivery_instructions: Optional[str] = None
    special_requests: Optional[str] = None
    prepared_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


def _order_items(db: Session, order_id: int) -> list[OrderItem]:
    return db.execute(
        select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
    ).scalars().all()


def _order_detail(db: Session, order: Order) -> dict:
    data = order_data(order, _order_items(db, order.id))
    invoice = orders.order_invoice(db, order)
    data["invoice"] = invoice_data(invoice) if invoice is not None else None
    return data


@app.post("/api/v1/orders", tags=["Orders"], status_code=201)
def create_order(
    payload: OrderCreate,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("orders:write")
    customer_id = principal.target_customer_id(payload.customer_id)
    with unit_of_work(db):
        customer = _scoped_one(db, principal, Customer, customer_id, "Customer")
        order, order_items, invoice = orders.create_one_time_order(
            db,
            principal.business_id,
            customer,
            payload.items,
            payload.scheduled_for,
            order_type=payload.type,
            kitchen_id=payload.kitchen_id,
            delivery_address=payload.delivery_address,
            delivery_instructions=payload.delivery_instructions,
            special_requests=payload.special_requests,
        )
        data = order_data(order, order_items)
        data["invoice"] = invoice_data(invoice) if invoice is not None else None
    return _ok(data)


@app.get("/api/v1/orders", tags=["Orders"])
def list_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    order_status: Optional[str] = Query(default=None, alias="status"),
    kitchen_id: Optional[int] = Query(default=None, alias="kitchenId"),
    customer_id: Optional[int] = Query(default=None, alias="customerId"),
    order_type: Optional[str] = Query(default=None, alias="type"),
    scheduled_date: Optional[date] = Query(default=None, alias="date"),
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("orders:read")
    query = principal.scope(db.query(Order), Order)
    if order_status is not None:
        query = query.filter(Order.status == order_status)
    if kitchen_id is not None:
        query = query.filter(Order.kitchen_id == kitchen_id)
    if customer_id is not None:
        query = query.filter(Order.customer_id == customer_id)
    if order_type is not None:
        query = query.filter(Order.type == order_type)
    if scheduled_date is not None:
        start, end = _day_bounds(scheduled_date, scheduled_date)
        query = query.filter(Order.scheduled_for >= start, Order.scheduled_for < end)
    rows, pagination = paginate(query.order_by(Order.scheduled_for, Order.id), page, limit)
    return _ok([order_data(row, _order_items(db, row.id)) for row in rows], pagination=pagination)


@app.get("/api/v1/orders/{order_id}", tags=["Orders"])
def get_order(
    order_id: int,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("orders:read")
    order = _scoped_one(db, principal, Order, order_id, "Order")
    return _ok(_order_detail(db, order))


@app.put("/api/v1/orders/{order_id}", tags=["Orders"])
def update_order(
    order_id: int,
    payload: OrderUpdate,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("orders:write")
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    with unit_of_work(db):
        order = _scoped_one(db, principal, Order, order_id, "Order")
        target = changes.pop("status", order.status)
        if "kitchen_id" in changes:
            changes["kitchen_id"] = orders.assign_kitchen(db, principal.business_id, changes["kitchen_id"])
        orders.transition_order(db, order, target, changes)
    return _ok(_order_detail(db, order))


@app.delete("/api/v1/orders/{order_id}", tags=["Orders"])
def cancel_order(
    order_id: int,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("orders:write")
    with unit_of_work(db):
        order = _scoped_one(db, principal, Order, order_id, "Order")
        orders.transition_order(db, order, orders.CANCELLED)
    return _ok(_order_detail(db, order), message="Order cancelled")


class InvoiceCreate(ApiModel):
    customer_id: Optional[int] = None
    items: Optional[list[Any]] = None
    subscription_id: Optional[int] = None
    order_id: Optional[int] = None
    due_date: Optional[date] = None
    tax_rate: Optional[Decimal] = None
    discount_amount: Decimal = Decimal("0")
    billing_address: Optional[dict[str, Any]] = None
    notes: Optional[str] = None


class InvoicePayment(ApiModel):
    payment_method: str = "WALLET"
    payment_reference: Optional[str] = None
    amount: Optional[Decimal] = None


def _invoice_items(db: Session, invoice_id: int) -> list[InvoiceItem]:
    return db.execute(
        select(InvoiceItem).where(InvoiceItem.invoice_id == invoice_id).order_by(InvoiceItem.id)
    ).scalars().all()


@app.post("/api/v1/invoices", tags=["Invoices"], status_code=201)
def create_invoice(
    payload: InvoiceCreate,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("invoices:write")
    customer_id = principal.target_customer_id(payload.customer_id)
    invoicing.validate_invoice_request(payload.subscription_id, payload.order_id, payload.items, payload.due_date)
    with unit_of_work(db):
        customer = _scoped_one(db, principal, Customer, customer_id, "Customer")
        source = invoicing.resolve_billing_source(
            db,
            principal.business_id,
            customer,
            subscription_id=payload.subscription_id,
            order_id=payload.order_id,
            items=payload.items,
        )
        invoice, items = invoicing.create_invoice(
            db,
            customer,
            source,
            tax_rate=payload.tax_rate,
            discount=payload.discount_amount,
            due_date=payload.due_date,
            billing_address=payload.billing_address,
            notes=payload.notes,
        )
        data = invoice_data(invoice, items)
    return _ok(data)


@app.get("/api/v1/invoices", tags=["Invoices"])
def list_invoices(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    invoice_status: Optional[str] = Query(default=None, alias="status"),
    customer_id: Optional[int] = Query(default=None, alias="customerId"),
    from_date: Optional[date] = Query(default=None, alias="fromDate"),
    to_date: Optional[date] = Query(default=None, alias="toDate"),
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("invoices:read")
    query = principal.scope(db.query(Invoice), Invoice)
    if invoice_status is not None:
        query = query.filter(Invoice.status == invoice_status)
    if customer_id is not None:
        query = query.filter(Invoice.customer_id == customer_id)
    start, end = _day_bounds(from_date, to_date)
    if start is not None:
        query = query.filter(Invoice.created_at >= start)
    if end is not None:
        query = query.filter(Invoice.created_at < end)
    rows, pagination = paginate(query.order_by(Invoice.created_at.desc(), Invoice.id.desc()), page, limit)
    return _ok([invoice_data(row, _invoice_items(db, row.id)) for row in rows], pagination=pagination)


@app.get("/api/v1/invoices/{invoice_id}", tags=["Invoices"])
def get_invoice(
    invoice_id: int,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("invoices:read")
    invoice = _scoped_one(db, principal, Invoice, invoice_id, "Invoice")
    return _ok(invoice_data(invoice, _invoice_items(db, invoice.id)))


@app.post("/api/v1/invoices/{invoice_id}/pay", tags=["Invoices"])
def pay_invoice(
    invoice_id: int,
    payload: InvoicePayment,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("invoices:pay")
    with unit_of_work(db):
        invoice = (
            principal.scope(db.query(Invoice), Invoice)
            .filter(Invoice.id == invoice_id)
            .with_for_update()
            .one_or_none()
        )
        if invoice is None:
            raise NotFoundError("Invoice not found")
        invoicing.pay_invoice(
            db,
            invoice,
            payment_method=payload.payment_method,
            payment_reference=payload.payment_reference,
            amount=payload.amount,
        )
    return _ok(invoice_data(invoice, _invoice_items(db, invoice.id)), message="Payment processed successfully")


class WalletTopUp(ApiModel):
    customer_id: Optional[int] = None
    amount: Decimal = Field(gt=0)
    payment_method: str = "ONLINE"
    payment_reference: Optional[str] = None
    description: Optional[str] = None


class WalletTransfer(ApiModel):
    from_customer_id: Optional[int] = None
    to_customer_id: int
    amount: Decimal = Field(gt=0)
    description: Optional[str] = None


@app.post("/api/v1/wallet", tags=["Wallet"])
def top_up_wallet(
    payload: WalletTopUp,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("wallet:topup")
    customer_id = principal.target_customer_id(payload.customer_id)
    with unit_of_work(db):
        customer = ledger.lock_customer(db, principal.business_id, customer_id)
        entries = ledger.top_up(
            db,
            customer,
            payload.amount,
            description=payload.description or f"Wallet recharge via {payload.payment_method}",
            reference=payload.payment_reference,
        )
        data = {
            "transaction": transaction_data(entries[0].transaction),
            "bonusTransaction": transaction_data(entries[1].transaction) if len(entries) > 1 else None,
            "newBalance": entries[-1].new_balance,
        }
    data["customer"] = customer_data(customer)
    return _ok(data, message="Money added to wallet successfully")


@app.get("/api/v1/wallet", tags=["Wallet"])
def wallet_history(
    customer_id: Optional[int] = Query(default=None, alias="customerId"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    transaction_type: Optional[str] = Query(default=None, alias="type"),
    from_date: Optional[date] = Query(default=None, alias="fromDate"),
    to_date: Optional[date] = Query(default=None, alias="toDate"),
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("wallet:read")
    customer = _scoped_one(db, principal, Customer, principal.target_customer_id(customer_id), "Customer")
    query = db.query(WalletTransaction).filter(WalletTransaction.customer_id == customer.id)
    if transaction_type is not None:
        query = query.filter(WalletTransaction.type == transaction_type)
    start, end = _day_bounds(from_date, to_date)
    if start is not None:
        query = query.filter(WalletTransaction.created_at >= start)
    if end is not None:
        query = query.filter(WalletTransaction.created_at < end)
    rows, pagination = paginate(
        query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc()), page, limit
    )
    data = {
        "customer": {
            "id": customer.id,
            "customerCode": customer.customer_code,
            "firstName": customer.first_name,
            "lastName": customer.last_name,
            "email": customer.email,
        },
        "walletBalance": customer.wallet_balance,
        "loyaltyPoints": customer.loyalty_points,
        "summary": ledger.wallet_summary(db, customer.id),
        "transactions": [transaction_data(row) for row in rows],
    }
    return _ok(data, pagination=pagination)


@app.post("/api/v1/wallet/transfer", tags=["Wallet"])
def transfer_wallet(
    payload: WalletTransfer,
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("wallet:transfer")
    sender_id = principal.target_customer_id(payload.from_customer_id)
    with unit_of_work(db):
        outgoing, incoming = ledger.transfer(
            db,
            principal.business_id,
            sender_id,
            payload.to_customer_id,
            payload.amount,
            payload.description,
        )
        data = {
            "amount": outgoing.transaction.amount,
            "fromCustomer": {"id": sender_id, "newBalance": outgoing.new_balance},
            "toCustomer": {"id": payload.to_customer_id, "newBalance": incoming.new_balance},
            "transactions": [transaction_data(outgoing.transaction), transaction_data(incoming.transaction)],
        }
    return _ok(data, message="Transfer completed successfully")


@app.get("/api/v1/dashboard/stats", tags=["Dashboard"])
def dashboard_stats(
    range_key: str = Query(default="30d", alias="range"),
    principal: Principal = Depends(resolve_principal),
    db: Session = Depends(get_db),
) -> dict:
    principal.require("stats:read")
    return _ok(stats.dashboard_stats(db, principal.business_id, range_key))
