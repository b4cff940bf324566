import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_SCHEMA"] = "false"

from dataclasses import dataclass
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mealdesk import ledger
from mealdesk.auth import BUSINESS_OWNER, ROLE_ACTIONS, Principal
from mealdesk.codes import generate_customer_code
from mealdesk.db import Base
from mealdesk.main import app, get_db
from mealdesk.models import Business, Customer, Kitchen, MenuItem, PlanItem, SubscriptionPlan


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@dataclass
class Tenant:
    business: Business
    owner: Principal
    kitchen: Kitchen
    menu_items: list[MenuItem]
    plan: SubscriptionPlan
    customer: Customer


def add_customer(db: Session, business_id: int, email: str, wallet: str = "0") -> Customer:
    customer = Customer(
        business_id=business_id,
        customer_code=generate_customer_code(),
        email=email,
        first_name="Asha",
        last_name="Rao",
        address={"line1": "12 MG Road", "city": "Pune"},
        wallet_balance=Decimal("0.00"),
        loyalty_points=0,
    )
    db.add(customer)
    db.flush()
    if Decimal(wallet) > 0:
        ledger.apply_entry(db, customer, ledger.CREDIT, Decimal(wallet), "Opening balance")
    return customer


def seed_tenant(
    db: Session,
    name: str = "Tiffin Co",
    wallet: str = "1000",
    plan_type: str = "MONTHLY",
    price: str = "299.99",
) -> Tenant:
    business = Business(name=name, is_active=True)
    db.add(business)
    db.flush()
    kitchen = Kitchen(business_id=business.id, name=f"{name} Central", capacity=200, is_active=True)
    db.add(kitchen)
    menu_items = [
        MenuItem(business_id=business.id, name="Dal Tadka", price=Decimal("80.00")),
        MenuItem(business_id=business.id, name="Jeera Rice", price=Decimal("60.00")),
        MenuItem(business_id=business.id, name="Gulab Jamun", price=Decimal("40.00")),
    ]
    db.add_all(menu_items)
    plan = SubscriptionPlan(
        business_id=business.id,
        name=f"{plan_type.title()} Thali",
        type=plan_type,
        price=Decimal(price),
        duration=30,
        is_active=True,
    )
    db.add(plan)
    db.flush()
    db.add_all(
        [
            PlanItem(plan_id=plan.id, menu_item_id=menu_items[0].id, quantity=1, sort_order=0),
            PlanItem(plan_id=plan.id, menu_item_id=menu_items[1].id, quantity=2, sort_order=1),
            PlanItem(plan_id=plan.id, menu_item_id=menu_items[2].id, quantity=1, is_optional=True, sort_order=2),
        ]
    )
    customer = add_customer(db, business.id, f"asha@{name.lower().replace(' ', '')}.test", wallet)
    db.commit()
    owner = Principal(
        user_id=0,
        role=BUSINESS_OWNER,
        business_id=business.id,
        allowed_actions=ROLE_ACTIONS[BUSINESS_OWNER],
    )
    return Tenant(business, owner, kitchen, menu_items, plan, customer)


@pytest.fixture()
def tenant(db):
    return seed_tenant(db)
