"""Caller identity and tenant scoping.

Every request resolves to exactly one ``Principal``: the business it acts for,
the role it holds and the actions that role allows. Route handlers never look
at roles directly; they ask the principal to ``require`` an action and to
``scope`` their queries.
"""
import hashlib
import secrets
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from mealdesk.db import get_db
from mealdesk.errors import AccessDeniedError, AuthenticationError, ValidationError
from mealdesk.models import Business, User

SUPER_ADMIN = "SUPER_ADMIN"
BUSINESS_OWNER = "BUSINESS_OWNER"
KITCHEN_MANAGER = "KITCHEN_MANAGER"
STAFF = "STAFF"
CUSTOMER = "CUSTOMER"
ROLES = (SUPER_ADMIN, BUSINESS_OWNER, KITCHEN_MANAGER, STAFF, CUSTOMER)

ALL_ACTIONS = frozenset(
    {
        "customers:read",
        "customers:write",
        "plans:read",
        "plans:write",
        "kitchens:write",
        "menu:write",
        "subscriptions:read",
        "subscriptions:write",
        "subscriptions:update",
        "orders:read",
        "orders:write",
        "invoices:read",
        "invoices:write",
        "invoices:pay",
        "wallet:read",
        "wallet:topup",
        "wallet:transfer",
        "stats:read",
    }
)
READ_ACTIONS = frozenset(action for action in ALL_ACTIONS if action.endswith(":read"))

ROLE_ACTIONS = {
    SUPER_ADMIN: ALL_ACTIONS,
    BUSINESS_OWNER: ALL_ACTIONS,
    KITCHEN_MANAGER: READ_ACTIONS
    | {"orders:write", "subscriptions:write", "subscriptions:update", "kitchens:write", "menu:write"},
    STAFF: READ_ACTIONS | {"orders:write"},
    # customers act on their own rows only; Principal.scope adds the filter
    CUSTOMER: frozenset(
        {
            "plans:read",
            "subscriptions:read",
            "subscriptions:update",
            "orders:read",
            "invoices:read",
            "invoices:pay",
            "wallet:read",
            "wallet:topup",
            "wallet:transfer",
        }
    ),
}


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_token() -> tuple[str, str]:
    """Return ``(token, token_hash)``; only the hash is ever stored."""
    token = secrets.token_urlsafe(32)
    return token, hash_token(token)


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: str
    business_id: int
    customer_id: Optional[int] = None
    allowed_actions: frozenset = field(default_factory=frozenset)

    @property
    def is_customer(self) -> bool:
        return self.role == CUSTOMER

    def can(self, action: str) -> bool:
        return action in self.allowed_actions

    def require(self, action: str) -> None:
        if not self.can(action):
            raise AccessDeniedError(f"Role {self.role} is not allowed to perform {action}")

    def scope(self, query, model):
        """Restrict ``query`` to rows this principal may see."""
        query = query.filter(model.business_id == self.business_id)
        if self.is_customer:
            owner_column = model.id if model.__tablename__ == "customer" else getattr(model, "customer_id", None)
            if owner_column is not None:
                query = query.filter(owner_column == self.customer_id)
        return query

    def target_customer_id(self, requested: Optional[int]) -> int:
        if self.is_customer:
            return self.customer_id
        if requested is None:
            raise ValidationError("Customer ID required")
        return requested


def principal_for(user: User, business_id: Optional[int] = None) -> Principal:
    return Principal(
        user_id=user.id,
        role=user.role,
        business_id=business_id if business_id is not None else user.business_id,
        customer_id=user.customer_id,
        allowed_actions=ROLE_ACTIONS.get(user.role, frozenset()),
    )


bearer_scheme = HTTPBearer(auto_error=False)


def resolve_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_business_id: Optional[int] = Header(default=None),
    db: Session = Depends(get_db),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("No token provided")
    user = db.execute(
        select(User).where(User.api_token_hash == hash_token(credentials.credentials), User.is_active.is_(True))
    ).scalar_one_or_none()
    if user is None:
        raise AuthenticationError("Invalid token")

    business_id = user.business_id
    if user.role == SUPER_ADMIN and x_business_id is not None:
        business_id = x_business_id
    if business_id is None:
        raise ValidationError("User is not associated with a business")
    business = db.get(Business, business_id)
    if business is None or not business.is_active:
        raise AccessDeniedError("Access denied to this business")
    if user.role == CUSTOMER and user.customer_id is None:
        raise AccessDeniedError("Customer login has no customer profile")
    return principal_for(user, business_id)
