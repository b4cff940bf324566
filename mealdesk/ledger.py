"""Customer wallet ledger.

A customer's ``wallet_balance`` only ever changes through ``apply_entry``,
which writes the new balance and an append-only ``WalletTransaction`` carrying
the post-entry balance in the same flush. Callers load the customer through
``lock_customer`` so the balance check and the update happen under a row lock.
"""
import logging
import time
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from mealdesk.config import settings
from mealdesk.errors import InsufficientBalanceError, NotFoundError, ValidationError
from mealdesk.models import Customer, WalletTransaction
from mealdesk.pricing import Number, money

logger = logging.getLogger(__name__)

CREDIT = "CREDIT"
DEBIT = "DEBIT"
REFUND = "REFUND"
BONUS = "BONUS"
ENTRY_TYPES = (CREDIT, DEBIT, REFUND, BONUS)
INFLOW_TYPES = (CREDIT, REFUND, BONUS)


@dataclass(frozen=True)
class LedgerEntry:
    new_balance: Decimal
    transaction: WalletTransaction


def lock_customer(db: Session, business_id: int, customer_id: int, label: str = "Customer") -> Customer:
    customer = db.execute(
        select(Customer)
        .where(Customer.id == customer_id, Customer.business_id == business_id)
        .with_for_update()
    ).scalar_one_or_none()
    if customer is None:
        raise NotFoundError(f"{label} not found")
    return customer


def apply_entry(
    db: Session,
    customer: Customer,
    entry_type: str,
    amount: Number,
    description: str,
    reference: Optional[str] = None,
) -> LedgerEntry:
    if entry_type not in ENTRY_TYPES:
        raise ValidationError(f"Unknown ledger entry type: {entry_type}")
    value = money(amount)
    if value <= 0:
        raise ValidationError("Amount must be greater than zero")

    balance = money(customer.wallet_balance)
    if entry_type == DEBIT:
        if value > balance:
            raise InsufficientBalanceError(
                f"Insufficient wallet balance: available {balance}, required {value}"
            )
        new_balance = balance - value
    else:
        new_balance = balance + value

    customer.wallet_balance = new_balance
    transaction = WalletTransaction(
        business_id=customer.business_id,
        customer_id=customer.id,
        type=entry_type,
        amount=value,
        description=description,
        reference=reference,
        status="COMPLETED",
        balance_after=new_balance,
    )
    db.add(transaction)
    db.flush()
    logger.info(
        "ledger %s %s customer=%s balance_after=%s ref=%s",
        entry_type,
        value,
        customer.customer_code,
        new_balance,
        reference,
    )
    return LedgerEntry(new_balance=new_balance, transaction=transaction)


def recharge_bonus(amount: Decimal) -> Decimal:
    """Whole-unit bonus for large top-ups, zero below the threshold."""
    if amount < settings.wallet_bonus_threshold:
        return Decimal("0")
    return (amount * settings.wallet_bonus_rate).quantize(Decimal("1"), rounding=ROUND_FLOOR)


def top_up(
    db: Session,
    customer: Customer,
    amount: Number,
    description: str = "Wallet recharge",
    reference: Optional[str] = None,
) -> list[LedgerEntry]:
    value = money(amount)
    reference = reference or f"RECHARGE_{int(time.time() * 1000)}"
    entries = [apply_entry(db, customer, CREDIT, value, description, reference)]
    bonus = recharge_bonus(value)
    if bonus > 0:
        entries.append(
            apply_entry(
                db,
                customer,
                BONUS,
                bonus,
                f"Recharge bonus ({settings.wallet_bonus_rate * 100:.0f}% of {value})",
                f"BONUS_{reference}",
            )
        )
    return entries


def transfer(
    db: Session,
    business_id: int,
    sender_id: int,
    recipient_id: int,
    amount: Number,
    description: Optional[str] = None,
) -> tuple[LedgerEntry, LedgerEntry]:
    if sender_id == recipient_id:
        raise ValidationError("Cannot transfer to same wallet")
    # lock in id order so two opposite transfers cannot deadlock
    locked = {}
    for customer_id in sorted((sender_id, recipient_id)):
        label = "Sender" if customer_id == sender_id else "Recipient"
        locked[customer_id] = lock_customer(db, business_id, customer_id, label)
    sender, recipient = locked[sender_id], locked[recipient_id]

    stamp = int(time.time() * 1000)
    outgoing = apply_entry(
        db,
        sender,
        DEBIT,
        amount,
        description or f"Transfer to {recipient.customer_code}",
        f"TRANSFER_OUT_{stamp}",
    )
    incoming = apply_entry(
        db,
        recipient,
        CREDIT,
        amount,
        description or f"Transfer from {sender.customer_code}",
        f"TRANSFER_IN_{stamp}",
    )
    logger.info("transfer %s from %s to %s", outgoing.transaction.amount, sender.customer_code, recipient.customer_code)
    return outgoing, incoming


def accrue_loyalty(customer: Customer, amount: Number) -> int:
    points = int(money(amount) // settings.loyalty_points_divisor)
    if points > 0:
        customer.loyalty_points = (customer.loyalty_points or 0) + points
    return points


def wallet_summary(db: Session, customer_id: int) -> dict:
    inflow = case((WalletTransaction.type.in_(INFLOW_TYPES), WalletTransaction.amount), else_=0)
    outflow = case((WalletTransaction.type == DEBIT, WalletTransaction.amount), else_=0)
    count, credits, debits = db.execute(
        select(
            func.count(WalletTransaction.id),
            func.coalesce(func.sum(inflow), 0),
            func.coalesce(func.sum(outflow), 0),
        ).where(WalletTransaction.customer_id == customer_id)
    ).one()
    return {
        "totalTransactions": count,
        "totalCredits": money(credits),
        "totalDebits": money(debits),
    }


def ledger_balance(db: Session, customer_id: int) -> Decimal:
    """Balance implied by the ledger rows alone, for reconciliation."""
    summary = wallet_summary(db, customer_id)
    return summary["totalCredits"] - summary["totalDebits"]
