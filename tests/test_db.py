import pytest
from sqlalchemy import func, select

from mealdesk.db import paginate, set_deadline, unit_of_work
from mealdesk.errors import RequestTimeoutError
from mealdesk.models import Business, Kitchen


def _kitchens(db):
    return db.execute(select(func.count(Kitchen.id))).scalar_one()


def test_unit_of_work_commits(db, tenant) -> None:
    with unit_of_work(db):
        db.add(Kitchen(business_id=tenant.business.id, name="Annexe", capacity=10))
    db.rollback()
    assert _kitchens(db) == 2


def test_unit_of_work_rolls_back_on_error(db, tenant) -> None:
    with pytest.raises(RuntimeError):
        with unit_of_work(db):
            db.add(Kitchen(business_id=tenant.business.id, name="Annexe", capacity=10))
            db.flush()
            raise RuntimeError("boom")
    assert _kitchens(db) == 1


def test_expired_deadline_aborts_the_commit(db, tenant) -> None:
    set_deadline(db, -1)
    with pytest.raises(RequestTimeoutError):
        with unit_of_work(db):
            db.add(Kitchen(business_id=tenant.business.id, name="Annexe", capacity=10))
    db.info.pop("deadline")
    assert _kitchens(db) == 1


def test_paginate(db) -> None:
    db.add_all([Business(name=f"Shop {index}") for index in range(25)])
    db.commit()
    rows, pagination = paginate(db.query(Business).order_by(Business.id), page=3, limit=10)
    assert len(rows) == 5
    assert pagination == {
        "page": 3,
        "limit": 10,
        "totalPages": 3,
        "totalItems": 25,
        "hasNextPage": False,
        "hasPrevPage": True,
    }
