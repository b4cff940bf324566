import time
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from mealdesk.errors import RequestTimeoutError


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str, echo: bool = False) -> Engine:
    return create_engine(database_url, pool_pre_ping=True, echo=echo)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def set_deadline(db: Session, timeout_seconds: Optional[float]) -> None:
    if timeout_seconds:
        db.info["deadline"] = time.monotonic() + timeout_seconds


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or nothing at all."""
    try:
        yield db
        deadline = db.info.get("deadline")
        if deadline is not None and time.monotonic() > deadline:
            raise RequestTimeoutError("Request timed out; no changes were saved")
        db.commit()
    except BaseException:
        db.rollback()
        raise


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.session_factory()
    set_deadline(db, request.app.state.request_timeout_seconds)
    try:
        yield db
    finally:
        db.close()


def paginate(query, page: int, limit: int) -> tuple[list, dict]:
    """Page-number pagination over an already ordered query."""
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    total_pages = (total + limit - 1) // limit
    return rows, {
        "page": page,
        "limit": limit,
        "totalPages": total_pages,
        "totalItems": total,
        "hasNextPage": page < total_pages,
        "hasPrevPage": page > 1,
    }
