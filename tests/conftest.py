from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from restopos import models
from restopos.config import Settings
from restopos.db import Base
from restopos.services import build_services


class FixedClock:
    def __init__(self, current: datetime) -> None:
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 14, 12, 0, 0))


@pytest.fixture
def config() -> Settings:
    return Settings(database_url="sqlite://", admin_override_token="s3cret")


@pytest.fixture
def pos(config, clock):
    return build_services(config, clock=clock)


def seed_restaurant(db) -> SimpleNamespace:
    t1 = models.DiningTable(number="T1", seats=4, status="available")
    t2 = models.DiningTable(number="T2", seats=2, status="available")
    kebab = models.MenuItem(name="Adana Kebab", price=Decimal("10.00"))
    ayran = models.MenuItem(name="Ayran", price=Decimal("5.00"))
    kunefe = models.MenuItem(name="Kunefe", price=Decimal("7.50"), available=False)
    customer = models.Customer(customer_name="Mehmet Yilmaz", telephone_number="555-0101")
    other_customer = models.Customer(customer_name="Ayse Demir")
    db.add_all([t1, t2, kebab, ayran, kunefe, customer, other_customer])
    db.commit()
    return SimpleNamespace(
        t1=t1.id,
        t2=t2.id,
        a=kebab.id,
        b=ayran.id,
        unavailable=kunefe.id,
        customer=customer.id,
        other_customer=other_customer.id,
    )


@pytest.fixture
def seed(db) -> SimpleNamespace:
    return seed_restaurant(db)
