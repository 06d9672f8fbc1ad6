from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shipledger.constants import ShipmentStatus, UserRole
from shipledger.db import Base, get_db
from shipledger.main import app
from shipledger.models import Shipment, ShipmentItem, Supplier, User


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    # no context manager: startup would create tables on the configured database
    yield TestClient(app)
    app.dependency_overrides.clear()


def _user(db, username, role):
    user = User(username=username, first_name=username.title(), role=role)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def manager(db):
    return _user(db, "manager", UserRole.MANAGER)


@pytest.fixture
def accountant(db):
    return _user(db, "accountant", UserRole.ACCOUNTANT)


@pytest.fixture
def viewer(db):
    return _user(db, "viewer", UserRole.VIEWER)


def auth(user):
    return {"X-User-Id": user.id}


@pytest.fixture
def supplier(db):
    s = Supplier(name="Yiwu Trading")
    db.add(s)
    db.commit()
    return s


@pytest.fixture
def make_shipment(db):
    def _make(code="SH-1", purchase_date=date(2024, 1, 10), status=ShipmentStatus.NEW, supplier=None, **fields):
        shipment = Shipment(
            shipment_code=code,
            shipment_name=f"شحنة {code}",
            purchase_date=purchase_date,
            status=status,
            **fields,
        )
        if supplier is not None:
            shipment.items = [ShipmentItem(product_name="ألعاب", supplier_id=supplier.id)]
        db.add(shipment)
        db.commit()
        return shipment

    return _make
