import os
import tempfile

# Settings are read once at import; point them at a throwaway store first.
_TMP = tempfile.mkdtemp(prefix="rebalancer-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TMP, 'app.db')}")
os.environ.setdefault("LOG_FILE", os.path.join(_TMP, "app.log"))
os.environ.setdefault("AUTH_REQUIRED", "false")

import pytest
from fastapi.testclient import TestClient
from loguru import logger
from sqlalchemy.orm import Session

import rebalancer.models  # noqa: F401
from rebalancer.database.session import (
    Base, build_engine, build_session_factory, get_db, get_session_factory,
)
from rebalancer.models import Allocation, Location, Sku
from rebalancer.api.v1.deps import get_dismiss_queue
from rebalancer.services.replenishment import DismissRetryQueue


@pytest.fixture(scope="function")
def engine(tmp_path):
    """File-backed SQLite store per test, so worker threads share one database."""
    eng = build_engine(f"sqlite:///{tmp_path / 'store.db'}")
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def dismiss_queue(session_factory):
    return DismissRetryQueue(session_factory, max_attempts=3, interval=0.0)


@pytest.fixture(scope="function")
def client(session_factory, dismiss_queue):
    from main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_dismiss_queue] = lambda: dismiss_queue
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def log_messages():
    """Messages logged through loguru while the test runs."""
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="INFO")
    yield messages
    logger.remove(handler_id)


# ============================================================================
# Builders
# ============================================================================

@pytest.fixture
def make_location(db_session):
    counter = {"n": 0}

    def _make(role="store", region="North", code=None, name=None):
        counter["n"] += 1
        code = code or f"LOC-{counter['n']:03d}"
        location = Location(
            location_code=code,
            location_name=name or f"Location {code}",
            role=role,
            region=region,
        )
        db_session.add(location)
        db_session.commit()
        return location

    return _make


@pytest.fixture
def make_sku(db_session):
    counter = {"n": 0}

    def _make(category="Dairy", code=None, is_active=True):
        counter["n"] += 1
        code = code or f"SKU-{counter['n']:03d}"
        sku = Sku(sku_code=code, sku_name=f"Item {code}", pack_size="1 unit", category=category, is_active=is_active)
        db_session.add(sku)
        db_session.commit()
        return sku

    return _make


@pytest.fixture
def make_allocation(db_session):
    def _make(sku, location, on_hand=0, target=0, allocated=None, in_transit=0, safety_stock=0):
        row = Allocation(
            sku_id=sku.id,
            location_id=location.id,
            on_hand=on_hand,
            target=target,
            allocated=target if allocated is None else allocated,
            in_transit=in_transit,
            safety_stock=safety_stock,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _make


@pytest.fixture
def network(make_location, make_sku, make_allocation):
    """
    One SKU over a warehouse and two stores:
    - WH: 120 on hand, target 100
    - ST-A: 30 on hand, target 100
    - ST-B: 90 on hand, target 40
    """
    wh = make_location(role="central_warehouse", code="WH")
    a = make_location(code="ST-A")
    b = make_location(code="ST-B", region="South")
    sku = make_sku(code="MILK-1L")
    make_allocation(sku, wh, on_hand=120, target=100)
    make_allocation(sku, a, on_hand=30, target=100)
    make_allocation(sku, b, on_hand=90, target=40)
    return {"sku": sku, "wh": wh, "a": a, "b": b}
