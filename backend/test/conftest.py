import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base, get_db
from gateway import SqlGateway
from analytics_service import AnalyticsRegistry
from main import app, get_registry

OWNER = "client-1"
HOST = "host-1"


@pytest.fixture(name="db_engine")
def db_engine_fixture(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'fleet_ledger_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(name="session")
def session_fixture(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture(name="registry")
def registry_fixture(session_factory):
    return AnalyticsRegistry(SqlGateway(session_factory))


@pytest.fixture(name="client")
def client_fixture(session_factory, registry):
    def get_db_override():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = get_db_override
    app.dependency_overrides[get_registry] = lambda: registry
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


def as_user(user_id):
    return {"X-User-Id": user_id}


@pytest.fixture(name="hosted_car")
def hosted_car_fixture(client):
    """A car owned by OWNER and currently hosted by HOST."""
    resp = client.post(
        "/api/cars",
        json={"make": "Tesla", "model": "Model 3", "year": 2022, "mileage": 12000},
        headers=as_user(OWNER),
    )
    assert resp.status_code == 200, resp.text
    car_id = resp.json()["id"]

    resp = client.post(f"/api/cars/{car_id}/assign-host", json={"host_id": HOST}, headers=as_user(OWNER))
    assert resp.status_code == 200, resp.text
    return resp.json()
