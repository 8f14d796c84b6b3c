import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import create_engine
from main import create_app
from schemas import ProductCreate
from storage import JsonFileStorage, SqlStorage

BACKENDS = ["json", "sql"]


def make_storage(kind, tmp_path):
    if kind == "json":
        return JsonFileStorage(tmp_path / "data")
    return SqlStorage(create_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}"))


def product_input(**overrides):
    data = {
        "name": "Phone",
        "description": "A phone",
        "price": "499.99",
        "category": "electronics",
        "image": "https://example.com/phone.png",
        "stock": 3,
    }
    data.update(overrides)
    return ProductCreate(**data)


@pytest.fixture(params=BACKENDS)
async def storage(request, tmp_path):
    store = make_storage(request.param, tmp_path)
    await store.init()
    yield store
    await store.close()


@pytest.fixture(params=BACKENDS)
def client(request, tmp_path):
    if request.param == "json":
        settings = Settings(storage_backend="json", data_dir=str(tmp_path / "data"))
    else:
        settings = Settings(storage_backend="sql", database_url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}")
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def admin_client(client):
    response = client.post("/api/auth/login", json={"username": "admin", "password": "admin123"})
    assert response.status_code == 200
    return client
