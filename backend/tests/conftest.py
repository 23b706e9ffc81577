import asyncio
import os

# cheap hashes for tests; must be set before security.py is imported
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

import main
from bookings import BookingEngine
from database import JsonFileGateway, UnitOfWork
from errors import PersistenceError
from identity import IdentityStore
from inventory import InventoryStore
from otp import OTPRegistry
from schemas import LaptopCreate


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FlakyGateway(JsonFileGateway):
    """JSON gateway whose writes can be made to fail per collection."""

    def __init__(self, data_dir: str):
        super().__init__(data_dir)
        self.fail_on = set()
        self.fail_once = set()
        self.flushes = []

    async def flush(self, collection_name, docs):
        # hand control to other tasks first, as a slow disk would
        await asyncio.sleep(0)
        if collection_name in self.fail_on:
            raise PersistenceError(f"disk full while writing {collection_name}")
        if collection_name in self.fail_once:
            self.fail_once.discard(collection_name)
            raise PersistenceError(f"disk full while writing {collection_name}")
        self.flushes.append(collection_name)
        await super().flush(collection_name, docs)


class Services:
    def __init__(self, gateway, clock):
        self.gateway = gateway
        self.clock = clock
        self.uow = UnitOfWork(gateway)
        self.identity = IdentityStore(self.uow, clock=clock)
        self.inventory = InventoryStore(self.uow)
        self.engine = BookingEngine(self.uow, self.inventory, clock=clock)
        self.otp = OTPRegistry(self.identity, clock=clock)


@pytest.fixture
def clock():
    return Clock(datetime(2024, 1, 1, 9, 0, 0))


@pytest.fixture
def gateway(tmp_path):
    return FlakyGateway(str(tmp_path))


@pytest.fixture
async def services(gateway, clock):
    svc = Services(gateway, clock)
    await svc.uow.load()
    return svc


@pytest.fixture
async def laptop(services):
    return await services.inventory.add(
        LaptopCreate(brand="Dell", model="XPS 13", cpu="i7", ram="16GB", storage="512GB", daily_price=20)
    )


@pytest.fixture
def client(gateway, clock):
    app = main.create_app(gateway=gateway, clock=clock)
    with TestClient(app) as c:
        yield c


def register_and_login(client, email, password="secret123", name="Test User"):
    resp = client.post("/api/auth/register", json={"name": name, "email": email, "password": password})
    assert resp.status_code == 201, resp.text
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def login_as_admin(client, email="admin@example.com", password="adminpass"):
    headers = register_and_login(client, email, password, name="Admin")
    assert client.post("/api/auth/promote", headers=headers).status_code == 200
    # the role travels in the token, so log in again to pick it up
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    return {"Authorization": f"Bearer {resp.json()['token']}"}
