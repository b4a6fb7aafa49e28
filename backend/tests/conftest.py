from __future__ import annotations

import os

# Settings() is created at import time; provide the required values first.
os.environ.setdefault("PROJECT_NAME", "subscription-reconciler-test")
os.environ.setdefault("POSTGRES_SERVER", "localhost")
os.environ.setdefault("POSTGRES_USER", "postgres")
os.environ.setdefault("ENVIRONMENT", "local")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-admin-tokens")

import json  # noqa: E402
from collections.abc import Callable, Generator  # noqa: E402
from datetime import datetime, timezone  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine, delete  # noqa: E402

from app.api.deps import get_db  # noqa: E402
from app.core.security import create_admin_token  # noqa: E402
from app.enums import PlanType  # noqa: E402
from app.main import app  # noqa: E402
from app.models import (  # noqa: E402
    AuditLogEntry,
    DedupRecord,
    PlanCatalogEntry,
    SweepRun,
    User,
    WebhookEvent,
)
from app.services.components import (  # noqa: E402
    get_expiration_sweeper,
    get_plan_catalog,
    get_webhook_gateway,
)
from app.services.plan_catalog import PlanCatalog  # noqa: E402
from app.services.subscription_state import SubscriptionStateMachine  # noqa: E402
from app.services.sweeper import ExpirationSweeper  # noqa: E402
from app.services.webhook_gateway import WebhookGateway, sign_doppus_payload  # noqa: E402

HOTTOK = "test-hottok"
DOPPUS_SECRET = "test-doppus-secret"

PLAN_MAPPINGS = [
    ("hotmart", "1001", PlanType.monthly, 30),
    ("hotmart", "1002", PlanType.annual, 365),
    ("hotmart", "2002", PlanType.lifetime, None),
    ("doppus", "PRD-M", PlanType.monthly, 30),
    ("doppus", "PRD-L", PlanType.lifetime, None),
]

# 2025-10-09T08:53:20Z
EVENT_TS_MS = 1760000000000


class FakeRedisClient:
    def __init__(self) -> None:
        self.locks: dict[str, str] = {}
        self.extensions: list[tuple[str, int]] = []
        self.lose_lock_after: int | None = None

    def ping(self) -> bool:
        return True

    def acquire_lock(self, lock_key: str, lock_value: str, expire_seconds: int = 60) -> bool:
        if lock_key in self.locks:
            return False
        self.locks[lock_key] = lock_value
        return True

    def extend_lock(self, lock_key: str, lock_value: str, expire_seconds: int = 60) -> bool:
        self.extensions.append((lock_key, expire_seconds))
        if self.lose_lock_after is not None and len(self.extensions) > self.lose_lock_after:
            # 锁已过期并被其他实例取得
            self.locks[lock_key] = "someone-else"
        return self.locks.get(lock_key) == lock_value

    def release_lock(self, lock_key: str, lock_value: str) -> bool:
        if self.locks.get(lock_key) != lock_value:
            return False
        del self.locks[lock_key]
        return True


class Payloads:
    @staticmethod
    def hotmart_purchase(
        event: str = "PURCHASE_APPROVED",
        *,
        email: str = "buyer@cliente.com.br",
        transaction: str = "HP1000001",
        product_id: int | str = 1001,
        name: str | None = "Ana Souza",
    ) -> dict[str, Any]:
        return {
            "id": f"evt-{transaction}-{event}",
            "event": event,
            "version": "2.0.0",
            "creation_date": EVENT_TS_MS,
            "data": {
                "buyer": {"email": email, "name": name},
                "product": {"id": product_id, "name": "Pack Automotivo"},
                "purchase": {
                    "transaction": transaction,
                    "approved_date": EVENT_TS_MS,
                    "status": "APPROVED",
                },
            },
        }

    @staticmethod
    def hotmart_cancellation(
        *,
        email: str = "buyer@cliente.com.br",
        subscription_id: int | str = 555001,
        product_id: int | str = 1001,
    ) -> dict[str, Any]:
        return {
            "id": f"evt-cancel-{subscription_id}",
            "event": "SUBSCRIPTION_CANCELLATION",
            "version": "2.0.0",
            "creation_date": EVENT_TS_MS,
            "data": {
                "subscriber": {"code": "SUB123", "email": email, "name": "Ana Souza"},
                "subscription": {"id": subscription_id},
                "product": {"id": product_id, "name": "Pack Automotivo"},
                "cancellation_date": EVENT_TS_MS,
            },
        }

    @staticmethod
    def doppus_order(
        status: str = "approved",
        *,
        email: str = "cliente@cliente.com.br",
        transaction: str = "DP-0001",
        product_code: str = "PRD-M",
        charges: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "customer": {"email": email, "name": "Carlos Lima"},
            "status": {"code": status, "date": "2025-10-09T08:53:20Z"},
            "transaction": {"code": transaction},
            "items": [{"code": product_code, "offer": "OFR-1"}],
        }
        if charges is not None:
            payload["recurrence"] = {"code": "REC-1", "periodicy": "monthly", "charges": charges}
        return payload

    @staticmethod
    def doppus_legacy(
        event: str = "PAYMENT_APPROVED",
        *,
        email: str = "cliente@cliente.com.br",
        transaction: str = "DPL-0001",
        product_code: str = "PRD-M",
    ) -> dict[str, Any]:
        return {
            "event": event,
            "data": {
                "customer": {"email": email, "name": "Carlos Lima"},
                "transaction": {"code": transaction},
                "product": {"code": product_code},
                "date": "2025-10-09T08:53:20Z",
            },
        }


def encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode()


def hotmart_headers(token: str = HOTTOK) -> dict[str, str]:
    return {"Content-Type": "application/json", "X-HOTMART-HOTTOK": token}


def doppus_headers(body: bytes, secret: str = DOPPUS_SECRET) -> dict[str, str]:
    return {"Content-Type": "application/json", "X-Doppus-Signature": sign_doppus_payload(secret, body)}


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(autouse=True)
def _clean_tables(engine) -> Generator[None, None, None]:
    yield
    with Session(engine) as session:
        for model in (AuditLogEntry, DedupRecord, WebhookEvent, SweepRun, PlanCatalogEntry, User):
            session.exec(delete(model))
        session.commit()


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def payloads() -> type[Payloads]:
    return Payloads


@pytest.fixture
def catalog(engine) -> PlanCatalog:
    catalog = PlanCatalog(ttl_seconds=600)
    with Session(engine) as session:
        for source, product_id, plan_type, days in PLAN_MAPPINGS:
            catalog.upsert(
                session,
                source=source,
                product_id=product_id,
                plan_type=plan_type,
                duration_days=days,
            )
        session.commit()
    return catalog


@pytest.fixture
def make_gateway(engine, catalog) -> Callable[..., WebhookGateway]:
    def _make(**overrides: Any) -> WebhookGateway:
        kwargs: dict[str, Any] = {
            "engine": engine,
            "catalog": catalog,
            "state_machine": SubscriptionStateMachine(),
            "hotmart_hottok": HOTTOK,
            "doppus_secret_key": DOPPUS_SECRET,
            "environment": "local",
            "processing_timeout_seconds": 5.0,
        }
        kwargs.update(overrides)
        return WebhookGateway(**kwargs)

    return _make


@pytest.fixture
def gateway(make_gateway) -> WebhookGateway:
    return make_gateway()


@pytest.fixture
def fake_redis() -> FakeRedisClient:
    return FakeRedisClient()


@pytest.fixture
def sweeper(engine, fake_redis) -> ExpirationSweeper:
    return ExpirationSweeper(engine=engine, redis_client=fake_redis, batch_size=2)  # type: ignore[arg-type]


@pytest.fixture(scope="function")
def client(engine, gateway, sweeper, catalog) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_webhook_gateway] = lambda: gateway
    app.dependency_overrides[get_expiration_sweeper] = lambda: sweeper
    app.dependency_overrides[get_plan_catalog] = lambda: catalog
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_admin_token('ops@cliente.com.br')}"}


@pytest.fixture
def deliver() -> Callable[..., Any]:
    """Call the gateway directly with correctly authenticated headers."""

    def _deliver(
        gateway: WebhookGateway,
        source: str,
        payload: dict[str, Any] | None = None,
        *,
        raw: bytes | None = None,
        token: str = HOTTOK,
        secret: str = DOPPUS_SECRET,
    ):
        body = raw if raw is not None else encode(payload or {})
        headers = hotmart_headers(token) if source == "hotmart" else doppus_headers(body, secret)
        return gateway.handle(source, body, headers, "203.0.113.10")

    return _deliver


@pytest.fixture
def post_webhook(client) -> Callable[..., Any]:
    def _post(
        source: str,
        payload: dict[str, Any] | None = None,
        *,
        raw: bytes | None = None,
        token: str = HOTTOK,
        secret: str = DOPPUS_SECRET,
    ):
        body = raw if raw is not None else encode(payload or {})
        headers = hotmart_headers(token) if source == "hotmart" else doppus_headers(body, secret)
        return client.post(f"/api/v1/webhooks/{source}", content=body, headers=headers)

    return _post
