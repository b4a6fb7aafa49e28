from __future__ import annotations

import pytest
from sqlmodel import Session, select

from app.enums import PlanType, WebhookSource
from app.integrations.base import ProviderProduct
from app.models import PlanCatalogEntry
from app.services.errors import ProviderAPIError
from app.services.plan_catalog import PlanCatalog, PlanSpec, validate_plan


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeProvider:
    def __init__(self, products: dict[str, ProviderProduct] | None = None, error: Exception | None = None) -> None:
        self.products = products or {}
        self.error = error
        self.calls: list[str] = []
        self.timeouts: list[float | None] = []

    def get_product(self, product_id: str, *, timeout: float | None = None) -> ProviderProduct | None:
        self.calls.append(product_id)
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        return self.products.get(product_id)


def _add(session: Session, catalog: PlanCatalog, product_id: str, plan_type=PlanType.monthly, days=30):
    catalog.upsert(session, source="hotmart", product_id=product_id, plan_type=plan_type, duration_days=days)
    session.commit()


def test_resolve_from_database(db):
    catalog = PlanCatalog(ttl_seconds=60)
    _add(db, catalog, "1001")
    _add(db, catalog, "2002", PlanType.lifetime, None)

    spec = catalog.resolve(db, "hotmart", "1001")
    assert spec == PlanSpec(plan_type=PlanType.monthly, duration_days=30)
    lifetime = catalog.resolve(db, "hotmart", "2002")
    assert lifetime.is_lifetime
    assert catalog.resolve(db, "doppus", "1001") is None


def test_cache_serves_until_ttl(engine):
    clock = FakeClock()
    catalog = PlanCatalog(ttl_seconds=60, clock=clock)
    with Session(engine) as session:
        _add(session, catalog, "1001")
        assert catalog.resolve(session, "hotmart", "1001").plan_type == PlanType.monthly

    # 绕过目录直接修改数据库，缓存未过期时仍返回旧值
    with Session(engine) as session:
        entry = session.exec(select(PlanCatalogEntry)).one()
        entry.plan_type = PlanType.annual
        entry.duration_days = 365
        session.add(entry)
        session.commit()

    with Session(engine) as session:
        assert catalog.resolve(session, "hotmart", "1001").plan_type == PlanType.monthly
        clock.now += 61
        assert catalog.resolve(session, "hotmart", "1001").plan_type == PlanType.annual


def test_upsert_invalidates_cached_entry(db):
    catalog = PlanCatalog(ttl_seconds=3600)
    _add(db, catalog, "1001")
    catalog.resolve(db, "hotmart", "1001")

    _add(db, catalog, "1001", PlanType.annual, 365)
    assert catalog.resolve(db, "hotmart", "1001").duration_days == 365
    assert len(catalog.list_entries(db)) == 1


def test_upsert_rejects_invalid_plans(db):
    catalog = PlanCatalog(ttl_seconds=60)
    with pytest.raises(ValueError):
        catalog.upsert(db, source="hotmart", product_id="1", plan_type=PlanType.lifetime, duration_days=30)
    with pytest.raises(ValueError):
        catalog.upsert(db, source="hotmart", product_id="1", plan_type=PlanType.monthly, duration_days=None)


@pytest.mark.parametrize(
    "plan_type, days",
    [
        (PlanType.none, None),
        (PlanType.none, 30),
        (PlanType.lifetime, 1),
        (PlanType.annual, None),
        (PlanType.annual, 0),
        (PlanType.monthly, -30),
    ],
)
def test_validate_plan_rejects(plan_type, days):
    with pytest.raises(ValueError):
        validate_plan(plan_type, days)


def test_provider_fallback_persists_mapping(engine):
    provider = FakeProvider(
        {
            "5005": ProviderProduct(
                source=WebhookSource.hotmart,
                product_id="5005",
                name="Pack Anual",
                plan_type=PlanType.annual,
                duration_days=365,
            )
        }
    )
    catalog = PlanCatalog(ttl_seconds=60, providers={"hotmart": provider})  # type: ignore[dict-item]
    with Session(engine) as session:
        spec = catalog.resolve(session, "hotmart", "5005")
    assert spec == PlanSpec(plan_type=PlanType.annual, duration_days=365)

    with Session(engine) as session:
        entry = session.exec(select(PlanCatalogEntry).where(PlanCatalogEntry.product_id == "5005")).one()
        assert entry.product_name == "Pack Anual"
        assert entry.duration_days == 365

    # 新的目录实例从数据库读取，不再调用平台接口
    fresh = PlanCatalog(ttl_seconds=60, providers={"hotmart": provider})  # type: ignore[dict-item]
    with Session(engine) as session:
        assert fresh.resolve(session, "hotmart", "5005").plan_type == PlanType.annual
    assert provider.calls == ["5005"]


def test_lookup_budget_is_passed_to_provider(db):
    provider = FakeProvider()
    catalog = PlanCatalog(ttl_seconds=60, providers={"hotmart": provider})  # type: ignore[dict-item]
    catalog.resolve(db, "hotmart", "404", timeout=2.5)
    assert provider.timeouts == [2.5]


def test_provider_miss_returns_none(db):
    provider = FakeProvider()
    catalog = PlanCatalog(ttl_seconds=60, providers={"hotmart": provider})  # type: ignore[dict-item]
    assert catalog.resolve(db, "hotmart", "404") is None
    assert provider.calls == ["404"]


def test_provider_without_credentials_is_skipped(db):
    provider = FakeProvider()
    catalog = PlanCatalog(ttl_seconds=60, providers={"hotmart": provider})  # type: ignore[dict-item]
    assert catalog.resolve(db, "doppus", "PRD-X") is None
    assert provider.calls == []


def test_transient_provider_error_propagates(db):
    provider = FakeProvider(error=ProviderAPIError("upstream 503", status_code=503, transient=True))
    catalog = PlanCatalog(ttl_seconds=60, providers={"hotmart": provider})  # type: ignore[dict-item]
    with pytest.raises(ProviderAPIError):
        catalog.resolve(db, "hotmart", "1001")


def test_permanent_provider_error_is_a_miss(db):
    provider = FakeProvider(error=ProviderAPIError("forbidden", status_code=403))
    catalog = PlanCatalog(ttl_seconds=60, providers={"hotmart": provider})  # type: ignore[dict-item]
    assert catalog.resolve(db, "hotmart", "1001") is None


def test_refresh_rebuilds_cache(engine):
    clock = FakeClock()
    catalog = PlanCatalog(ttl_seconds=60, clock=clock)
    with Session(engine) as session:
        _add(session, catalog, "1001")
        _add(session, catalog, "1002", PlanType.annual, 365)
        assert catalog.refresh(session) == 2

    # 缓存命中时不访问数据库
    with Session(engine) as session:
        for entry in session.exec(select(PlanCatalogEntry)).all():
            session.delete(entry)
        session.commit()
        assert catalog.resolve(session, "hotmart", "1002").plan_type == PlanType.annual

        catalog.invalidate()
        assert catalog.resolve(session, "hotmart", "1002") is None


def test_list_entries_by_source(db):
    catalog = PlanCatalog(ttl_seconds=60)
    _add(db, catalog, "1001")
    catalog.upsert(db, source="doppus", product_id="PRD-M", plan_type=PlanType.monthly, duration_days=30)
    db.commit()
    assert [e.product_id for e in catalog.list_entries(db, "doppus")] == ["PRD-M"]
    assert len(catalog.list_entries(db)) == 2
