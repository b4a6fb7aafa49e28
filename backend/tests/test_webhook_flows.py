from __future__ import annotations

import json
import time
from datetime import timedelta

import httpx
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from app.enums import AccessLevel, AuditStatus, PlanType
from app.integrations.hotmart import build_hotmart_client
from app.models import AuditLogEntry, DedupRecord, User, WebhookEvent, ensure_utc, utc_now
from app.services.errors import ApplyError, ProviderAPIError
from app.services.plan_catalog import PlanCatalog, PlanSpec
from app.services.subscription_state import SubscriptionStateMachine


def _audit_statuses(engine) -> list[str]:
    with Session(engine) as session:
        rows = session.exec(select(AuditLogEntry).order_by(AuditLogEntry.created_at)).all()
        return [row.status for row in rows]


def _user(engine, email: str = "buyer@cliente.com.br") -> User | None:
    with Session(engine) as session:
        return session.exec(select(User).where(User.email == email)).first()


def test_hotmart_monthly_purchase(engine, post_webhook, payloads):
    before = utc_now()
    r = post_webhook("hotmart", payloads.hotmart_purchase())
    assert r.status_code == 200
    body = r.json()
    assert body["code"] == 0
    assert body["data"]["outcome"] == "processed"

    user = _user(engine)
    assert user.access_level == AccessLevel.premium
    assert user.plan_type == PlanType.monthly
    expiry = ensure_utc(user.subscription_expiry)
    assert before + timedelta(days=30) <= expiry <= utc_now() + timedelta(days=30)
    assert _audit_statuses(engine) == ["processed"]

    with Session(engine) as session:
        stored = session.exec(select(WebhookEvent)).one()
        assert stored.source == "hotmart"
        assert json.loads(stored.raw_payload)["event"] == "PURCHASE_APPROVED"
        assert "x-hotmart-hottok" not in stored.headers
        assert body["data"]["webhook_event_id"] == stored.id


def test_duplicate_deliveries_apply_once(engine, post_webhook, payloads):
    payload = payloads.hotmart_purchase()
    responses = [post_webhook("hotmart", payload) for _ in range(5)]

    assert [r.status_code for r in responses] == [200] * 5
    assert [r.json()["data"]["outcome"] for r in responses] == ["processed"] + ["duplicate"] * 4

    statuses = _audit_statuses(engine)
    assert statuses.count("processed") == 1
    assert statuses.count("duplicate") == 4
    with Session(engine) as session:
        assert len(session.exec(select(DedupRecord)).all()) == 1
        assert len(session.exec(select(WebhookEvent)).all()) == 5
        assert len(session.exec(select(User)).all()) == 1


def test_wrong_hottok_is_rejected(engine, post_webhook, payloads):
    r = post_webhook("hotmart", payloads.hotmart_purchase(), token="wrong-token")
    assert r.status_code == 401
    assert r.json()["data"]["outcome"] == "rejected_auth"
    assert _user(engine) is None
    assert _audit_statuses(engine) == ["rejected_auth"]
    with Session(engine) as session:
        # the delivery is still recorded
        assert session.exec(select(WebhookEvent)).first() is not None


def test_doppus_signed_order(engine, post_webhook, payloads):
    r = post_webhook("doppus", payloads.doppus_order())
    assert r.status_code == 200
    assert r.json()["data"]["outcome"] == "processed"
    user = _user(engine, "cliente@cliente.com.br")
    assert user.access_level == AccessLevel.premium
    assert user.subscription_origin == "doppus"


def test_doppus_bad_signature_is_rejected(engine, post_webhook, payloads):
    r = post_webhook("doppus", payloads.doppus_order(), secret="some-other-secret")
    assert r.status_code == 401
    assert _user(engine, "cliente@cliente.com.br") is None


def test_doppus_signature_accepts_sha256_prefix(gateway, payloads):
    from app.services.webhook_gateway import sign_doppus_payload

    body = json.dumps(payloads.doppus_legacy()).encode()
    signature = "sha256=" + sign_doppus_payload("test-doppus-secret", body)
    result = gateway.handle("doppus", body, {"X-Doppus-Signature": signature})
    assert result.status_code == 200
    assert result.outcome == AuditStatus.processed


def test_missing_secret_outside_local_is_rejected(make_gateway, deliver, payloads):
    gateway = make_gateway(hotmart_hottok=None, environment="production")
    result = deliver(gateway, "hotmart", payloads.hotmart_purchase())
    assert result.status_code == 401
    assert result.outcome == AuditStatus.rejected_auth


def test_missing_secret_in_local_is_accepted(make_gateway, deliver, payloads):
    gateway = make_gateway(hotmart_hottok=None, environment="local")
    result = deliver(gateway, "hotmart", payloads.hotmart_purchase(), token="")
    assert result.status_code == 200
    assert result.outcome == AuditStatus.processed


def test_malformed_payload_is_acknowledged(engine, post_webhook):
    r = post_webhook("hotmart", raw=b"{this is not json")
    assert r.status_code == 200
    assert r.json()["data"]["outcome"] == "rejected_malformed"
    assert _audit_statuses(engine) == ["rejected_malformed"]
    with Session(engine) as session:
        assert session.exec(select(DedupRecord)).first() is None


def test_out_of_range_timestamp_is_acknowledged(engine, gateway, deliver, payloads):
    payload = payloads.hotmart_purchase()
    payload["creation_date"] = 1e300
    result = deliver(gateway, "hotmart", payload)
    assert result.status_code == 200
    assert result.outcome == AuditStatus.rejected_malformed
    assert _audit_statuses(engine) == ["rejected_malformed"]
    assert _user(engine) is None


def test_refund_after_purchase(engine, post_webhook, payloads):
    post_webhook("hotmart", payloads.hotmart_purchase("PURCHASE_APPROVED"))
    r = post_webhook("hotmart", payloads.hotmart_purchase("PURCHASE_REFUNDED"))
    assert r.json()["data"]["outcome"] == "processed"

    user = _user(engine)
    assert user.access_level == AccessLevel.free
    assert user.subscription_expiry is None
    assert user.cancelled_at is not None
    assert user.has_lifetime_access is False


def test_subscription_cancellation(engine, post_webhook, payloads):
    post_webhook("hotmart", payloads.hotmart_purchase())
    r = post_webhook("hotmart", payloads.hotmart_cancellation())
    assert r.json()["data"]["outcome"] == "processed"
    assert _user(engine).access_level == AccessLevel.free


def test_lifetime_purchase_survives_timed_purchase(engine, post_webhook, payloads):
    post_webhook("hotmart", payloads.hotmart_purchase(transaction="HP-LIFE", product_id=2002))
    post_webhook("hotmart", payloads.hotmart_purchase(transaction="HP-MONTH", product_id=1001))

    user = _user(engine)
    assert user.has_lifetime_access is True
    assert user.plan_type == PlanType.lifetime
    assert user.subscription_expiry is None


def test_renewal_extends_expiry(engine, post_webhook, payloads):
    before = utc_now()
    post_webhook("hotmart", payloads.hotmart_purchase(transaction="HP-1"))
    post_webhook("hotmart", payloads.hotmart_purchase("PURCHASE_COMPLETE", transaction="HP-2"))

    expiry = ensure_utc(_user(engine).subscription_expiry)
    assert before + timedelta(days=60) <= expiry <= utc_now() + timedelta(days=60)


def test_doppus_recurring_charge_is_a_renewal(engine, post_webhook, payloads):
    before = utc_now()
    post_webhook("doppus", payloads.doppus_order(transaction="DP-1", charges=1))
    post_webhook("doppus", payloads.doppus_order(transaction="DP-2", charges=2))
    expiry = ensure_utc(_user(engine, "cliente@cliente.com.br").subscription_expiry)
    assert expiry >= before + timedelta(days=60)


def test_staff_purchase_keeps_access_level(engine, db, post_webhook, payloads):
    db.add(User(email="buyer@cliente.com.br", access_level=AccessLevel.admin))
    db.commit()
    post_webhook("hotmart", payloads.hotmart_purchase())
    post_webhook("hotmart", payloads.hotmart_purchase("PURCHASE_REFUNDED"))
    assert _user(engine).access_level == AccessLevel.admin


def test_unknown_product_is_quarantined(engine, post_webhook, payloads):
    r = post_webhook("hotmart", payloads.hotmart_purchase(product_id=99999))
    assert r.status_code == 200
    assert r.json()["data"]["outcome"] == "quarantined"
    assert _user(engine) is None
    with Session(engine) as session:
        assert session.exec(select(DedupRecord)).first() is None
        entry = session.exec(select(AuditLogEntry)).one()
        assert entry.message.startswith("unknown_product")
        assert entry.transaction_id == "HP1000001"


def test_unknown_product_default_plan_policy(engine, make_gateway, deliver, payloads):
    gateway = make_gateway(
        unknown_product_policy="default_plan",
        default_plan=PlanSpec(plan_type=PlanType.annual, duration_days=365),
    )
    result = deliver(gateway, "hotmart", payloads.hotmart_purchase(product_id=99999))
    assert result.outcome == AuditStatus.processed
    assert _user(engine).plan_type == PlanType.annual


def test_unresolved_user_quarantine_policy(engine, make_gateway, deliver, payloads):
    gateway = make_gateway(state_machine=SubscriptionStateMachine(unresolved_user_policy="quarantine"))
    result = deliver(gateway, "hotmart", payloads.hotmart_purchase())
    assert result.status_code == 200
    assert result.outcome == AuditStatus.quarantined
    assert _user(engine) is None
    with Session(engine) as session:
        assert session.exec(select(DedupRecord)).first() is None


def test_transient_failure_releases_claim(engine, gateway, deliver, payloads, monkeypatch):
    original_apply = gateway.state_machine.apply

    def _locked(*args, **kwargs):
        raise OperationalError("SELECT users FOR UPDATE", {}, Exception("lock timeout"))

    monkeypatch.setattr(gateway.state_machine, "apply", _locked)
    payload = payloads.hotmart_purchase()
    result = deliver(gateway, "hotmart", payload)
    assert result.status_code == 503
    assert result.outcome == AuditStatus.error_retry_requested
    with Session(engine) as session:
        assert session.exec(select(DedupRecord)).first() is None
    assert _user(engine) is None

    monkeypatch.setattr(gateway.state_machine, "apply", original_apply)
    retry = deliver(gateway, "hotmart", payload)
    assert retry.status_code == 200
    assert retry.outcome == AuditStatus.processed
    assert sorted(_audit_statuses(engine)) == ["error_retry_requested", "processed"]


def test_processing_deadline_requests_retry(make_gateway, deliver, payloads, engine):
    gateway = make_gateway(processing_timeout_seconds=0)
    result = deliver(gateway, "hotmart", payloads.hotmart_purchase())
    assert result.status_code == 503
    assert result.outcome == AuditStatus.error_retry_requested
    assert _user(engine) is None


def test_non_transient_apply_error_is_acknowledged(gateway, deliver, payloads, monkeypatch, engine):
    def _broken(*args, **kwargs):
        raise ApplyError("user row is inconsistent")

    monkeypatch.setattr(gateway.state_machine, "apply", _broken)
    result = deliver(gateway, "hotmart", payloads.hotmart_purchase())
    assert result.status_code == 200
    assert result.outcome == AuditStatus.error
    with Session(engine) as session:
        assert session.exec(select(DedupRecord)).first() is None


def test_event_store_outage_requests_retry(engine, gateway, deliver, payloads, monkeypatch):
    def _store_down(*args, **kwargs):
        raise OperationalError("INSERT INTO webhook_events", {}, Exception("connection refused"))

    monkeypatch.setattr(gateway, "_store_event", _store_down)
    result = deliver(gateway, "hotmart", payloads.hotmart_purchase())
    assert result.status_code == 503
    assert result.outcome == AuditStatus.error_retry_requested
    assert result.message == "Event store unavailable"
    assert result.webhook_event_id is None
    assert _audit_statuses(engine) == []
    assert _user(engine) is None


def test_audit_outage_on_failure_requests_retry(engine, gateway, deliver, payloads, monkeypatch):
    def _broken(*args, **kwargs):
        raise ApplyError("user row is inconsistent")

    def _audit_down(*args, **kwargs):
        raise OperationalError("INSERT INTO audit_log", {}, Exception("connection refused"))

    monkeypatch.setattr(gateway.state_machine, "apply", _broken)
    monkeypatch.setattr("app.services.audit_log.record", _audit_down)
    result = deliver(gateway, "hotmart", payloads.hotmart_purchase())

    # 失败结果无法留痕时请平台重试，认领已回滚
    assert result.status_code == 503
    assert result.outcome == AuditStatus.error_retry_requested
    assert result.message == "Audit log unavailable"
    with Session(engine) as session:
        assert session.exec(select(DedupRecord)).first() is None
        assert session.exec(select(AuditLogEntry)).first() is None
        assert len(session.exec(select(WebhookEvent)).all()) == 1
    assert _user(engine) is None


def test_unexpected_error_returns_500(gateway, deliver, payloads, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(gateway.state_machine, "apply", _boom)
    result = deliver(gateway, "hotmart", payloads.hotmart_purchase())
    assert result.status_code == 500
    assert result.outcome == AuditStatus.error_retry_requested


class _UnavailableProvider:
    def get_product(self, product_id: str, *, timeout=None):
        raise ProviderAPIError("connect timeout", transient=True)


def test_provider_outage_during_lookup_requests_retry(make_gateway, deliver, payloads):
    catalog = PlanCatalog(ttl_seconds=600, providers={"hotmart": _UnavailableProvider()})  # type: ignore[dict-item]
    gateway = make_gateway(catalog=catalog)
    result = deliver(gateway, "hotmart", payloads.hotmart_purchase(product_id=424242))
    assert result.status_code == 503
    assert result.outcome == AuditStatus.error_retry_requested


def test_slow_provider_lookup_stays_within_budget(make_gateway, deliver, payloads):
    seen_timeouts: list[float] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/token"):
            return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
        read_timeout = request.extensions["timeout"]["read"]
        seen_timeouts.append(read_timeout)
        time.sleep(min(3.0, read_timeout))
        raise httpx.ReadTimeout("read timed out", request=request)

    with httpx.Client(transport=httpx.MockTransport(_handler), timeout=3.0) as http:
        provider = build_hotmart_client(
            client_id="hm-id",
            client_secret="hm-secret",
            auth_url="https://auth.hotmart.test/security/oauth/token",
            base_url="https://api.hotmart.test",
            http=http,
        )
        catalog = PlanCatalog(ttl_seconds=600, providers={"hotmart": provider})
        gateway = make_gateway(catalog=catalog, processing_timeout_seconds=1.0)

        started = time.monotonic()
        result = deliver(gateway, "hotmart", payloads.hotmart_purchase(product_id=424242))
        elapsed = time.monotonic() - started

    assert result.status_code == 503
    assert result.outcome == AuditStatus.error_retry_requested
    # 单次请求超时不超过剩余预算，且剩余时间不够时不再重试
    assert len(seen_timeouts) == 1
    assert seen_timeouts[0] <= 1.0
    assert elapsed < 1.5


def test_refund_needs_no_catalog_entry(engine, post_webhook, payloads):
    post_webhook("hotmart", payloads.hotmart_purchase())
    r = post_webhook("hotmart", payloads.hotmart_purchase("PURCHASE_CHARGEBACK", product_id=77777))
    assert r.json()["data"]["outcome"] == "processed"
    assert _user(engine).access_level == AccessLevel.free

