"""
进程级组件

网关、清扫任务、套餐目录和支付平台客户端按配置构造一次，API 进程和调度进程共用。
"""
from __future__ import annotations

from threading import Lock

import httpx

from app.core.config import Settings, settings
from app.core.db import engine
from app.core.redis_client import get_redis_client
from app.enums import PlanType
from app.integrations.base import ProviderClient
from app.integrations.doppus import build_doppus_client
from app.integrations.hotmart import build_hotmart_client
from app.services.plan_catalog import PlanCatalog, PlanSpec
from app.services.subscription_state import SubscriptionStateMachine
from app.services.sweeper import ExpirationSweeper
from app.services.webhook_gateway import WebhookGateway

_lock = Lock()
_http_client: httpx.Client | None = None
_plan_catalog: PlanCatalog | None = None
_webhook_gateway: WebhookGateway | None = None
_sweeper: ExpirationSweeper | None = None


def build_provider_clients(cfg: Settings, http: httpx.Client) -> dict[str, ProviderClient]:
    """只为配置了 API 凭据的平台创建客户端"""
    clients: dict[str, ProviderClient] = {}
    if cfg.HOTMART_CLIENT_ID and cfg.HOTMART_CLIENT_SECRET:
        clients["hotmart"] = build_hotmart_client(
            client_id=cfg.HOTMART_CLIENT_ID,
            client_secret=cfg.HOTMART_CLIENT_SECRET,
            auth_url=cfg.HOTMART_AUTH_URL,
            base_url=cfg.HOTMART_API_BASE_URL,
            http=http,
            refresh_margin_seconds=cfg.OAUTH_TOKEN_REFRESH_MARGIN_SECONDS,
        )
    if cfg.DOPPUS_CLIENT_ID and cfg.DOPPUS_CLIENT_SECRET:
        clients["doppus"] = build_doppus_client(
            client_id=cfg.DOPPUS_CLIENT_ID,
            client_secret=cfg.DOPPUS_CLIENT_SECRET,
            base_url=cfg.DOPPUS_API_BASE_URL,
            http=http,
            refresh_margin_seconds=cfg.OAUTH_TOKEN_REFRESH_MARGIN_SECONDS,
        )
    return clients


def default_plan(cfg: Settings) -> PlanSpec:
    return PlanSpec(plan_type=PlanType(cfg.DEFAULT_PLAN_TYPE), duration_days=cfg.DEFAULT_PLAN_DURATION_DAYS)


def get_http_client() -> httpx.Client:
    global _http_client
    with _lock:
        if _http_client is None:
            _http_client = httpx.Client(timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS)
        return _http_client


def get_plan_catalog() -> PlanCatalog:
    global _plan_catalog
    http = get_http_client()
    with _lock:
        if _plan_catalog is None:
            _plan_catalog = PlanCatalog(
                ttl_seconds=settings.PLAN_CATALOG_TTL_SECONDS,
                providers=build_provider_clients(settings, http),
            )
        return _plan_catalog


def get_webhook_gateway() -> WebhookGateway:
    global _webhook_gateway
    catalog = get_plan_catalog()
    with _lock:
        if _webhook_gateway is None:
            _webhook_gateway = WebhookGateway(
                engine=engine,
                catalog=catalog,
                state_machine=SubscriptionStateMachine(
                    unresolved_user_policy=settings.UNRESOLVED_USER_POLICY
                ),
                hotmart_hottok=settings.HOTMART_HOTTOK,
                doppus_secret_key=settings.DOPPUS_SECRET_KEY,
                environment=settings.ENVIRONMENT,
                processing_timeout_seconds=settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
                unknown_product_policy=settings.UNKNOWN_PRODUCT_POLICY,
                default_plan=default_plan(settings),
            )
        return _webhook_gateway


def get_expiration_sweeper() -> ExpirationSweeper:
    global _sweeper
    redis_client = get_redis_client()
    with _lock:
        if _sweeper is None:
            _sweeper = ExpirationSweeper(
                engine=engine,
                redis_client=redis_client,
                batch_size=settings.SWEEP_BATCH_SIZE,
                lock_ttl_seconds=settings.SWEEP_LOCK_TTL_SECONDS,
            )
        return _sweeper
