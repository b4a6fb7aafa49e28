"""
Doppus API 客户端
"""
from __future__ import annotations

import httpx

from app.enums import PlanType, WebhookSource
from app.integrations.base import ProviderClient, ProviderProduct, plan_for_period
from app.integrations.oauth import ClientCredentialsAuth


class DoppusClient(ProviderClient):
    """Doppus 产品查询"""

    source = WebhookSource.doppus

    def get_product(self, product_id: str, *, timeout: float | None = None) -> ProviderProduct | None:
        """
        查询产品并映射为订阅计划

        响应格式: {"data": {"code", "name", "type": "recurrence" | "single", "periodicy"}}
        """
        body = self.request_json("GET", f"/products/{product_id}", timeout=timeout)
        data = (body or {}).get("data")
        if not data:
            return None
        if data.get("type") != "recurrence":
            return ProviderProduct(
                source=self.source,
                product_id=product_id,
                name=data.get("name"),
                plan_type=PlanType.lifetime,
                duration_days=None,
            )
        plan = plan_for_period(data.get("periodicy"))
        if plan is None:
            return None
        plan_type, days = plan
        return ProviderProduct(
            source=self.source,
            product_id=product_id,
            name=data.get("name"),
            plan_type=plan_type,
            duration_days=days,
        )


def build_doppus_client(
    *,
    client_id: str,
    client_secret: str,
    base_url: str,
    http: httpx.Client,
    refresh_margin_seconds: int = 300,
) -> DoppusClient:
    auth = ClientCredentialsAuth(
        token_url=f"{base_url.rstrip('/')}/token",
        client_id=client_id,
        client_secret=client_secret,
        http=http,
        style="form",
        refresh_margin_seconds=refresh_margin_seconds,
    )
    return DoppusClient(base_url=base_url, auth=auth, http=http)
