"""
Hotmart API 客户端

文档: https://developers.hotmart.com/docs/en/
"""
from __future__ import annotations

import httpx

from app.enums import PlanType, WebhookSource
from app.integrations.base import ProviderClient, ProviderProduct, plan_for_period
from app.integrations.oauth import ClientCredentialsAuth


class HotmartClient(ProviderClient):
    """Hotmart 产品查询"""

    source = WebhookSource.hotmart

    def get_product(self, product_id: str, *, timeout: float | None = None) -> ProviderProduct | None:
        """
        查询产品并映射为订阅计划

        响应格式: {"items": [{"id", "name", "is_subscription", "recurrence_period"}]}
        非订阅产品视为终身；订阅周期无法识别时返回 None（交给套餐目录的未映射策略处理）。
        """
        body = self.request_json(
            "GET", "/products/api/v1/products", params={"id": product_id}, timeout=timeout
        )
        items = (body or {}).get("items") or []
        if not items:
            return None
        item = items[0]
        if not item.get("is_subscription"):
            return ProviderProduct(
                source=self.source,
                product_id=product_id,
                name=item.get("name"),
                plan_type=PlanType.lifetime,
                duration_days=None,
            )
        plan = plan_for_period(item.get("recurrence_period"))
        if plan is None:
            return None
        plan_type, days = plan
        return ProviderProduct(
            source=self.source,
            product_id=product_id,
            name=item.get("name"),
            plan_type=plan_type,
            duration_days=days,
        )


def build_hotmart_client(
    *,
    client_id: str,
    client_secret: str,
    auth_url: str,
    base_url: str,
    http: httpx.Client,
    refresh_margin_seconds: int = 300,
) -> HotmartClient:
    auth = ClientCredentialsAuth(
        token_url=auth_url,
        client_id=client_id,
        client_secret=client_secret,
        http=http,
        style="basic",
        refresh_margin_seconds=refresh_margin_seconds,
    )
    return HotmartClient(base_url=base_url, auth=auth, http=http)
