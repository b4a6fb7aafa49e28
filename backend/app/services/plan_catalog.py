"""
套餐目录服务

支付平台产品 ID -> 订阅计划（类型 + 天数）。
查询顺序：进程内 TTL 缓存 -> 数据库 -> 支付平台产品接口（查到后写回数据库）。
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.enums import PlanType
from app.integrations.base import ProviderClient
from app.models import PlanCatalogEntry, utc_now
from app.services.errors import ProviderAPIError

logger = logging.getLogger(__name__)


class PlanSpec(BaseModel):
    """订阅计划：duration_days 为 None 表示终身"""
    model_config = ConfigDict(frozen=True)

    plan_type: PlanType
    duration_days: int | None = None

    @property
    def is_lifetime(self) -> bool:
        return self.plan_type == PlanType.lifetime or self.duration_days is None


def validate_plan(plan_type: PlanType, duration_days: int | None) -> None:
    """
    终身计划不能有天数，定期计划必须有正的天数

    Raises:
        ValueError: 组合不合法时
    """
    if plan_type == PlanType.none:
        raise ValueError("plan_type 'none' cannot be mapped to a product")
    if plan_type == PlanType.lifetime:
        if duration_days is not None:
            raise ValueError("lifetime plans must not define duration_days")
    elif duration_days is None or duration_days <= 0:
        raise ValueError(f"{plan_type.value} plans require a positive duration_days")


class PlanCatalog:
    """带缓存的套餐目录（线程安全）"""

    def __init__(
        self,
        *,
        ttl_seconds: int,
        providers: Mapping[str, ProviderClient] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            ttl_seconds: 缓存有效期（秒）
            providers: source -> 平台客户端；未配置凭据的平台不在其中
            clock: 单调时钟（测试可替换）
        """
        self.ttl_seconds = ttl_seconds
        self.providers = dict(providers or {})
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[tuple[str, str], tuple[PlanSpec, float]] = {}

    def _cached(self, key: tuple[str, str]) -> PlanSpec | None:
        with self._lock:
            hit = self._cache.get(key)
            if hit is None:
                return None
            spec, expires_at = hit
            if self._clock() >= expires_at:
                del self._cache[key]
                return None
            return spec

    def _remember(self, key: tuple[str, str], spec: PlanSpec) -> None:
        with self._lock:
            self._cache[key] = (spec, self._clock() + self.ttl_seconds)

    def invalidate(self, source: str | None = None, product_id: str | None = None) -> None:
        """清除缓存；不传参数时清空全部"""
        with self._lock:
            if source is None:
                self._cache.clear()
            else:
                self._cache.pop((source, product_id or ""), None)

    def resolve(
        self, session: Session, source: str, product_id: str, *, timeout: float | None = None
    ) -> PlanSpec | None:
        """
        解析产品对应的订阅计划

        从平台接口查到的映射会写入数据库并提交，因此调用方应传入独立的会话。

        Args:
            timeout: 平台接口调用可用的秒数（webhook 处理时传入剩余时间）

        Returns:
            PlanSpec，找不到映射时返回 None

        Raises:
            ProviderAPIError: 平台接口临时故障（transient=True）
        """
        key = (source, product_id)
        spec = self._cached(key)
        if spec is not None:
            return spec

        entry = session.exec(
            select(PlanCatalogEntry)
            .where(PlanCatalogEntry.source == source)
            .where(PlanCatalogEntry.product_id == product_id)
        ).first()
        if entry is not None:
            spec = PlanSpec(plan_type=entry.plan_type, duration_days=entry.duration_days)
            self._remember(key, spec)
            return spec

        client = self.providers.get(source)
        if client is None:
            return None

        try:
            product = client.get_product(product_id, timeout=timeout)
        except ProviderAPIError as e:
            if e.transient:
                raise
            logger.warning("Product lookup for %s/%s failed: %s", source, product_id, e)
            return None
        if product is None:
            logger.info("Product %s/%s not found on provider", source, product_id)
            return None

        try:
            self.upsert(
                session,
                source=source,
                product_id=product_id,
                plan_type=product.plan_type,
                duration_days=product.duration_days,
                product_name=product.name,
            )
            session.commit()
        except IntegrityError:
            # 并发请求已写入同一产品
            session.rollback()
        logger.info(
            "Plan catalog learned %s/%s -> %s (%s days)",
            source,
            product_id,
            product.plan_type.value,
            product.duration_days,
        )
        spec = PlanSpec(plan_type=product.plan_type, duration_days=product.duration_days)
        self._remember(key, spec)
        return spec

    def upsert(
        self,
        session: Session,
        *,
        source: str,
        product_id: str,
        plan_type: PlanType,
        duration_days: int | None,
        product_name: str | None = None,
    ) -> PlanCatalogEntry:
        """
        新增或更新映射（调用方负责提交）

        Raises:
            ValueError: 计划类型与天数不匹配
        """
        validate_plan(plan_type, duration_days)
        entry = session.exec(
            select(PlanCatalogEntry)
            .where(PlanCatalogEntry.source == source)
            .where(PlanCatalogEntry.product_id == product_id)
        ).first()
        if entry is None:
            entry = PlanCatalogEntry(source=source, product_id=product_id)
        entry.plan_type = plan_type
        entry.duration_days = duration_days
        if product_name is not None:
            entry.product_name = product_name
        entry.updated_at = utc_now()
        session.add(entry)
        session.flush()
        self.invalidate(source, product_id)
        return entry

    def list_entries(self, session: Session, source: str | None = None) -> list[PlanCatalogEntry]:
        stmt = select(PlanCatalogEntry)
        if source is not None:
            stmt = stmt.where(PlanCatalogEntry.source == source)
        stmt = stmt.order_by(PlanCatalogEntry.source, PlanCatalogEntry.product_id)
        return list(session.exec(stmt).all())

    def refresh(self, session: Session) -> int:
        """用数据库内容重建缓存，返回条目数"""
        entries = self.list_entries(session)
        expires_at = self._clock() + self.ttl_seconds
        fresh = {
            (e.source, e.product_id): (
                PlanSpec(plan_type=e.plan_type, duration_days=e.duration_days),
                expires_at,
            )
            for e in entries
        }
        with self._lock:
            self._cache = fresh
        logger.info("Plan catalog refreshed: %d entries", len(fresh))
        return len(fresh)
