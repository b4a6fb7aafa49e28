"""
Webhook 网关

处理流程：
1. 先把原始投递写入 webhook_events 并提交（之后的任何失败都有据可查）
2. 校验来源（Hotmart hottok / Doppus HMAC 签名）
3. 标准化载荷
4. 购买/续费解析套餐目录
5. 同一事务内：去重认领 -> 状态变更 -> 记录去重结果 -> 审计 processed -> 提交
6. 失败时回滚（认领随之撤销），在新事务中写入审计记录

每个终态都在返回 HTTP 响应之前写入且只写入一条审计记录。
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from sqlalchemy import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlmodel import Session

from app.core.db import set_local_timeouts
from app.enums import AuditStatus, CanonicalEventType, PlanType, WebhookSource
from app.models import WebhookEvent, ensure_utc, utc_now
from app.services import audit_log
from app.services.dedup import DedupLedger
from app.services.errors import (
    ApplyError,
    NormalizationError,
    ProcessingTimeout,
    ProviderAPIError,
    UnknownProductError,
    UserUnresolvableError,
)
from app.services.normalizer import CanonicalEvent, normalize
from app.services.plan_catalog import PlanCatalog, PlanSpec
from app.services.subscription_state import SubscriptionStateMachine

logger = logging.getLogger(__name__)

HOTMART_TOKEN_HEADER = "x-hotmart-hottok"
DOPPUS_SIGNATURE_HEADER = "x-doppus-signature"

# 不落库的请求头
_SENSITIVE_HEADERS = frozenset(
    {HOTMART_TOKEN_HEADER, DOPPUS_SIGNATURE_HEADER, "authorization", "cookie", "proxy-authorization"}
)

# 数据库连接/锁等待/语句超时等临时故障
_TRANSIENT_DB_ERRORS = (OperationalError, PoolTimeoutError)


@dataclass(frozen=True)
class GatewayResult:
    status_code: int
    outcome: AuditStatus
    message: str
    webhook_event_id: int | None = None


def strip_sensitive_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items() if k.lower() not in _SENSITIVE_HEADERS}


def sign_doppus_payload(secret: str, raw_body: bytes) -> str:
    """Doppus 签名：以密钥对原始请求体做 HMAC-SHA256，十六进制"""
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


class WebhookGateway:
    """Webhook 网关"""

    def __init__(
        self,
        *,
        engine: Engine,
        catalog: PlanCatalog,
        state_machine: SubscriptionStateMachine,
        ledger: DedupLedger | None = None,
        hotmart_hottok: str | None = None,
        doppus_secret_key: str | None = None,
        environment: str = "local",
        processing_timeout_seconds: float = 5.0,
        unknown_product_policy: Literal["quarantine", "default_plan"] = "quarantine",
        default_plan: PlanSpec | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            engine: 数据库引擎（网关需要多个独立事务）
            catalog: 套餐目录
            state_machine: 订阅状态机
            ledger: 去重账本
            hotmart_hottok: Hotmart 校验令牌
            doppus_secret_key: Doppus 签名密钥
            environment: 运行环境；未配置密钥时只有 local 放行
            processing_timeout_seconds: 单个 webhook 的处理时间预算
            unknown_product_policy: 产品无映射时隔离或使用默认计划
            default_plan: default_plan 策略使用的计划
            clock: 单调时钟（测试可替换）
        """
        self.engine = engine
        self.catalog = catalog
        self.state_machine = state_machine
        self.ledger = ledger or DedupLedger()
        self.hotmart_hottok = hotmart_hottok
        self.doppus_secret_key = doppus_secret_key
        self.environment = environment
        self.processing_timeout_seconds = processing_timeout_seconds
        self.unknown_product_policy = unknown_product_policy
        self.default_plan = default_plan or PlanSpec(plan_type=PlanType.monthly, duration_days=30)
        self._clock = clock

    # ========================================================================
    # 入口
    # ========================================================================

    def handle(
        self,
        source: WebhookSource | str,
        raw_body: bytes,
        headers: Mapping[str, str],
        source_ip: str | None = None,
    ) -> GatewayResult:
        """
        处理一次 webhook 投递

        Returns:
            GatewayResult：401 鉴权失败，5xx 请平台重试，其余 200
        """
        deadline = self._clock() + self.processing_timeout_seconds
        source = WebhookSource(source)
        received_at = utc_now()

        try:
            webhook_event_id = self._store_event(source, raw_body, headers, source_ip, received_at)
        except SQLAlchemyError:
            logger.exception("Failed to persist %s webhook event", source.value)
            return GatewayResult(503, AuditStatus.error_retry_requested, "Event store unavailable")

        if not self._verify(source, raw_body, headers):
            logger.warning("Rejected %s webhook %s: authentication failed", source.value, webhook_event_id)
            return self._finish(
                source,
                webhook_event_id,
                AuditStatus.rejected_auth,
                "Authentication failed",
                status_code=401,
            )

        raw_payload = raw_body.decode("utf-8", errors="replace")
        return self._process(source, raw_payload, webhook_event_id, received_at, deadline)

    def replay(self, webhook_event_id: int) -> GatewayResult | None:
        """
        重新处理已保存的 webhook（管理端使用）

        鉴权失败过的事件不允许重放；已处理过的事件由去重账本吸收。

        Returns:
            GatewayResult；事件不存在时返回 None

        Raises:
            PermissionError: 事件曾鉴权失败
        """
        deadline = self._clock() + self.processing_timeout_seconds
        with Session(self.engine) as session:
            event = session.get(WebhookEvent, webhook_event_id)
            if event is None:
                return None
            entries = audit_log.list_for_webhook_event(session, webhook_event_id)
            source = WebhookSource(event.source)
            raw_payload = event.raw_payload
            received_at = ensure_utc(event.received_at)

        if any(entry.status == AuditStatus.rejected_auth for entry in entries):
            raise PermissionError(f"Webhook event {webhook_event_id} failed authentication")

        logger.info("Replaying %s webhook event %s", source.value, webhook_event_id)
        return self._process(source, raw_payload, webhook_event_id, received_at, deadline)

    # ========================================================================
    # 步骤
    # ========================================================================

    def _store_event(
        self,
        source: WebhookSource,
        raw_body: bytes,
        headers: Mapping[str, str],
        source_ip: str | None,
        received_at: datetime,
    ) -> int:
        with Session(self.engine) as session:
            event = WebhookEvent(
                source=source,
                received_at=received_at,
                raw_payload=raw_body.decode("utf-8", errors="replace"),
                headers=strip_sensitive_headers(headers),
                source_ip=source_ip,
            )
            webhook_event_id = event.id
            session.add(event)
            session.commit()
        return webhook_event_id

    def _verify(self, source: WebhookSource, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        secret = self.hotmart_hottok if source == WebhookSource.hotmart else self.doppus_secret_key
        if not secret:
            if self.environment == "local":
                logger.warning("%s webhook secret not configured, skipping verification", source.value)
                return True
            logger.error("%s webhook secret not configured, rejecting", source.value)
            return False

        if source == WebhookSource.hotmart:
            provided = lowered.get(HOTMART_TOKEN_HEADER, "")
            return hmac.compare_digest(provided.encode(), secret.encode())

        provided = lowered.get(DOPPUS_SIGNATURE_HEADER, "").strip().lower()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        expected = sign_doppus_payload(secret, raw_body)
        return hmac.compare_digest(provided.encode(), expected.encode())

    def _check_deadline(self, deadline: float) -> None:
        if self._clock() >= deadline:
            raise ProcessingTimeout("Webhook processing exceeded its time budget")

    def _remaining_ms(self, deadline: float) -> int:
        return max(int((deadline - self._clock()) * 1000), 1)

    def _resolve_plan(self, event: CanonicalEvent, deadline: float) -> PlanSpec | None:
        if event.event_type not in (CanonicalEventType.purchase_approved, CanonicalEventType.renewal):
            return None
        with Session(self.engine) as session:
            plan = self.catalog.resolve(
                session,
                event.source.value,
                event.product_id,
                timeout=max(deadline - self._clock(), 0.0),
            )
        if plan is not None:
            return plan
        if self.unknown_product_policy == "default_plan":
            logger.warning(
                "Product %s from %s is not mapped, applying default plan %s",
                event.product_id,
                event.source.value,
                self.default_plan.plan_type.value,
            )
            return self.default_plan
        raise UnknownProductError(event.source.value, event.product_id)

    def _process(
        self,
        source: WebhookSource,
        raw_payload: str,
        webhook_event_id: int,
        received_at: datetime | None,
        deadline: float,
    ) -> GatewayResult:
        try:
            event = normalize(source, raw_payload, received_at=received_at)
        except NormalizationError as e:
            logger.info("Rejected malformed %s webhook %s: %s", source.value, webhook_event_id, e)
            return self._finish(source, webhook_event_id, AuditStatus.rejected_malformed, str(e))

        try:
            self._check_deadline(deadline)
            plan = self._resolve_plan(event, deadline)
            self._check_deadline(deadline)
            return self._apply(event, plan, webhook_event_id, deadline)
        except (UnknownProductError, UserUnresolvableError) as e:
            logger.warning("Quarantined %s webhook %s: %s", source.value, webhook_event_id, e)
            return self._finish(source, webhook_event_id, AuditStatus.quarantined, f"{e.code}: {e}", event=event)
        except ApplyError as e:
            logger.error("Failed to apply %s webhook %s: %s", source.value, webhook_event_id, e)
            return self._finish(source, webhook_event_id, AuditStatus.error, f"{e.code}: {e}", event=event)
        except ProviderAPIError as e:
            # 非临时错误已在套餐目录中按未命中处理
            logger.warning("Provider API unavailable for webhook %s: %s", webhook_event_id, e)
            return self._finish(
                source, webhook_event_id, AuditStatus.error_retry_requested, str(e), event=event, status_code=503
            )
        except (ProcessingTimeout, *_TRANSIENT_DB_ERRORS) as e:
            logger.warning("Transient failure processing webhook %s: %s", webhook_event_id, e)
            return self._finish(
                source,
                webhook_event_id,
                AuditStatus.error_retry_requested,
                f"{type(e).__name__}: {e}"[:500],
                event=event,
                status_code=503,
            )
        except Exception as e:
            logger.exception("Unexpected error processing webhook %s", webhook_event_id)
            return self._finish(
                source,
                webhook_event_id,
                AuditStatus.error_retry_requested,
                f"{type(e).__name__}: {e}"[:500],
                event=event,
                status_code=500,
            )

    def _apply(
        self,
        event: CanonicalEvent,
        plan: PlanSpec | None,
        webhook_event_id: int,
        deadline: float,
    ) -> GatewayResult:
        # 任何异常都会在退出 with 时回滚，认领随之撤销
        with Session(self.engine) as session:
            set_local_timeouts(session, milliseconds=self._remaining_ms(deadline))
            claim = self.ledger.try_claim(
                session,
                source=event.source.value,
                transaction_id=event.transaction_id,
                event_type=event.event_type.value,
                webhook_event_id=webhook_event_id,
                lock_timeout_ms=self._remaining_ms(deadline),
            )
            if not claim.claimed:
                message = f"Already processed (outcome: {claim.prior_outcome})"
                audit_log.record(
                    session,
                    source=event.source.value,
                    status=AuditStatus.duplicate,
                    event_type=event.event_type.value,
                    webhook_event_id=webhook_event_id,
                    transaction_id=event.transaction_id,
                    email=event.user_email,
                    message=message,
                )
                session.commit()
                return GatewayResult(200, AuditStatus.duplicate, message, webhook_event_id)

            now = utc_now()
            transition = self.state_machine.apply(session, event, plan, now=now)
            self.ledger.mark(session, claim.record, AuditStatus.processed.value)
            message = transition.describe(now)
            audit_log.record(
                session,
                source=event.source.value,
                status=AuditStatus.processed,
                event_type=event.event_type.value,
                webhook_event_id=webhook_event_id,
                transaction_id=event.transaction_id,
                email=event.user_email,
                user_id=transition.user_id,
                message=message,
            )
            self._check_deadline(deadline)
            session.commit()
        return GatewayResult(200, AuditStatus.processed, message, webhook_event_id)

    def _finish(
        self,
        source: WebhookSource,
        webhook_event_id: int,
        status: AuditStatus,
        message: str,
        *,
        event: CanonicalEvent | None = None,
        status_code: int = 200,
    ) -> GatewayResult:
        """在新事务中写入失败结果的审计记录"""
        try:
            with Session(self.engine) as session:
                audit_log.record(
                    session,
                    source=source.value,
                    status=status,
                    event_type=event.event_type.value if event else None,
                    webhook_event_id=webhook_event_id,
                    transaction_id=event.transaction_id if event else None,
                    email=event.user_email if event else None,
                    message=message,
                )
                session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to write audit entry for webhook %s", webhook_event_id)
            if status_code < 500:
                return GatewayResult(503, AuditStatus.error_retry_requested, "Audit log unavailable", webhook_event_id)
        return GatewayResult(status_code, status, message, webhook_event_id)
