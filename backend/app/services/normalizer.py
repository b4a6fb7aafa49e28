"""
Webhook 事件标准化

把 Hotmart / Doppus 的原始载荷解析为统一的 CanonicalEvent。
每个平台使用按事件类型区分的 Pydantic 联合类型解析，遇到未知事件或结构不完整的载荷
直接抛出 NormalizationError，不做猜测。

Hotmart 事件（v2 载荷）:
    PURCHASE_APPROVED                          -> purchase_approved
    PURCHASE_COMPLETE                          -> renewal
    PURCHASE_REFUNDED / PURCHASE_CHARGEBACK    -> refund
    PURCHASE_CANCELED / SUBSCRIPTION_CANCELLATION -> cancellation

Doppus 有两种格式:
    旧格式 {"event": ..., "data": {...}}，按 event 区分
    2025 格式 {"customer", "status", "transaction", "items", "recurrence"}，按 status.code 区分
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Discriminator,
    EmailStr,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
)

from app.enums import CanonicalEventType, WebhookSource
from app.models import ensure_utc, utc_now
from app.services.errors import NormalizationError


def _coerce_identifier(v: Any) -> Any:
    # Hotmart 的产品 ID 是整数，统一转成字符串；布尔值不是合法 ID
    if isinstance(v, bool):
        raise ValueError("identifier must not be a boolean")
    if isinstance(v, int):
        return str(v)
    if isinstance(v, str):
        return v.strip()
    return v


Identifier = Annotated[str, BeforeValidator(_coerce_identifier), Field(min_length=1, max_length=128)]


def _from_epoch_ms(v: Any) -> Any:
    if isinstance(v, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(v, int | float):
        # 超出平台 time_t 范围、Infinity、NaN 都按格式错误处理
        try:
            return datetime.fromtimestamp(v / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"timestamp out of range: {v}") from e
    return v


EpochMillis = Annotated[datetime, BeforeValidator(_from_epoch_ms)]


class CanonicalEvent(BaseModel):
    """
    标准化后的支付事件（只存在于内存中，不单独持久化）

    occurred_at 只用于审计排序，过期时间计算始终使用处理时的当前时间。
    """
    model_config = ConfigDict(frozen=True)

    event_type: CanonicalEventType
    source: WebhookSource
    transaction_id: str
    user_email: str
    user_name: str | None = None
    product_id: str
    occurred_at: datetime
    provider_event: str  # 平台原始事件名，便于排查


# ============================================================
# Hotmart
# ============================================================


class _HotmartBuyer(BaseModel):
    email: EmailStr
    name: str | None = None


class _HotmartProduct(BaseModel):
    id: Identifier
    name: str | None = None


class _HotmartPurchase(BaseModel):
    transaction: Identifier
    approved_date: EpochMillis | None = None


class _HotmartPurchaseData(BaseModel):
    buyer: _HotmartBuyer
    product: _HotmartProduct
    purchase: _HotmartPurchase


class HotmartPurchaseEvent(BaseModel):
    event: Literal[
        "PURCHASE_APPROVED",
        "PURCHASE_COMPLETE",
        "PURCHASE_REFUNDED",
        "PURCHASE_CHARGEBACK",
        "PURCHASE_CANCELED",
    ]
    creation_date: EpochMillis | None = None
    data: _HotmartPurchaseData


class _HotmartSubscriber(BaseModel):
    code: str | None = None
    email: EmailStr
    name: str | None = None


class _HotmartSubscriptionRef(BaseModel):
    id: Identifier


class _HotmartCancellationData(BaseModel):
    subscriber: _HotmartSubscriber
    subscription: _HotmartSubscriptionRef
    product: _HotmartProduct
    cancellation_date: EpochMillis | None = None


class HotmartCancellationEvent(BaseModel):
    event: Literal["SUBSCRIPTION_CANCELLATION"]
    creation_date: EpochMillis | None = None
    data: _HotmartCancellationData


HotmartPayload = Annotated[
    Union[HotmartPurchaseEvent, HotmartCancellationEvent],
    Field(discriminator="event"),
]

HOTMART_EVENT_MAP: dict[str, CanonicalEventType] = {
    "PURCHASE_APPROVED": CanonicalEventType.purchase_approved,
    "PURCHASE_COMPLETE": CanonicalEventType.renewal,
    "PURCHASE_REFUNDED": CanonicalEventType.refund,
    "PURCHASE_CHARGEBACK": CanonicalEventType.refund,
    "PURCHASE_CANCELED": CanonicalEventType.cancellation,
    "SUBSCRIPTION_CANCELLATION": CanonicalEventType.cancellation,
}


# ============================================================
# Doppus
# ============================================================


class _DoppusCustomer(BaseModel):
    email: EmailStr
    name: str | None = None


class _DoppusCode(BaseModel):
    code: Identifier


class _DoppusLegacyData(BaseModel):
    customer: _DoppusCustomer
    transaction: _DoppusCode
    product: _DoppusCode
    date: datetime | None = None


class DoppusLegacyEvent(BaseModel):
    event: Literal[
        "PAYMENT_APPROVED",
        "SUBSCRIPTION_RENEWED",
        "PAYMENT_REFUNDED",
        "PAYMENT_CHARGEBACK",
        "SUBSCRIPTION_CANCELLED",
    ]
    data: _DoppusLegacyData


class _DoppusStatus(BaseModel):
    code: Literal["approved", "refunded", "chargeback", "canceled", "cancelled"]
    date: datetime | None = None


class _DoppusItem(BaseModel):
    code: Identifier
    offer: str | None = None


class _DoppusRecurrence(BaseModel):
    code: str | None = None
    periodicy: str | None = None
    charges: int | None = Field(default=None, ge=1)  # 第几次扣款，大于 1 表示续费


class DoppusOrderEvent(BaseModel):
    customer: _DoppusCustomer
    status: _DoppusStatus
    transaction: _DoppusCode
    items: list[_DoppusItem] = Field(min_length=1)
    recurrence: _DoppusRecurrence | None = None


def _doppus_shape(v: Any) -> str | None:
    if isinstance(v, dict):
        return "legacy" if "event" in v else "order"
    return None


DoppusPayload = Annotated[
    Union[
        Annotated[DoppusLegacyEvent, Tag("legacy")],
        Annotated[DoppusOrderEvent, Tag("order")],
    ],
    Discriminator(_doppus_shape),
]

DOPPUS_EVENT_MAP: dict[str, CanonicalEventType] = {
    "PAYMENT_APPROVED": CanonicalEventType.purchase_approved,
    "SUBSCRIPTION_RENEWED": CanonicalEventType.renewal,
    "PAYMENT_REFUNDED": CanonicalEventType.refund,
    "PAYMENT_CHARGEBACK": CanonicalEventType.refund,
    "SUBSCRIPTION_CANCELLED": CanonicalEventType.cancellation,
}

DOPPUS_STATUS_MAP: dict[str, CanonicalEventType] = {
    "approved": CanonicalEventType.purchase_approved,
    "refunded": CanonicalEventType.refund,
    "chargeback": CanonicalEventType.refund,
    "canceled": CanonicalEventType.cancellation,
    "cancelled": CanonicalEventType.cancellation,
}

_hotmart_adapter: TypeAdapter[HotmartPurchaseEvent | HotmartCancellationEvent] = TypeAdapter(HotmartPayload)
_doppus_adapter: TypeAdapter[DoppusLegacyEvent | DoppusOrderEvent] = TypeAdapter(DoppusPayload)


# ============================================================
# 入口
# ============================================================


def decode_payload(raw_payload: str | bytes | dict[str, Any]) -> dict[str, Any]:
    """
    把原始请求体解码为 JSON 对象

    Raises:
        NormalizationError: 不是合法 JSON 或顶层不是对象
    """
    if isinstance(raw_payload, dict):
        return raw_payload
    try:
        data = json.loads(raw_payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise NormalizationError("invalid_json", str(e)) from e
    if not isinstance(data, dict):
        raise NormalizationError("invalid_payload", "top-level JSON value must be an object")
    return data


def _to_normalization_error(exc: ValidationError) -> NormalizationError:
    errors = exc.errors()
    first = errors[0] if errors else {}
    error_type = first.get("type")
    loc = tuple(str(p) for p in first.get("loc", ()))
    if error_type == "union_tag_invalid":
        return NormalizationError("unsupported_event", str(first.get("input"))[:128])
    if error_type == "union_tag_not_found":
        return NormalizationError("missing_event")
    if error_type == "literal_error" and (loc[-1:] == ("event",) or loc[-2:] == ("status", "code")):
        return NormalizationError("unsupported_event", str(first.get("input"))[:128])
    return NormalizationError("invalid_payload", f"{'.'.join(loc)}: {first.get('msg')}")


def _normalize_hotmart(data: dict[str, Any], received_at: datetime) -> CanonicalEvent:
    try:
        parsed = _hotmart_adapter.validate_python(data)
    except ValidationError as e:
        raise _to_normalization_error(e) from e

    if isinstance(parsed, HotmartCancellationEvent):
        occurred = parsed.data.cancellation_date or parsed.creation_date
        return CanonicalEvent(
            event_type=HOTMART_EVENT_MAP[parsed.event],
            source=WebhookSource.hotmart,
            transaction_id=parsed.data.subscription.id,
            user_email=str(parsed.data.subscriber.email).lower(),
            user_name=parsed.data.subscriber.name,
            product_id=parsed.data.product.id,
            occurred_at=ensure_utc(occurred) or received_at,
            provider_event=parsed.event,
        )

    occurred = parsed.creation_date or parsed.data.purchase.approved_date
    return CanonicalEvent(
        event_type=HOTMART_EVENT_MAP[parsed.event],
        source=WebhookSource.hotmart,
        transaction_id=parsed.data.purchase.transaction,
        user_email=str(parsed.data.buyer.email).lower(),
        user_name=parsed.data.buyer.name,
        product_id=parsed.data.product.id,
        occurred_at=ensure_utc(occurred) or received_at,
        provider_event=parsed.event,
    )


def _normalize_doppus(data: dict[str, Any], received_at: datetime) -> CanonicalEvent:
    try:
        parsed = _doppus_adapter.validate_python(data)
    except ValidationError as e:
        raise _to_normalization_error(e) from e

    if isinstance(parsed, DoppusLegacyEvent):
        return CanonicalEvent(
            event_type=DOPPUS_EVENT_MAP[parsed.event],
            source=WebhookSource.doppus,
            transaction_id=parsed.data.transaction.code,
            user_email=str(parsed.data.customer.email).lower(),
            user_name=parsed.data.customer.name,
            product_id=parsed.data.product.code,
            occurred_at=ensure_utc(parsed.data.date) or received_at,
            provider_event=parsed.event,
        )

    event_type = DOPPUS_STATUS_MAP[parsed.status.code]
    if (
        event_type == CanonicalEventType.purchase_approved
        and parsed.recurrence is not None
        and parsed.recurrence.charges is not None
        and parsed.recurrence.charges > 1
    ):
        event_type = CanonicalEventType.renewal
    return CanonicalEvent(
        event_type=event_type,
        source=WebhookSource.doppus,
        transaction_id=parsed.transaction.code,
        user_email=str(parsed.customer.email).lower(),
        user_name=parsed.customer.name,
        product_id=parsed.items[0].code,
        occurred_at=ensure_utc(parsed.status.date) or received_at,
        provider_event=f"status:{parsed.status.code}",
    )


def normalize(
    source: WebhookSource | str,
    raw_payload: str | bytes | dict[str, Any],
    *,
    received_at: datetime | None = None,
) -> CanonicalEvent:
    """
    标准化一条 webhook 载荷

    Args:
        source: 来源平台
        raw_payload: 原始请求体（文本/字节）或已解码的 JSON 对象
        received_at: 网关接收时间，载荷中没有事件时间时使用

    Returns:
        CanonicalEvent

    Raises:
        NormalizationError: 载荷无法解析、事件未知或缺少必要字段
    """
    try:
        source = WebhookSource(source)
    except ValueError as e:
        raise NormalizationError("unknown_source", str(source)) from e

    received_at = ensure_utc(received_at) or utc_now()
    try:
        data = decode_payload(raw_payload)
        if source == WebhookSource.hotmart:
            return _normalize_hotmart(data, received_at)
        return _normalize_doppus(data, received_at)
    except NormalizationError:
        raise
    except Exception as e:
        # 载荷再怎么异常也只能是格式错误，不能让平台无限重试
        raise NormalizationError("invalid_payload", f"{type(e).__name__}: {e}"[:500]) from e
