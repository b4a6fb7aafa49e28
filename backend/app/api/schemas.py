"""
API 请求/响应数据模型（Schema）

定义所有 API 接口的请求和响应数据结构。
使用 Pydantic 进行数据验证和序列化。

关键概念：
- BaseModel: Pydantic 的模型基类，用于数据验证
- Field: 字段验证器，定义字段的约束（长度、范围等）
- 这些模型不是数据库表，只用于 API 数据交换
"""
from __future__ import annotations

from datetime import datetime
from typing import Any  # 任意类型

from pydantic import BaseModel, ConfigDict, Field, model_validator  # Pydantic 核心类

from app.enums import (
    AuditSource,  # 审计来源枚举
    AuditStatus,  # 审计状态枚举
    PlanType,  # 计划类型枚举
    SweepRunStatus,  # 清扫状态枚举
    WebhookSource,  # Webhook 来源枚举
)
from app.services.plan_catalog import validate_plan

# ============================================================
# 通用响应模型
# ============================================================


class Message(BaseModel):
    """
    消息响应模型

    用于 API 返回简单的文本消息。
    """
    message: str


class TokenPayload(BaseModel):
    """
    JWT Token 载荷模型

    sub 为管理员标识，role 必须为 admin。
    """
    sub: str | None = None
    role: str | None = None


class ApiEnvelope(BaseModel):
    """
    API 统一响应格式

    所有 API 响应都使用这个格式，包含：
    - code: 状态码（0 表示成功，非 0 表示错误）
    - message: 消息（成功时为 "success"，错误时为错误描述）
    - data: 数据（成功时返回业务数据，错误时为 None）

    示例响应：
        {"code": 0, "message": "success", "data": {...}}
        {"code": 409001, "message": "Expiration sweep already running", "data": None}
    """
    code: int = 0  # 默认成功
    message: str = "success"  # 默认成功消息
    data: Any | None = None  # 业务数据（可选）


# ============================================================
# Webhook
# ============================================================


class WebhookAckData(BaseModel):
    """
    Webhook 处理结果

    返回给支付平台，平台只关心 HTTP 状态码。
    """
    outcome: AuditStatus  # 审计状态
    webhook_event_id: int | None = None  # 原始投递记录 ID


# ============================================================
# 管理端
# ============================================================


class AuditLogPublic(BaseModel):
    """审计日志条目"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    webhook_event_id: int | None = None
    sweep_run_id: int | None = None
    source: AuditSource
    event_type: str | None = None
    status: AuditStatus
    transaction_id: str | None = None
    email: str | None = None
    user_id: int | None = None
    message: str | None = None
    created_at: datetime


class AuditLogsData(BaseModel):
    """审计日志分页结果"""
    data: list[AuditLogPublic]  # 当前页条目
    count: int  # 总记录数


class SweepRunPublic(BaseModel):
    """清扫执行记录"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    started_at: datetime
    finished_at: datetime | None = None
    users_scanned: int
    users_downgraded: int
    status: SweepRunStatus


class SweepRunsData(BaseModel):
    """清扫记录分页结果"""
    data: list[SweepRunPublic]
    count: int


class PlanCatalogEntryPublic(BaseModel):
    """套餐目录条目"""
    model_config = ConfigDict(from_attributes=True)

    source: WebhookSource
    product_id: str
    product_name: str | None = None
    plan_type: PlanType
    duration_days: int | None = None  # None 表示终身
    updated_at: datetime


class PlanCatalogUpsertRequest(BaseModel):
    """
    新增/更新套餐映射请求

    终身计划不能有 duration_days，定期计划必须有。
    """
    source: WebhookSource
    product_id: str = Field(min_length=1, max_length=128)
    product_name: str | None = Field(default=None, max_length=255)
    plan_type: PlanType
    duration_days: int | None = Field(default=None, ge=1, le=3660)

    @model_validator(mode="after")
    def _check_duration(self) -> PlanCatalogUpsertRequest:
        validate_plan(self.plan_type, self.duration_days)
        return self


class ReplayData(BaseModel):
    """重放结果"""
    webhook_event_id: int
    outcome: AuditStatus
    status_code: int  # 等价的网关 HTTP 状态码
    message: str
