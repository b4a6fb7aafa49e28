"""
Webhook 原始事件模型模块
"""
from datetime import datetime

from sqlalchemy import JSON, BigInteger, Column, DateTime, String, Text
from sqlmodel import Field, SQLModel

from app.core.snowflake import generate_id
from app.enums import WebhookSource

from .base import utc_now


class WebhookEvent(SQLModel, table=True):
    """
    Webhook 原始投递记录

    每次 HTTP 投递在任何处理之前写入一条（预写），写入后不再修改、不删除，
    用于审计和人工重放。

    字段说明：
    - source: 来源平台
    - received_at: 接收时间
    - raw_payload: 原始请求体（按收到的文本保存）
    - headers: 请求头（已去除鉴权相关的敏感值）
    - source_ip: 来源 IP
    """
    __tablename__ = "webhook_events"

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    source: WebhookSource = Field(sa_column=Column(String(16), index=True, nullable=False))
    received_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    raw_payload: str = Field(sa_column=Column(Text, nullable=False))
    headers: dict | None = Field(default=None, sa_column=Column(JSON))
    source_ip: str | None = Field(default=None, max_length=64)
