"""
用户模型模块

只包含订阅对账相关的字段，其余用户资料由外部系统维护。
"""
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, String
from sqlmodel import Field, SQLModel

from app.core.snowflake import generate_id
from app.enums import AccessLevel, PlanType, SubscriptionOrigin

from .base import utc_now


class User(SQLModel, table=True):
    """
    用户模型

    订阅字段由订阅状态机独占写入；过期清扫任务只能执行降级。

    字段说明：
    - email: 用户邮箱（唯一），webhook 通过邮箱匹配用户
    - access_level: 访问级别（free/premium/员工角色）
    - plan_type: 当前计划类型
    - subscription_start / subscription_expiry: 订阅开始/过期时间
    - has_lifetime_access: 终身会员，为 True 时忽略过期时间
    - subscription_origin: 订阅来源（hotmart/doppus/manual）
    - cancelled_at: 退款或取消的时间，重新开通后清空
    """
    __tablename__ = "users"
    __table_args__ = (
        # 过期清扫扫描条件
        Index(
            "ix_users_sweep_scan",
            "access_level",
            "has_lifetime_access",
            "subscription_expiry",
        ),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    email: str = Field(
        max_length=255,
        sa_column=Column(String(255), unique=True, index=True, nullable=False),
    )
    username: str | None = Field(default=None, max_length=64)
    name: str | None = Field(default=None, max_length=255)

    access_level: AccessLevel = Field(
        default=AccessLevel.free, sa_column=Column(String(32), nullable=False)
    )
    plan_type: PlanType = Field(
        default=PlanType.none, sa_column=Column(String(16), nullable=False)
    )
    subscription_start: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    subscription_expiry: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    has_lifetime_access: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    subscription_origin: SubscriptionOrigin | None = Field(
        default=None, sa_column=Column(String(16), nullable=True)
    )
    cancelled_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
