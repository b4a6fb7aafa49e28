"""
套餐目录模型模块
"""
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.core.snowflake import generate_id
from app.enums import PlanType

from .base import utc_now


class PlanCatalogEntry(SQLModel, table=True):
    """
    支付平台产品到订阅计划的映射

    duration_days 为空表示终身。由后台维护或在缓存未命中时从平台 API 查询后写入。
    """
    __tablename__ = "plan_catalog_entries"
    __table_args__ = (
        UniqueConstraint("source", "product_id", name="uq_plan_catalog_source_product"),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    source: str = Field(sa_column=Column(String(16), nullable=False))
    product_id: str = Field(sa_column=Column(String(128), nullable=False))
    product_name: str | None = Field(default=None, max_length=255)
    plan_type: PlanType = Field(sa_column=Column(String(16), nullable=False))
    duration_days: int | None = Field(default=None)
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
