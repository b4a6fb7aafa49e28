"""
去重记录模型模块
"""
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.core.snowflake import generate_id

from .base import utc_now


class DedupRecord(SQLModel, table=True):
    """
    去重账本记录

    (source, transaction_id, event_type) 唯一约束保证同一事件最多生效一次。
    认领（插入）与状态变更在同一个事务中提交或回滚。记录永久保留，
    因为重复投递可能在很久之后才到达。
    """
    __tablename__ = "dedup_records"
    __table_args__ = (
        UniqueConstraint(
            "source", "transaction_id", "event_type", name="uq_dedup_records_key"
        ),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    source: str = Field(sa_column=Column(String(16), nullable=False))
    transaction_id: str = Field(sa_column=Column(String(128), nullable=False))
    event_type: str = Field(sa_column=Column(String(32), nullable=False))
    outcome: str = Field(sa_column=Column(String(32), nullable=False))
    webhook_event_id: int | None = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    processed_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
