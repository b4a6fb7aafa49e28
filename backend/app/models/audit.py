"""
审计日志与清扫记录模型模块
"""
from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, Index, String, Text
from sqlmodel import Field, SQLModel

from app.core.snowflake import generate_id
from app.enums import AuditSource, AuditStatus, SweepRunStatus

from .base import utc_now


class AuditLogEntry(SQLModel, table=True):
    """
    审计日志（只追加）

    每个 webhook 的最终处理结果一条；过期清扫每次降级一条。
    只供管理端查询，业务逻辑不读取审计日志推导状态。
    """
    __tablename__ = "audit_log_entries"
    __table_args__ = (
        Index(
            "ix_audit_log_filters", "source", "event_type", "status", "created_at"
        ),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    webhook_event_id: int | None = Field(
        default=None, sa_column=Column(BigInteger, index=True, nullable=True)
    )
    sweep_run_id: int | None = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    source: AuditSource = Field(sa_column=Column(String(16), nullable=False))
    event_type: str | None = Field(default=None, sa_column=Column(String(32), nullable=True))
    status: AuditStatus = Field(sa_column=Column(String(32), nullable=False))
    transaction_id: str | None = Field(default=None, max_length=128)
    email: str | None = Field(default=None, max_length=255)
    user_id: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class SweepRun(SQLModel, table=True):
    """
    过期清扫执行记录

    每次执行一条。紧接着再执行一次应得到 users_downgraded = 0。
    """
    __tablename__ = "sweep_runs"

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    started_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    finished_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    users_scanned: int = Field(default=0)
    users_downgraded: int = Field(default=0)
    status: SweepRunStatus = Field(
        default=SweepRunStatus.running, sa_column=Column(String(16), nullable=False)
    )
