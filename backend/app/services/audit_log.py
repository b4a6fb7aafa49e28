"""
审计日志

只追加。记录每个 webhook 的最终处理结果和清扫任务的每次降级，供管理端查询。
"""
from __future__ import annotations

from sqlalchemy import func
from pydantic import BaseModel
from sqlmodel import Session, col, select

from app.enums import AuditSource, AuditStatus
from app.models import AuditLogEntry, SweepRun

MAX_MESSAGE_LENGTH = 2000


class AuditLogFilters(BaseModel):
    source: AuditSource | None = None
    event_type: str | None = None
    status: AuditStatus | None = None
    email: str | None = None  # 子串匹配，不区分大小写
    transaction_id: str | None = None  # 子串匹配


def record(
    session: Session,
    *,
    source: AuditSource | str,
    status: AuditStatus,
    event_type: str | None = None,
    webhook_event_id: int | None = None,
    sweep_run_id: int | None = None,
    transaction_id: str | None = None,
    email: str | None = None,
    user_id: int | None = None,
    message: str | None = None,
) -> AuditLogEntry:
    """追加一条审计记录（调用方负责提交）"""
    if message is not None and len(message) > MAX_MESSAGE_LENGTH:
        message = message[:MAX_MESSAGE_LENGTH]
    entry = AuditLogEntry(
        source=AuditSource(source),
        status=status,
        event_type=event_type,
        webhook_event_id=webhook_event_id,
        sweep_run_id=sweep_run_id,
        transaction_id=transaction_id,
        email=email,
        user_id=user_id,
        message=message,
    )
    session.add(entry)
    return entry


def query(
    session: Session,
    filters: AuditLogFilters | None = None,
    *,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[AuditLogEntry], int]:
    """按条件分页查询，新的在前"""
    filters = filters or AuditLogFilters()
    conditions = []
    if filters.source is not None:
        conditions.append(AuditLogEntry.source == filters.source)
    if filters.event_type:
        conditions.append(AuditLogEntry.event_type == filters.event_type)
    if filters.status is not None:
        conditions.append(AuditLogEntry.status == filters.status)
    if filters.email:
        conditions.append(
            func.lower(AuditLogEntry.email).contains(filters.email.lower(), autoescape=True)
        )
    if filters.transaction_id:
        conditions.append(
            col(AuditLogEntry.transaction_id).contains(filters.transaction_id, autoescape=True)
        )

    total = session.exec(
        select(func.count()).select_from(AuditLogEntry).where(*conditions)
    ).one()
    entries = session.exec(
        select(AuditLogEntry)
        .where(*conditions)
        .order_by(col(AuditLogEntry.created_at).desc(), col(AuditLogEntry.id).desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return list(entries), total


def list_for_webhook_event(session: Session, webhook_event_id: int) -> list[AuditLogEntry]:
    return list(
        session.exec(
            select(AuditLogEntry)
            .where(AuditLogEntry.webhook_event_id == webhook_event_id)
            .order_by(col(AuditLogEntry.created_at))
        ).all()
    )


def list_sweep_runs(
    session: Session, *, page: int = 1, page_size: int = 20
) -> tuple[list[SweepRun], int]:
    total = session.exec(select(func.count()).select_from(SweepRun)).one()
    runs = session.exec(
        select(SweepRun)
        .order_by(col(SweepRun.started_at).desc(), col(SweepRun.id).desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return list(runs), total
