"""
管理端路由模块

需要 role=admin 的 JWT，提供：
- 审计日志查询（筛选 + 分页）
- 清扫记录查询、手动触发清扫
- 套餐目录查询与维护
- 重放已保存的 webhook 事件
"""
from __future__ import annotations

from fastapi import APIRouter, Query  # FastAPI 路由和查询参数
from starlette.concurrency import run_in_threadpool

from app.api.deps import AdminDep, CatalogDep, GatewayDep, SessionDep, SweeperDep
from app.api.errors import AppError, sweep_already_running
from app.api.schemas import (
    ApiEnvelope,
    AuditLogPublic,
    AuditLogsData,
    PlanCatalogEntryPublic,
    PlanCatalogUpsertRequest,
    ReplayData,
    SweepRunPublic,
    SweepRunsData,
)
from app.enums import AuditSource, AuditStatus, WebhookSource
from app.services import audit_log

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/audit-logs", response_model=ApiEnvelope)
def audit_logs(
    session: SessionDep,
    _admin: AdminDep,
    source: AuditSource | None = None,
    event_type: str | None = Query(default=None, max_length=32),
    status: AuditStatus | None = None,
    email: str | None = Query(default=None, max_length=255),  # 子串匹配
    transaction_id: str | None = Query(default=None, max_length=128),  # 子串匹配
    page: int = Query(default=1, ge=1),  # 页码，从 1 开始
    page_size: int = Query(default=20, ge=1, le=100),  # 每页数量，1-100
) -> ApiEnvelope:
    """
    查询审计日志（分页，新的在前）

    请求路径: GET /api/v1/admin/audit-logs?source=hotmart&status=processed&page=1
    """
    filters = audit_log.AuditLogFilters(
        source=source,
        event_type=event_type,
        status=status,
        email=email,
        transaction_id=transaction_id,
    )
    rows, count = audit_log.query(session, filters, page=page, page_size=page_size)
    data = [AuditLogPublic.model_validate(row) for row in rows]
    return ApiEnvelope(data=AuditLogsData(data=data, count=count))


@router.get("/sweep-runs", response_model=ApiEnvelope)
def sweep_runs(
    session: SessionDep,
    _admin: AdminDep,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> ApiEnvelope:
    """
    查询清扫记录（分页，新的在前）

    请求路径: GET /api/v1/admin/sweep-runs
    """
    rows, count = audit_log.list_sweep_runs(session, page=page, page_size=page_size)
    data = [SweepRunPublic.model_validate(row) for row in rows]
    return ApiEnvelope(data=SweepRunsData(data=data, count=count))


@router.post("/sweep-runs", response_model=ApiEnvelope)
async def trigger_sweep(sweeper: SweeperDep, _admin: AdminDep) -> ApiEnvelope:
    """
    立即执行一次过期清扫

    请求路径: POST /api/v1/admin/sweep-runs
    已有清扫在运行时返回 409。
    """
    run = await run_in_threadpool(sweeper.run)
    if run is None:
        raise sweep_already_running()
    return ApiEnvelope(data=SweepRunPublic.model_validate(run))


@router.get("/plan-catalog", response_model=ApiEnvelope)
def list_plan_catalog(
    session: SessionDep,
    catalog: CatalogDep,
    _admin: AdminDep,
    source: WebhookSource | None = None,
) -> ApiEnvelope:
    """
    查询套餐目录

    请求路径: GET /api/v1/admin/plan-catalog?source=hotmart
    """
    rows = catalog.list_entries(session, source.value if source else None)
    return ApiEnvelope(data=[PlanCatalogEntryPublic.model_validate(row) for row in rows])


@router.put("/plan-catalog", response_model=ApiEnvelope)
def upsert_plan_catalog(
    session: SessionDep,
    catalog: CatalogDep,
    _admin: AdminDep,
    body: PlanCatalogUpsertRequest,
) -> ApiEnvelope:
    """
    新增或更新套餐映射

    请求路径: PUT /api/v1/admin/plan-catalog
    """
    entry = catalog.upsert(
        session,
        source=body.source.value,
        product_id=body.product_id,
        plan_type=body.plan_type,
        duration_days=body.duration_days,
        product_name=body.product_name,
    )
    session.commit()
    session.refresh(entry)
    return ApiEnvelope(data=PlanCatalogEntryPublic.model_validate(entry))


@router.post("/webhook-events/{webhook_event_id}/replay", response_model=ApiEnvelope)
async def replay_webhook_event(
    webhook_event_id: int, gateway: GatewayDep, _admin: AdminDep
) -> ApiEnvelope:
    """
    重放已保存的 webhook 事件

    请求路径: POST /api/v1/admin/webhook-events/{id}/replay
    事件不存在返回 404；鉴权失败过的事件返回 409。
    已处理过的事件会被去重账本吸收，结果为 duplicate。
    """
    try:
        result = await run_in_threadpool(gateway.replay, webhook_event_id)
    except PermissionError:
        raise AppError(
            code=409002,
            message="Webhook event failed authentication and cannot be replayed",
            status_code=409,
        )
    if result is None:
        raise AppError(code=404001, message="Webhook event not found", status_code=404)
    return ApiEnvelope(
        data=ReplayData(
            webhook_event_id=webhook_event_id,
            outcome=result.outcome,
            status_code=result.status_code,
            message=result.message,
        )
    )
