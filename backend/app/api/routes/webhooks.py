"""
Webhook 路由模块

接收支付平台的异步通知：
- POST /webhooks/hotmart
- POST /webhooks/doppus

平台只根据 HTTP 状态码判断是否重试：200 表示已确认（包括重复和格式错误），
401 表示鉴权失败，5xx 表示请稍后重试。
"""
from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool  # 网关是同步代码，放到线程池执行

from app.api.deps import GatewayDep
from app.api.schemas import ApiEnvelope, WebhookAckData
from app.enums import WebhookSource

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _receive(source: WebhookSource, request: Request, gateway: GatewayDep) -> JSONResponse:
    raw_body = await request.body()  # 签名按原始字节计算，不能先解析 JSON
    source_ip = request.client.host if request.client else None
    result = await run_in_threadpool(
        gateway.handle, source, raw_body, dict(request.headers), source_ip
    )
    envelope = ApiEnvelope(
        code=0 if result.status_code == 200 else result.status_code * 1000,
        message=result.message,
        data=WebhookAckData(outcome=result.outcome, webhook_event_id=result.webhook_event_id),
    )
    return JSONResponse(status_code=result.status_code, content=envelope.model_dump(mode="json"))


@router.post("/hotmart", response_model=ApiEnvelope)
async def hotmart(request: Request, gateway: GatewayDep) -> JSONResponse:
    """
    Hotmart webhook

    请求路径: POST /api/v1/webhooks/hotmart
    鉴权: X-HOTMART-HOTTOK 请求头
    """
    return await _receive(WebhookSource.hotmart, request, gateway)


@router.post("/doppus", response_model=ApiEnvelope)
async def doppus(request: Request, gateway: GatewayDep) -> JSONResponse:
    """
    Doppus webhook

    请求路径: POST /api/v1/webhooks/doppus
    鉴权: X-Doppus-Signature 请求头（原始请求体的 HMAC-SHA256）
    """
    return await _receive(WebhookSource.doppus, request, gateway)
