"""
支付平台 API 客户端基类

只实现对账需要的只读调用：按产品 ID 查询产品信息，用于填充套餐目录。
调用方可以传入剩余的处理时间（timeout），单次请求的超时和重试都不会超出它。
"""
from __future__ import annotations

import abc
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import BaseModel
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, stop_any, wait_fixed

from app.enums import PlanType, WebhookSource
from app.integrations.oauth import ClientCredentialsAuth
from app.services.errors import ProviderAPIError

logger = logging.getLogger(__name__)

# 平台返回的扣款周期 -> (计划类型, 天数)
_PERIOD_PLANS: dict[str, tuple[PlanType, int]] = {
    "monthly": (PlanType.monthly, 30),
    "month": (PlanType.monthly, 30),
    "annual": (PlanType.annual, 365),
    "annually": (PlanType.annual, 365),
    "yearly": (PlanType.annual, 365),
    "year": (PlanType.annual, 365),
}

_MAX_ATTEMPTS = 2
_RETRY_WAIT_SECONDS = 0.2
# 剩余时间不足以再发一次请求时不重试
_MIN_ATTEMPT_SECONDS = 0.5


class ProviderProduct(BaseModel):
    """平台产品信息（已映射为订阅计划）"""
    source: WebhookSource
    product_id: str
    name: str | None = None
    plan_type: PlanType
    duration_days: int | None = None  # None 表示终身


def plan_for_period(period: str | None) -> tuple[PlanType, int] | None:
    """把平台的扣款周期映射为计划类型和天数，无法识别时返回 None"""
    if not period:
        return None
    return _PERIOD_PLANS.get(period.strip().lower())


def _is_transport_failure(exc: BaseException) -> bool:
    # 令牌接口的网络错误被包装成 ProviderAPIError，原始异常在 __cause__
    return isinstance(exc, httpx.TransportError) or isinstance(exc.__cause__, httpx.TransportError)


class ProviderClient(abc.ABC):
    """带令牌管理的平台 API 客户端"""

    source: WebhookSource

    def __init__(
        self,
        *,
        base_url: str,
        auth: ClientCredentialsAuth,
        http: httpx.Client,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self._http = http
        self._clock = clock
        logger.info("%s API client initialized (%s)", self.source.value, self.base_url)

    def _attempt_timeout(self, deadline: float | None) -> httpx.Timeout | None:
        """单次请求的超时：客户端默认值与剩余时间取小"""
        if deadline is None:
            return None
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise ProviderAPIError(f"{self.source.value} API call exceeded its time budget", transient=True)
        default = self._http.timeout.read
        return httpx.Timeout(remaining if default is None else min(default, remaining))

    def _send(
        self, method: str, path: str, params: dict[str, Any] | None, deadline: float | None
    ) -> httpx.Response:
        timeout = self._attempt_timeout(deadline)
        token = self.auth.get_token(timeout=timeout)
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        return self._http.request(
            method,
            f"{self.base_url}{path}",
            params=params,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            **kwargs,
        )

    def _send_with_retry(
        self, method: str, path: str, params: dict[str, Any] | None, deadline: float | None
    ) -> httpx.Response:
        def _out_of_time(_: RetryCallState) -> bool:
            if deadline is None:
                return False
            return deadline - self._clock() < _RETRY_WAIT_SECONDS + _MIN_ATTEMPT_SECONDS

        retrying = Retrying(
            retry=retry_if_exception(_is_transport_failure),
            stop=stop_any(stop_after_attempt(_MAX_ATTEMPTS), _out_of_time),
            wait=wait_fixed(_RETRY_WAIT_SECONDS),
            reraise=True,
        )
        return retrying(self._send, method, path, params, deadline)

    def request_json(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any] | None:
        """
        发送 API 请求并返回 JSON

        网络错误（包括换取令牌时）重试一次；令牌失效（401）时刷新令牌重试一次；404 返回 None。

        Args:
            timeout: 本次调用（含重试）可用的总秒数，None 表示只受客户端默认超时限制

        Raises:
            ProviderAPIError: 网络错误、超出时间、平台 5xx（transient）或其他非 2xx 响应
        """
        deadline = None if timeout is None else self._clock() + timeout
        try:
            response = self._send_with_retry(method, path, params, deadline)
            if response.status_code == 401:
                logger.info("%s API returned 401, refreshing access token", self.source.value)
                self.auth.invalidate()
                response = self._send_with_retry(method, path, params, deadline)
        except httpx.TransportError as e:
            raise ProviderAPIError(f"{self.source.value} API unreachable: {e}", transient=True) from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ProviderAPIError(
                f"{self.source.value} API error {response.status_code}",
                status_code=response.status_code,
                transient=response.status_code >= 500,
            )
        return response.json()

    @abc.abstractmethod
    def get_product(self, product_id: str, *, timeout: float | None = None) -> ProviderProduct | None:
        """查询产品并映射为订阅计划，找不到或无法映射时返回 None"""
