"""
OAuth2 client-credentials 令牌管理

Hotmart 使用 Basic 认证（client_id:client_secret）换取令牌，
Doppus 使用表单参数 client_id / client_secret。
令牌缓存到 expires_in 减去刷新余量为止；API 返回 401 时调用方使缓存失效并重新获取。
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Literal

import httpx

from app.services.errors import ProviderAPIError

logger = logging.getLogger(__name__)


class ClientCredentialsAuth:
    """client-credentials 令牌获取与缓存（线程安全）"""

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        http: httpx.Client,
        style: Literal["basic", "form"] = "basic",
        refresh_margin_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            token_url: 令牌接口地址
            client_id: 客户端 ID
            client_secret: 客户端密钥
            http: 共享的 httpx 客户端
            style: basic = Authorization: Basic 头；form = 表单参数
            refresh_margin_seconds: 在过期前多少秒视为需要刷新
            clock: 单调时钟（测试可替换）
        """
        self.token_url = token_url
        self.client_id = client_id
        self._client_secret = client_secret
        self._http = http
        self._style = style
        self._margin = refresh_margin_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._token: str | None = None
        self._expires_at = 0.0

    def get_token(self, timeout: httpx.Timeout | None = None) -> str:
        """返回有效的访问令牌，缓存过期或不存在时重新获取（timeout 只作用于换取令牌的请求）"""
        with self._lock:
            if self._token is not None and self._clock() < self._expires_at:
                return self._token
            return self._fetch(timeout)

    def invalidate(self) -> None:
        """丢弃缓存的令牌（API 返回 401 时调用）"""
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def _fetch(self, timeout: httpx.Timeout | None) -> str:
        data = {"grant_type": "client_credentials"}
        auth: httpx.BasicAuth | None = None
        kwargs: dict = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        if self._style == "basic":
            auth = httpx.BasicAuth(self.client_id, self._client_secret)
        else:
            data["client_id"] = self.client_id
            data["client_secret"] = self._client_secret

        try:
            response = self._http.post(
                self.token_url,
                data=data,
                auth=auth,
                headers={"Accept": "application/json"},
                **kwargs,
            )
        except httpx.TransportError as e:
            raise ProviderAPIError(f"Token request failed: {e}", transient=True) from e

        if response.status_code != 200:
            logger.error(
                "Token request to %s failed: %s %s",
                self.token_url,
                response.status_code,
                response.text[:200],
            )
            raise ProviderAPIError(
                f"Token request failed with HTTP {response.status_code}",
                status_code=response.status_code,
                transient=response.status_code >= 500,
            )

        body = response.json()
        token = body.get("access_token")
        if not token:
            raise ProviderAPIError("Token response did not include access_token")
        expires_in = int(body.get("expires_in") or 0)
        self._token = token
        self._expires_at = self._clock() + max(expires_in - self._margin, 0)
        logger.info("Obtained access token from %s (expires_in=%s)", self.token_url, expires_in)
        return token
