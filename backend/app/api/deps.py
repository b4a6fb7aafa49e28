"""
FastAPI 依赖注入模块

提供可复用的依赖项，用于路由处理函数中。
测试中通过 app.dependency_overrides 替换这些依赖。

关键概念：
- Depends: FastAPI 的依赖注入装饰器
- Generator: 用于创建需要清理的资源（如数据库会话）
- HTTPBearer: 从请求头提取 Bearer token（管理端 JWT）
"""
from collections.abc import Generator  # 生成器类型，用于资源管理
from typing import Annotated  # 类型注解，用于依赖注入

from fastapi import Depends, HTTPException, status  # FastAPI 核心功能
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer  # Bearer 方案
from jwt.exceptions import InvalidTokenError  # JWT 无效异常
from pydantic import ValidationError  # Pydantic 验证异常
from sqlmodel import Session  # 数据库会话

from app.api.schemas import TokenPayload
from app.core import security
from app.core.db import engine
from app.services.components import (
    get_expiration_sweeper,
    get_plan_catalog,
    get_webhook_gateway,
)
from app.services.plan_catalog import PlanCatalog
from app.services.sweeper import ExpirationSweeper
from app.services.webhook_gateway import WebhookGateway

# Bearer 认证配置
# 告诉 FastAPI 从请求头的 Authorization: Bearer <token> 中提取 token
reusable_oauth2 = HTTPBearer()


def get_db() -> Generator[Session, None, None]:
    """
    获取数据库会话（依赖注入）

    使用 yield 确保会话在请求结束后自动关闭。

    Yields:
        Session: 数据库会话对象
    """
    with Session(engine) as session:
        yield session  # yield 确保会话在请求结束后自动关闭


# 类型别名，简化依赖注入的写法
SessionDep = Annotated[Session, Depends(get_db)]  # 数据库会话依赖
TokenDep = Annotated[
    HTTPAuthorizationCredentials, Depends(reusable_oauth2)
]  # JWT token 依赖

GatewayDep = Annotated[WebhookGateway, Depends(get_webhook_gateway)]  # Webhook 网关
SweeperDep = Annotated[ExpirationSweeper, Depends(get_expiration_sweeper)]  # 过期清扫
CatalogDep = Annotated[PlanCatalog, Depends(get_plan_catalog)]  # 套餐目录


def get_current_admin(token: TokenDep) -> str:
    """
    校验管理端令牌（依赖注入）

    令牌必须由 SECRET_KEY 签名、未过期，且 role 为 admin。

    Returns:
        str: 令牌主体（管理员标识）

    Raises:
        HTTPException: token 无效返回 401，不是管理员返回 403
    """
    try:
        # 解析 JWT token 并验证 payload 格式
        payload = security.decode_token(token.credentials)
        token_data = TokenPayload(**payload)
    except (InvalidTokenError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    if not token_data.sub:
        # token 中没有主体标识
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    if token_data.role != security.ADMIN_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return token_data.sub


# 类型别名，简化需要管理员权限的路由写法
AdminDep = Annotated[str, Depends(get_current_admin)]
