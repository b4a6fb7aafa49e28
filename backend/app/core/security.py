"""
安全工具模块

管理端接口使用 HS256 签名的 JWT，载荷中 role 必须为 "admin"。
"""
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from app.core.config import settings

ALGORITHM = "HS256"
ADMIN_ROLE = "admin"


def create_admin_token(subject: str | Any, expires_delta: timedelta | None = None) -> str:
    """
    签发管理端访问令牌

    Args:
        subject: 令牌主体（管理员标识，例如邮箱）
        expires_delta: 有效期，默认使用 ADMIN_TOKEN_EXPIRE_MINUTES

    Returns:
        JWT 字符串
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ADMIN_TOKEN_EXPIRE_MINUTES)
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"exp": expire, "sub": str(subject), "role": ADMIN_ROLE}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    """
    解析并校验 JWT

    Raises:
        jwt.InvalidTokenError: 签名错误、过期或格式错误
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
