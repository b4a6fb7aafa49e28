"""
API 路由聚合模块

将所有业务路由模块聚合到一个统一的 router 中。
这个 router 会被注册到主应用（app/main.py）上。

路由模块说明：
- webhooks: 支付平台 webhook（Hotmart、Doppus）
- admin: 管理端（审计日志、清扫、套餐目录、重放）
- utils: 工具相关（健康检查等）
"""
from fastapi import APIRouter

from app.api.routes import (
    admin,  # 管理端路由
    utils,  # 工具路由
    webhooks,  # Webhook 路由
)

# 创建主 API 路由器
api_router = APIRouter()

# 注册所有业务路由模块
# 每个模块的路径前缀在各自的 router 中定义
api_router.include_router(webhooks.router)  # /webhooks/*
api_router.include_router(admin.router)  # /admin/*
api_router.include_router(utils.router)  # /utils/*
