"""
数据库模型定义模块

模型按功能拆分：
- user.py: 用户（订阅字段）
- webhook_event.py: Webhook 原始投递记录
- dedup.py: 去重账本
- plan_catalog.py: 套餐目录
- audit.py: 审计日志、清扫执行记录
"""
from sqlmodel import SQLModel

from .audit import AuditLogEntry, SweepRun
from .base import ensure_utc, utc_now
from .dedup import DedupRecord
from .plan_catalog import PlanCatalogEntry
from .user import User
from .webhook_event import WebhookEvent

__all__ = [
    "SQLModel",
    "utc_now",
    "ensure_utc",
    "User",
    "WebhookEvent",
    "DedupRecord",
    "PlanCatalogEntry",
    "AuditLogEntry",
    "SweepRun",
]
