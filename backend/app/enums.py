"""
枚举类型定义模块

所有枚举都继承自 str 和 Enum，既可以直接存入字符串列，又具有枚举的类型约束。
"""
from enum import Enum


class AccessLevel(str, Enum):
    """
    用户访问级别

    - free: 免费用户
    - premium: 付费会员（订阅或终身）
    - admin / designer / designer_admin: 员工角色，不受 webhook 和清扫任务影响
    """
    free = "free"
    premium = "premium"
    admin = "admin"
    designer = "designer"
    designer_admin = "designer_admin"


# 员工角色：webhook 处理和清扫任务只修改订阅字段，不改动这些访问级别
STAFF_ACCESS_LEVELS = frozenset(
    {AccessLevel.admin, AccessLevel.designer, AccessLevel.designer_admin}
)


class PlanType(str, Enum):
    """订阅计划类型"""
    monthly = "monthly"
    annual = "annual"
    lifetime = "lifetime"
    none = "none"


class SubscriptionOrigin(str, Enum):
    """订阅来源：支付平台或后台手动开通"""
    hotmart = "hotmart"
    doppus = "doppus"
    manual = "manual"


class WebhookSource(str, Enum):
    """Webhook 来源（支付平台）"""
    hotmart = "hotmart"
    doppus = "doppus"


class AuditSource(str, Enum):
    """审计日志来源：支付平台或过期清扫任务"""
    hotmart = "hotmart"
    doppus = "doppus"
    sweeper = "sweeper"


class CanonicalEventType(str, Enum):
    """
    标准化后的事件类型

    - purchase_approved: 购买成功（首次开通）
    - renewal: 续费
    - refund: 退款（含拒付）
    - cancellation: 取消订阅
    """
    purchase_approved = "purchase_approved"
    renewal = "renewal"
    refund = "refund"
    cancellation = "cancellation"


# 清扫任务写入审计日志时使用的事件类型
SWEEP_EVENT_TYPE = "expiration"


class SubscriptionState(str, Enum):
    """根据用户订阅字段推导出的生命周期状态"""
    free = "free"
    active = "active"
    expired = "expired"
    cancelled = "cancelled"
    lifetime = "lifetime"


class AuditStatus(str, Enum):
    """
    审计日志状态（webhook 处理的最终结果）

    - processed: 已处理
    - duplicate: 重复投递，已忽略
    - rejected_malformed: 格式错误或无法识别，已确认不再重试
    - rejected_auth: 鉴权失败
    - error_retry_requested: 临时故障，返回非 200 让平台重试
    - quarantined: 已确认但需要人工处理（用户无法匹配或产品未映射）
    - error: 非临时性处理错误
    """
    processed = "processed"
    duplicate = "duplicate"
    rejected_malformed = "rejected_malformed"
    rejected_auth = "rejected_auth"
    error_retry_requested = "error_retry_requested"
    quarantined = "quarantined"
    error = "error"


class SweepRunStatus(str, Enum):
    """清扫任务执行状态"""
    running = "running"
    completed = "completed"
    failed = "failed"
