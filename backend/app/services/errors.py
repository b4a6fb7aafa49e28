"""
订阅对账业务异常

网关根据异常类型决定审计状态和 HTTP 响应码：
- NormalizationError: 格式错误，确认（200）不再重试
- ApplyError 及子类: 状态变更失败，记录 error 或 quarantined
- ProcessingTimeout / 临时性的 ProviderAPIError: 临时故障，返回 503 让平台重试
"""
from __future__ import annotations


class NormalizationError(Exception):
    """Webhook 载荷无法解析或无法识别"""

    def __init__(self, reason: str, detail: str | None = None) -> None:
        message = reason if detail is None else f"{reason}: {detail}"
        super().__init__(message)
        self.reason = reason
        self.detail = detail


class ApplyError(Exception):
    """订阅状态变更失败"""

    code = "apply_failed"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UserUnresolvableError(ApplyError):
    """webhook 中的邮箱找不到对应用户（隔离策略下抛出）"""

    code = "user_unresolvable"

    def __init__(self, email: str) -> None:
        super().__init__(f"No user found for email {email}")
        self.email = email


class UnknownProductError(ApplyError):
    """产品在套餐目录中没有映射（隔离策略下抛出）"""

    code = "unknown_product"

    def __init__(self, source: str, product_id: str) -> None:
        super().__init__(f"Product {product_id} from {source} is not mapped to a plan")
        self.source = source
        self.product_id = product_id


class ProcessingTimeout(Exception):
    """webhook 处理超出时间预算"""


class ProviderAPIError(Exception):
    """
    支付平台 API 调用失败

    transient=True 表示网络错误或平台 5xx，可以稍后重试。
    """

    def __init__(self, message: str, *, status_code: int | None = None, transient: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient
