"""
自定义异常模块

定义 HTTP 层的异常类，用于统一的错误处理。
业务异常（app.services.errors）由网关转换为审计状态，不经过这里；
管理端接口的业务错误使用 AppError，在 main.py 中有统一的异常处理器。
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常类

    用于业务逻辑中的错误处理，包含：
    - code: 业务错误码（用于前端区分不同错误）
    - message: 错误消息（用户友好的提示）
    - status_code: HTTP 状态码（400, 404, 409 等）

    使用示例：
        raise AppError(code=409001, message="Sweep already running", status_code=409)
    """

    def __init__(self, *, code: int, message: str, status_code: int = 400) -> None:
        """
        初始化异常

        Args:
            code: 业务错误码（如 404001 表示 webhook 事件不存在）
            message: 错误消息
            status_code: HTTP 状态码（默认 400）
        """
        super().__init__(message)  # 调用父类构造函数
        self.code = code
        self.message = message
        self.status_code = status_code


def sweep_already_running() -> AppError:
    """创建"清扫正在运行"异常（便捷函数）"""
    return AppError(code=409001, message="Expiration sweep already running", status_code=409)
