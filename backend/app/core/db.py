"""
数据库连接模块

管理数据库引擎的创建。
使用 SQLModel 的 create_engine 创建数据库连接池。

重要提示：
- 数据库表结构通过 Alembic 迁移管理，不要在这里创建表
- 确保在使用前导入所有模型（app.models），否则关系可能无法正确初始化
"""
from sqlalchemy import Engine, text
from sqlmodel import Session, create_engine

from app.core.config import settings

# pool_pre_ping: 连接被数据库端断开后自动重连，避免 webhook 处理时拿到失效连接
engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


def is_postgres(bind: Engine | None) -> bool:
    """判断当前连接是否为 PostgreSQL（SQLite 测试环境不支持锁超时语句）"""
    return bind is not None and bind.dialect.name == "postgresql"


def set_local_timeouts(session: Session, *, milliseconds: int) -> None:
    """
    为当前事务设置锁等待和语句超时

    只在 PostgreSQL 上生效，作用域为当前事务（SET LOCAL），提交或回滚后自动失效。
    超时后数据库抛出 OperationalError，调用方按可重试错误处理。

    Args:
        session: 数据库会话（事务尚未提交）
        milliseconds: 超时时间（毫秒），最小 1
    """
    if not is_postgres(session.get_bind()):
        return
    ms = max(int(milliseconds), 1)
    session.execute(text(f"SET LOCAL lock_timeout = {ms}"))
    session.execute(text(f"SET LOCAL statement_timeout = {ms}"))
