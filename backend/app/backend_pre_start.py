"""
应用启动前检查脚本

在 API 和调度进程启动前等待数据库和 Redis 就绪。
主要用于 Docker Compose 环境，数据库容器可能还在初始化。
"""
import logging  # 日志记录

from sqlalchemy import Engine  # SQLAlchemy 引擎类型
from sqlmodel import Session, select  # SQLModel 会话和查询
from tenacity import (  # 重试库，用于实现重试机制
    after_log,  # 重试后的日志记录
    before_log,  # 重试前的日志记录
    retry,  # 重试装饰器
    stop_after_attempt,  # 停止条件：达到最大尝试次数
    wait_fixed,  # 等待策略：固定间隔
)

from app.core.db import engine  # 数据库引擎
from app.core.redis_client import RedisClient, get_redis_client

# 配置日志
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# 重试配置
max_tries = 60 * 5  # 最大尝试次数：300 次（5 分钟，每秒一次）
wait_seconds = 1  # 每次重试间隔：1 秒


@retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)
def init(db_engine: Engine) -> None:
    """
    检查数据库连接

    执行 select(1)，失败时由 tenacity 重试，最多 5 分钟。
    """
    try:
        with Session(db_engine) as session:
            session.exec(select(1))
    except Exception as e:
        logger.error(e)
        raise e


@retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)
def init_redis(redis_client: RedisClient) -> None:
    """检查 Redis 连接（清扫任务的分布式锁依赖 Redis）"""
    if not redis_client.ping():
        raise ConnectionError("Redis is not ready")


def main() -> None:
    logger.info("Initializing service")
    init(engine)
    init_redis(get_redis_client())
    logger.info("Service finished initializing")


if __name__ == "__main__":  # pragma: no cover
    main()
