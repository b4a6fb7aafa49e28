"""
Redis 客户端

提供分布式锁功能，保证过期清扫任务在多进程/多实例部署下只有一个在运行。
"""

import logging

import redis

logger = logging.getLogger(__name__)

# 只有锁的持有者（value 匹配）才能释放锁
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# 只有锁的持有者才能续期
_EXTEND_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class RedisClient:
    """Redis 客户端封装"""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: str | None = None,
    ):
        self.host = host
        self.port = port
        self.db = db

        self.client = redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True,
        )

        logger.info(f"Redis client initialized: {host}:{port}/{db}")

    def ping(self) -> bool:
        """测试连接"""
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    # ========================================================================
    # 分布式锁
    # ========================================================================

    def acquire_lock(
        self,
        lock_key: str,
        lock_value: str,
        expire_seconds: int = 60,
    ) -> bool:
        """
        获取分布式锁（SET NX EX）

        Args:
            lock_key: 锁键
            lock_value: 锁值(用于释放时验证)
            expire_seconds: 锁过期时间(秒)，持有者崩溃后锁自动失效

        Returns:
            是否获取成功；Redis 不可用时返回 False
        """
        try:
            return bool(self.client.set(lock_key, lock_value, ex=expire_seconds, nx=True))
        except redis.RedisError as e:
            logger.error(f"Failed to acquire lock {lock_key}: {e}")
            return False

    def release_lock(self, lock_key: str, lock_value: str) -> bool:
        """
        释放分布式锁

        Args:
            lock_key: 锁键
            lock_value: 锁值(必须匹配才能释放)

        Returns:
            是否释放成功
        """
        try:
            result = self.client.eval(_RELEASE_LOCK_SCRIPT, 1, lock_key, lock_value)
            return result == 1
        except redis.RedisError as e:
            logger.error(f"Failed to release lock {lock_key}: {e}")
            return False

    def extend_lock(self, lock_key: str, lock_value: str, expire_seconds: int = 60) -> bool:
        """
        续期分布式锁

        Args:
            lock_key: 锁键
            lock_value: 锁值(必须匹配才能续期)
            expire_seconds: 从现在起的过期时间(秒)

        Returns:
            是否续期成功；锁已过期或被他人持有时返回 False
        """
        try:
            result = self.client.eval(_EXTEND_LOCK_SCRIPT, 1, lock_key, lock_value, expire_seconds)
            return result == 1
        except redis.RedisError as e:
            logger.error(f"Failed to extend lock {lock_key}: {e}")
            return False

    def close(self) -> None:
        """关闭连接"""
        try:
            self.client.close()
            logger.info("Redis client closed")
        except redis.RedisError as e:
            logger.error(f"Failed to close Redis client: {e}")


# 全局 Redis 客户端实例
_redis_client: RedisClient | None = None


def init_redis_client(
    host: str = "localhost",
    port: int = 6379,
    db: int = 0,
    password: str | None = None,
) -> RedisClient:
    """初始化全局 Redis 客户端"""
    global _redis_client
    _redis_client = RedisClient(host=host, port=port, db=db, password=password)
    return _redis_client


def get_redis_client() -> RedisClient:
    """
    获取全局 Redis 客户端实例

    首次调用时从配置初始化。
    """
    if _redis_client is not None:
        return _redis_client

    from app.core.config import settings

    return init_redis_client(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
    )
