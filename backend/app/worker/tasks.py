"""
定时任务逻辑
"""

import logging

from sqlmodel import Session

from app.core.db import engine
from app.services.components import get_expiration_sweeper, get_plan_catalog

logger = logging.getLogger(__name__)


def run_expiration_sweep() -> None:
    """
    过期清扫：把已过期的非终身付费用户降级为 free

    多个调度进程同时触发时，只有拿到 Redis 锁的一个会执行。
    """
    run = get_expiration_sweeper().run()
    if run is None:
        return
    logger.info(
        "Expiration sweep %s finished: status=%s scanned=%d downgraded=%d",
        run.id,
        run.status,
        run.users_scanned,
        run.users_downgraded,
    )


def refresh_plan_catalog() -> None:
    """从数据库重建套餐目录缓存"""
    with Session(engine) as session:
        count = get_plan_catalog().refresh(session)
    logger.info("Plan catalog cache reloaded: %d entries", count)
