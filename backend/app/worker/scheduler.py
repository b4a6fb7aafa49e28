"""
定时任务调度器

- 过期清扫：SWEEP_CRON（crontab）优先，否则每 SWEEP_INTERVAL_HOURS 小时一次
- 套餐目录缓存刷新：每 PLAN_CATALOG_REFRESH_MINUTES 分钟一次

运行方式：
    python -m app.worker.scheduler
"""

import logging
from datetime import timezone

import sentry_sdk
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import Settings, settings
from app.worker.tasks import refresh_plan_catalog, run_expiration_sweep

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def sweep_trigger(cfg: Settings) -> BaseTrigger:
    if cfg.SWEEP_CRON:
        return CronTrigger.from_crontab(cfg.SWEEP_CRON, timezone=timezone.utc)
    return IntervalTrigger(hours=cfg.SWEEP_INTERVAL_HOURS, timezone=timezone.utc)


def build_scheduler(cfg: Settings) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=timezone.utc)
    # 上一次还没跑完时不再启动新的，错过的多次合并为一次
    scheduler.add_job(
        run_expiration_sweep,
        sweep_trigger(cfg),
        id="expiration_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        refresh_plan_catalog,
        IntervalTrigger(minutes=cfg.PLAN_CATALOG_REFRESH_MINUTES, timezone=timezone.utc),
        id="plan_catalog_refresh",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def main() -> None:
    if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":  # pragma: no cover
        sentry_sdk.init(dsn=str(settings.SENTRY_DSN))
    scheduler = build_scheduler(settings)
    logger.info(
        "Scheduler started. Expiration sweep: %s",
        settings.SWEEP_CRON or f"every {settings.SWEEP_INTERVAL_HOURS}h",
    )
    scheduler.start()


if __name__ == "__main__":
    main()
