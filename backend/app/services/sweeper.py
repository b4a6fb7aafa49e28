"""
过期清扫

周期性地把已过期的非终身付费用户降级为 free。
通过 Redis 分布式锁保证同一时间只有一个清扫在运行，每处理完一批续期一次锁，续期失败即停止。
每个用户单独一个事务，加锁后重新检查条件，避免覆盖并发到达的续费。
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Engine
from sqlmodel import Session, col, select

from app.core.redis_client import RedisClient
from app.enums import SWEEP_EVENT_TYPE, AccessLevel, AuditSource, AuditStatus, SweepRunStatus
from app.models import SweepRun, User, ensure_utc, utc_now
from app.services import audit_log
from app.services.subscription_state import SubscriptionStateMachine

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "subscriptions:expiration_sweep:lock"


class ExpirationSweeper:
    """过期清扫"""

    def __init__(
        self,
        *,
        engine: Engine,
        redis_client: RedisClient,
        state_machine: SubscriptionStateMachine | None = None,
        batch_size: int = 500,
        lock_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.redis_client = redis_client
        self.state_machine = state_machine or SubscriptionStateMachine()
        self.batch_size = batch_size
        self.lock_ttl_seconds = lock_ttl_seconds
        self._clock = clock

    def _expired_ids(self, session: Session, now: datetime, after_id: int | None) -> list[int]:
        stmt = (
            select(User.id)
            .where(User.access_level == AccessLevel.premium)
            .where(col(User.has_lifetime_access).is_(False))
            .where(col(User.subscription_expiry).is_not(None))
            .where(col(User.subscription_expiry) < now)
        )
        if after_id is not None:
            stmt = stmt.where(col(User.id) > after_id)
        stmt = stmt.order_by(col(User.id)).limit(self.batch_size)
        return list(session.exec(stmt).all())

    def run(self, now: datetime | None = None) -> SweepRun | None:
        """
        执行一次清扫

        Returns:
            本次的 SweepRun；已有清扫在运行时返回 None
        """
        lock_value = str(uuid4())
        acquired = self.redis_client.acquire_lock(
            SWEEP_LOCK_KEY,
            lock_value,
            expire_seconds=self.lock_ttl_seconds,
        )
        if not acquired:
            logger.info("Expiration sweep already running, skip this run.")
            return None

        try:
            return self._run_locked(ensure_utc(now) or self._clock(), lock_value)
        finally:
            self.redis_client.release_lock(SWEEP_LOCK_KEY, lock_value)

    def _run_locked(self, now: datetime, lock_value: str) -> SweepRun:
        with Session(self.engine) as session:
            run = SweepRun(started_at=now, status=SweepRunStatus.running)
            session.add(run)
            session.commit()
            run_id = run.id

        scanned = 0
        downgraded = 0
        status = SweepRunStatus.completed
        try:
            after_id: int | None = None
            while True:
                with Session(self.engine) as session:
                    batch = self._expired_ids(session, now, after_id)
                if not batch:
                    break
                scanned += len(batch)
                after_id = batch[-1]
                for user_id in batch:
                    if self._downgrade(user_id, run_id, now):
                        downgraded += 1
                if not self.redis_client.extend_lock(
                    SWEEP_LOCK_KEY, lock_value, expire_seconds=self.lock_ttl_seconds
                ):
                    logger.warning("Expiration sweep %s lost its lock, stopping early", run_id)
                    status = SweepRunStatus.failed
                    break
        except Exception:
            status = SweepRunStatus.failed
            logger.exception("Expiration sweep %s failed", run_id)
            raise
        finally:
            with Session(self.engine) as session:
                run = session.get(SweepRun, run_id)
                run.finished_at = utc_now()
                run.users_scanned = scanned
                run.users_downgraded = downgraded
                run.status = status
                session.add(run)
                session.commit()
                session.refresh(run)
                session.expunge(run)

        logger.info(
            "Expiration sweep done: run=%s scanned=%d downgraded=%d",
            run_id,
            scanned,
            downgraded,
        )
        return run

    def _downgrade(self, user_id: int, run_id: int, now: datetime) -> bool:
        with Session(self.engine) as session:
            transition = self.state_machine.expire(session, user_id, now)
            if transition is None:
                session.rollback()
                return False
            audit_log.record(
                session,
                source=AuditSource.sweeper,
                status=AuditStatus.processed,
                event_type=SWEEP_EVENT_TYPE,
                sweep_run_id=run_id,
                email=transition.email,
                user_id=user_id,
                message=(
                    "subscription expired at "
                    f"{transition.previous.subscription_expiry.isoformat()}"
                ),
            )
            session.commit()
            return True
