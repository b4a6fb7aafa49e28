"""
去重账本

同一 (source, transaction_id, event_type) 最多生效一次。
认领是一条受唯一约束保护的 INSERT，与状态变更在同一事务中提交：
状态变更失败回滚时认领一并撤销，平台重试时可以重新处理。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.db import set_local_timeouts
from app.models import DedupRecord, utc_now

logger = logging.getLogger(__name__)

PENDING_OUTCOME = "pending"


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    record: DedupRecord | None = None
    prior_outcome: str | None = None


class DedupLedger:
    """去重账本"""

    def try_claim(
        self,
        session: Session,
        *,
        source: str,
        transaction_id: str,
        event_type: str,
        webhook_event_id: int | None = None,
        lock_timeout_ms: int | None = None,
    ) -> ClaimResult:
        """
        认领事件

        必须是事务中的第一次写入：冲突时会回滚整个会话事务。
        PostgreSQL 上并发的相同认领会阻塞到先到者提交或回滚，
        先到者回滚后，后到者的 INSERT 成功。

        冲突回滚会清掉事务级的 SET LOCAL 超时，给出 lock_timeout_ms 时回滚后重新设置。

        Returns:
            claimed=True 时 record 为新记录；否则 prior_outcome 为已有记录的结果
        """
        record = DedupRecord(
            source=source,
            transaction_id=transaction_id,
            event_type=event_type,
            outcome=PENDING_OUTCOME,
            webhook_event_id=webhook_event_id,
        )
        try:
            session.add(record)
            session.flush()
        except IntegrityError:
            session.rollback()
            if lock_timeout_ms is not None:
                set_local_timeouts(session, milliseconds=lock_timeout_ms)
            prior = session.exec(
                select(DedupRecord)
                .where(DedupRecord.source == source)
                .where(DedupRecord.transaction_id == transaction_id)
                .where(DedupRecord.event_type == event_type)
            ).first()
            logger.info(
                "Duplicate event %s/%s/%s (prior outcome: %s)",
                source,
                transaction_id,
                event_type,
                prior.outcome if prior else None,
            )
            return ClaimResult(claimed=False, prior_outcome=prior.outcome if prior else None)
        return ClaimResult(claimed=True, record=record)

    def mark(self, session: Session, record: DedupRecord, outcome: str) -> None:
        """记录最终结果，随认领一起提交"""
        record.outcome = outcome
        record.processed_at = utc_now()
        session.add(record)
