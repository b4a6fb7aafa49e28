"""
订阅状态机

用户订阅字段的唯一写入方。所有变更都在 SELECT ... FOR UPDATE 锁住用户行之后进行，
同一用户的并发事件按加锁顺序依次生效，后生效的覆盖先生效的。

推导状态:
    lifetime  has_lifetime_access 为真
    active    付费中（过期时间在未来，或后台手动开通且无过期时间）
    cancelled 退款/取消后未重新开通
    expired   过期时间已过
    free      从未订阅
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict
from sqlalchemy import func
from sqlmodel import Session, select

from app.enums import (
    STAFF_ACCESS_LEVELS,
    AccessLevel,
    CanonicalEventType,
    PlanType,
    SubscriptionOrigin,
    SubscriptionState,
)
from app.models import User, ensure_utc, utc_now
from app.services.errors import ApplyError, UserUnresolvableError
from app.services.normalizer import CanonicalEvent
from app.services.plan_catalog import PlanSpec

logger = logging.getLogger(__name__)


class SubscriptionSnapshot(BaseModel):
    """用户订阅字段的快照"""
    model_config = ConfigDict(frozen=True)

    access_level: AccessLevel
    plan_type: PlanType
    subscription_start: datetime | None = None
    subscription_expiry: datetime | None = None
    has_lifetime_access: bool = False
    subscription_origin: SubscriptionOrigin | None = None
    cancelled_at: datetime | None = None

    @classmethod
    def from_user(cls, user: User) -> SubscriptionSnapshot:
        return cls(
            access_level=user.access_level,
            plan_type=user.plan_type,
            subscription_start=ensure_utc(user.subscription_start),
            subscription_expiry=ensure_utc(user.subscription_expiry),
            has_lifetime_access=bool(user.has_lifetime_access),
            subscription_origin=user.subscription_origin,
            cancelled_at=ensure_utc(user.cancelled_at),
        )

    def state_at(self, now: datetime) -> SubscriptionState:
        return derive_state(self, now)


class Transition(BaseModel):
    """一次状态变更的前后快照"""
    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str
    previous: SubscriptionSnapshot
    new: SubscriptionSnapshot
    provisioned: bool = False

    @property
    def changed(self) -> bool:
        return self.previous != self.new

    def describe(self, now: datetime) -> str:
        before = self.previous.state_at(now).value
        after = self.new.state_at(now).value
        text = f"{before} -> {after}"
        if self.new.subscription_expiry is not None:
            text += f" (expiry {self.new.subscription_expiry.isoformat()})"
        if not self.changed:
            text += " (no change)"
        if self.provisioned:
            text += " [user provisioned]"
        return text


def derive_state(snapshot: SubscriptionSnapshot, now: datetime) -> SubscriptionState:
    """根据订阅字段推导生命周期状态"""
    if snapshot.has_lifetime_access:
        return SubscriptionState.lifetime
    expiry = ensure_utc(snapshot.subscription_expiry)
    paid_level = snapshot.access_level == AccessLevel.premium or snapshot.access_level in STAFF_ACCESS_LEVELS
    if paid_level and expiry is not None and expiry > now:
        return SubscriptionState.active
    if (
        snapshot.access_level == AccessLevel.premium
        and expiry is None
        and snapshot.subscription_origin == SubscriptionOrigin.manual
    ):
        return SubscriptionState.active
    if snapshot.cancelled_at is not None:
        return SubscriptionState.cancelled
    if expiry is not None and expiry <= now:
        return SubscriptionState.expired
    return SubscriptionState.free


def _granted_level(user: User) -> AccessLevel:
    # 员工角色保持不变
    if user.access_level in STAFF_ACCESS_LEVELS:
        return user.access_level
    return AccessLevel.premium


def _revoked_level(user: User) -> AccessLevel:
    if user.access_level in STAFF_ACCESS_LEVELS:
        return user.access_level
    return AccessLevel.free


class SubscriptionStateMachine:
    """订阅状态机"""

    def __init__(self, *, unresolved_user_policy: Literal["provision", "quarantine"] = "provision") -> None:
        self.unresolved_user_policy = unresolved_user_policy

    # ========================================================================
    # 加载用户
    # ========================================================================

    def _lock_user_by_email(self, session: Session, email: str) -> User | None:
        return session.exec(
            select(User).where(func.lower(User.email) == email.lower()).with_for_update()
        ).first()

    def _lock_user_by_id(self, session: Session, user_id: int) -> User | None:
        return session.exec(select(User).where(User.id == user_id).with_for_update()).first()

    def _provision(self, session: Session, event: CanonicalEvent, now: datetime) -> User:
        user = User(
            email=event.user_email,
            name=event.user_name,
            access_level=AccessLevel.free,
            plan_type=PlanType.none,
            created_at=now,
            updated_at=now,
        )
        session.add(user)
        session.flush()
        logger.info("Provisioned user %s for %s event from %s", user.id, event.event_type.value, event.source.value)
        return user

    # ========================================================================
    # 状态变更
    # ========================================================================

    def apply(
        self,
        session: Session,
        event: CanonicalEvent,
        plan: PlanSpec | None,
        now: datetime | None = None,
    ) -> Transition:
        """
        把标准化事件应用到用户（调用方负责提交）

        Args:
            session: 与去重认领相同的事务会话
            event: 标准化事件
            plan: 购买/续费需要的订阅计划；退款/取消可以为 None
            now: 处理时间

        Returns:
            Transition

        Raises:
            UserUnresolvableError: 找不到用户且策略为 quarantine
            ApplyError: 购买/续费缺少订阅计划
        """
        now = ensure_utc(now) or utc_now()
        grants = event.event_type in (CanonicalEventType.purchase_approved, CanonicalEventType.renewal)
        if grants and plan is None:
            raise ApplyError(f"No plan resolved for product {event.product_id}")

        user = self._lock_user_by_email(session, event.user_email)
        provisioned = False
        if user is None:
            if self.unresolved_user_policy == "quarantine":
                raise UserUnresolvableError(event.user_email)
            user = self._provision(session, event, now)
            provisioned = True

        previous = SubscriptionSnapshot.from_user(user)
        origin = SubscriptionOrigin(event.source.value)

        if event.event_type == CanonicalEventType.purchase_approved:
            self._purchase(user, plan, origin, now)
        elif event.event_type == CanonicalEventType.renewal:
            self._renew(user, plan, origin, now)
        else:
            self._revoke(user, now)

        new = SubscriptionSnapshot.from_user(user)
        if new != previous:
            user.updated_at = now
            session.add(user)
            session.flush()

        transition = Transition(
            user_id=user.id,
            email=user.email,
            previous=previous,
            new=new,
            provisioned=provisioned,
        )
        logger.info(
            "Applied %s from %s to user %s: %s",
            event.event_type.value,
            event.source.value,
            user.id,
            transition.describe(now),
        )
        return transition

    def _grant_lifetime(self, user: User, origin: SubscriptionOrigin, now: datetime) -> None:
        user.has_lifetime_access = True
        user.access_level = _granted_level(user)
        user.plan_type = PlanType.lifetime
        user.subscription_expiry = None
        user.subscription_origin = origin
        user.subscription_start = now
        user.cancelled_at = None

    def _purchase(self, user: User, plan: PlanSpec, origin: SubscriptionOrigin, now: datetime) -> None:
        if plan.is_lifetime:
            self._grant_lifetime(user, origin, now)
            return
        if user.has_lifetime_access:
            # 终身会员不会被定期计划覆盖
            return
        user.access_level = _granted_level(user)
        user.plan_type = plan.plan_type
        user.subscription_start = now
        user.subscription_expiry = now + timedelta(days=plan.duration_days)
        user.subscription_origin = origin
        user.cancelled_at = None

    def _renew(self, user: User, plan: PlanSpec, origin: SubscriptionOrigin, now: datetime) -> None:
        if user.has_lifetime_access:
            return
        if plan.is_lifetime:
            self._grant_lifetime(user, origin, now)
            return
        current = ensure_utc(user.subscription_expiry)
        base = max(now, current) if current is not None else now
        user.access_level = _granted_level(user)
        user.plan_type = plan.plan_type
        if user.subscription_start is None or user.cancelled_at is not None:
            user.subscription_start = now
        user.subscription_expiry = base + timedelta(days=plan.duration_days)
        user.subscription_origin = origin
        user.cancelled_at = None

    def _revoke(self, user: User, now: datetime) -> None:
        user.access_level = _revoked_level(user)
        user.has_lifetime_access = False
        user.plan_type = PlanType.none
        user.subscription_expiry = None
        user.cancelled_at = now

    def expire(self, session: Session, user_id: int, now: datetime | None = None) -> Transition | None:
        """
        过期降级（清扫任务使用，调用方负责提交）

        加锁后重新检查条件：期间续费或开通终身的用户不降级。

        Returns:
            Transition；不满足降级条件时返回 None
        """
        now = ensure_utc(now) or utc_now()
        user = self._lock_user_by_id(session, user_id)
        if user is None:
            return None
        expiry = ensure_utc(user.subscription_expiry)
        if (
            user.access_level != AccessLevel.premium
            or user.has_lifetime_access
            or expiry is None
            or expiry >= now
        ):
            return None

        previous = SubscriptionSnapshot.from_user(user)
        user.access_level = AccessLevel.free
        user.plan_type = PlanType.none
        user.updated_at = now
        session.add(user)
        session.flush()
        return Transition(
            user_id=user.id,
            email=user.email,
            previous=previous,
            new=SubscriptionSnapshot.from_user(user),
        )
