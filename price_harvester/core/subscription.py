"""Subscription policy for feed processing.

Decides whether a merchant's feeds run, run with a warning (grace
period), or are skipped. Grace length and exempt tiers are configuration.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from price_harvester.core.enums import SubscriptionAccess, SubscriptionStatus
from price_harvester.core.schema import Merchant, utc_now


@dataclass
class SubscriptionDecision:
    """Result of evaluating a merchant subscription."""

    access: SubscriptionAccess
    reason: str | None = None
    expires_at: datetime | None = None
    grace_ends_at: datetime | None = None

    @property
    def should_skip(self) -> bool:
        return self.access == SubscriptionAccess.EXPIRED

    @property
    def in_grace(self) -> bool:
        return self.access == SubscriptionAccess.GRACE

    def __bool__(self) -> bool:
        """Allow using decision in boolean context (True = feeds may run)."""
        return not self.should_skip


@dataclass
class SubscriptionPolicy:
    """
    Configurable grace-period policy.

    Attributes:
        grace_days: Days after expiry during which feeds still run
        exempt_tiers: Tiers that never expire (e.g. founding accounts)
        notice_interval_hours: Minimum spacing between expiry notices
    """

    grace_days: int = 7
    exempt_tiers: set[str] = field(default_factory=lambda: {"FOUNDING"})
    notice_interval_hours: int = 24

    def evaluate(self, merchant: Merchant | None, now: datetime | None = None) -> SubscriptionDecision:
        """
        Evaluate a merchant's access level.

        Feeds without a merchant always run.
        """
        if merchant is None:
            return SubscriptionDecision(access=SubscriptionAccess.ACTIVE)

        now = now or utc_now()

        if merchant.tier.upper() in {t.upper() for t in self.exempt_tiers}:
            return SubscriptionDecision(access=SubscriptionAccess.ACTIVE, reason="exempt_tier")

        if merchant.subscription_status in (
            SubscriptionStatus.SUSPENDED,
            SubscriptionStatus.CANCELLED,
        ):
            return SubscriptionDecision(
                access=SubscriptionAccess.EXPIRED,
                reason=f"subscription_{merchant.subscription_status.value}",
                expires_at=merchant.subscription_expires_at,
            )

        expires_at = merchant.subscription_expires_at
        if expires_at is None:
            if merchant.subscription_status == SubscriptionStatus.EXPIRED:
                return SubscriptionDecision(
                    access=SubscriptionAccess.EXPIRED, reason="subscription_expired"
                )
            return SubscriptionDecision(access=SubscriptionAccess.ACTIVE)

        if expires_at > now and merchant.subscription_status == SubscriptionStatus.ACTIVE:
            return SubscriptionDecision(access=SubscriptionAccess.ACTIVE, expires_at=expires_at)

        grace_ends_at = expires_at + timedelta(days=self.grace_days)
        if now < grace_ends_at:
            return SubscriptionDecision(
                access=SubscriptionAccess.GRACE,
                reason="grace_period",
                expires_at=expires_at,
                grace_ends_at=grace_ends_at,
            )

        return SubscriptionDecision(
            access=SubscriptionAccess.EXPIRED,
            reason="grace_period_ended",
            expires_at=expires_at,
            grace_ends_at=grace_ends_at,
        )

    def should_notify(self, last_notice_at: datetime | None, now: datetime | None = None) -> bool:
        """Rate-limit expiry notices to one per interval per merchant."""
        if last_notice_at is None:
            return True
        now = now or utc_now()
        return now - last_notice_at >= timedelta(hours=self.notice_interval_hours)
