"""Tests for retailer visibility and merchant subscription policy."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from price_harvester.core.enums import (
    ListingStatus,
    RelationshipStatus,
    RetailerEligibility,
    SubscriptionAccess,
    SubscriptionStatus,
)
from price_harvester.core.schema import Merchant, MerchantRetailerRelationship, Retailer
from price_harvester.core.subscription import SubscriptionPolicy
from price_harvester.core.visibility import RelationshipState, is_retailer_visible
from price_harvester.db.repositories import MerchantRepository, RetailerRepository

ACTIVE_LISTED = RelationshipState(RelationshipStatus.ACTIVE, ListingStatus.LISTED)
ACTIVE_UNLISTED = RelationshipState(RelationshipStatus.ACTIVE, ListingStatus.UNLISTED)
SUSPENDED = RelationshipState(RelationshipStatus.SUSPENDED, ListingStatus.LISTED)

NOW = datetime(2025, 3, 1, 12, 0, 0)


class TestVisibilityPredicate:
    """Tests for is_retailer_visible."""

    @pytest.mark.parametrize(
        "eligibility,relationships,visible",
        [
            (RetailerEligibility.ELIGIBLE, [], True),
            (RetailerEligibility.ELIGIBLE, [SUSPENDED, SUSPENDED], True),
            (RetailerEligibility.ELIGIBLE, [ACTIVE_LISTED], True),
            (RetailerEligibility.ELIGIBLE, [ACTIVE_UNLISTED, ACTIVE_LISTED], True),
            (RetailerEligibility.ELIGIBLE, [ACTIVE_UNLISTED], False),
            (RetailerEligibility.ELIGIBLE, [ACTIVE_UNLISTED, SUSPENDED], False),
            (RetailerEligibility.INELIGIBLE, [], False),
            (RetailerEligibility.SUSPENDED, [ACTIVE_LISTED], False),
        ],
    )
    def test_predicate(self, eligibility, relationships, visible) -> None:
        """Eligibility gates everything; relationships decide the rest."""
        assert is_retailer_visible(eligibility, relationships) is visible


class TestVisibilityQuery:
    """Tests for the SQL form of the predicate."""

    def test_list_visible_matches_predicate(self, session: Session) -> None:
        """The query and the Python predicate agree."""
        retailers = RetailerRepository(session)
        merchants = MerchantRepository(session)
        merchant = merchants.create(Merchant(name="Acme Holdings"))

        cases = {
            "Alone": [],
            "Listed": [(RelationshipStatus.ACTIVE, ListingStatus.LISTED)],
            "Delinquent": [(RelationshipStatus.ACTIVE, ListingStatus.UNLISTED)],
            "Suspended": [(RelationshipStatus.SUSPENDED, ListingStatus.UNLISTED)],
        }
        for name, relationships in cases.items():
            retailer = retailers.create(Retailer(name=name))
            for status, listing in relationships:
                merchants.add_relationship(
                    MerchantRetailerRelationship(
                        merchant_id=merchant.id,
                        retailer_id=retailer.id,
                        status=status,
                        listing_status=listing,
                    )
                )
        hidden = retailers.create(Retailer(name="Banned", eligibility=RetailerEligibility.INELIGIBLE))
        session.commit()

        visible = [r.name for r in retailers.list_visible()]

        assert visible == ["Alone", "Listed", "Suspended"]
        for retailer in [*retailers.list_visible(), hidden]:
            assert retailers.is_visible(retailer.id) is (retailer.name in visible)

    def test_eligibility_change(self, session: Session, retailer: Retailer) -> None:
        """Suspending a retailer hides it."""
        retailers = RetailerRepository(session)

        retailers.set_eligibility(retailer.id, RetailerEligibility.SUSPENDED)

        assert retailers.is_visible(retailer.id) is False
        assert retailers.list_visible() == []


class TestSubscriptionPolicy:
    """Tests for SubscriptionPolicy.evaluate."""

    @pytest.fixture
    def policy(self) -> SubscriptionPolicy:
        return SubscriptionPolicy(grace_days=7)

    def test_no_merchant(self, policy: SubscriptionPolicy) -> None:
        """Feeds without a merchant always run."""
        assert policy.evaluate(None, NOW).access == SubscriptionAccess.ACTIVE

    def test_active(self, policy: SubscriptionPolicy) -> None:
        """A future expiry is active."""
        merchant = Merchant(name="M", subscription_expires_at=NOW + timedelta(days=10))

        decision = policy.evaluate(merchant, NOW)

        assert decision.access == SubscriptionAccess.ACTIVE
        assert bool(decision) is True

    def test_grace(self, policy: SubscriptionPolicy) -> None:
        """Inside the grace window feeds run with a warning."""
        merchant = Merchant(name="M", subscription_expires_at=NOW - timedelta(days=3))

        decision = policy.evaluate(merchant, NOW)

        assert decision.in_grace
        assert not decision.should_skip
        assert decision.grace_ends_at == NOW + timedelta(days=4)

    def test_expired(self, policy: SubscriptionPolicy) -> None:
        """After the grace window feeds are skipped."""
        merchant = Merchant(name="M", subscription_expires_at=NOW - timedelta(days=8))

        decision = policy.evaluate(merchant, NOW)

        assert decision.should_skip
        assert decision.reason == "grace_period_ended"
        assert bool(decision) is False

    @pytest.mark.parametrize("status", [SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED])
    def test_suspended_or_cancelled(self, policy: SubscriptionPolicy, status) -> None:
        """Suspension and cancellation skip without grace."""
        merchant = Merchant(
            name="M", subscription_status=status, subscription_expires_at=NOW + timedelta(days=30)
        )

        decision = policy.evaluate(merchant, NOW)

        assert decision.should_skip
        assert decision.reason == f"subscription_{status.value}"

    def test_exempt_tier(self, policy: SubscriptionPolicy) -> None:
        """Founding merchants never expire."""
        merchant = Merchant(
            name="M",
            tier="founding",
            subscription_status=SubscriptionStatus.EXPIRED,
            subscription_expires_at=NOW - timedelta(days=100),
        )

        decision = policy.evaluate(merchant, NOW)

        assert decision.access == SubscriptionAccess.ACTIVE
        assert decision.reason == "exempt_tier"

    def test_expired_without_date(self, policy: SubscriptionPolicy) -> None:
        """An expired status with no date is expired."""
        merchant = Merchant(name="M", subscription_status=SubscriptionStatus.EXPIRED)

        assert policy.evaluate(merchant, NOW).should_skip

    def test_notice_rate_limit(self, policy: SubscriptionPolicy) -> None:
        """Notices go out at most once per interval."""
        assert policy.should_notify(None, NOW)
        assert not policy.should_notify(NOW - timedelta(hours=23), NOW)
        assert policy.should_notify(NOW - timedelta(hours=24), NOW)
