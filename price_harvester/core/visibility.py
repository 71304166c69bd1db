"""Public visibility rule for retailer prices.

Every consumer of price data (search, alerting, exports) must use this
module instead of re-deriving the rule.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import and_, exists, not_, or_, select
from sqlalchemy.sql.elements import ColumnElement

from price_harvester.core.enums import ListingStatus, RelationshipStatus, RetailerEligibility


@dataclass(frozen=True)
class RelationshipState:
    """The two fields of a merchant-retailer relationship that drive visibility."""

    status: RelationshipStatus
    listing_status: ListingStatus

    @property
    def is_active_and_listed(self) -> bool:
        return (
            self.status == RelationshipStatus.ACTIVE
            and self.listing_status == ListingStatus.LISTED
        )


def is_retailer_visible(
    eligibility: RetailerEligibility,
    relationships: Iterable[RelationshipState],
) -> bool:
    """
    Decide whether a retailer's prices may be shown publicly.

    A retailer is visible iff it is ELIGIBLE and one of:
    - it has no merchant relationship at all
    - every relationship is suspended
    - at least one relationship is both active and listed

    An active relationship that is unlisted, with no active+listed
    sibling, hides the retailer (delinquent merchant).

    Args:
        eligibility: Retailer eligibility
        relationships: Relationship states for the retailer

    Returns:
        True if prices may be displayed
    """
    if eligibility != RetailerEligibility.ELIGIBLE:
        return False

    states = list(relationships)
    if not states:
        return True
    if all(s.status == RelationshipStatus.SUSPENDED for s in states):
        return True
    return any(s.is_active_and_listed for s in states)


def visible_retailer_clause() -> ColumnElement[bool]:
    """
    SQL form of is_retailer_visible for filtering RetailerDB queries.

    Usage:
        stmt = select(RetailerDB).where(visible_retailer_clause())
    """
    from price_harvester.db.models import MerchantRetailerDB, RetailerDB

    rel = MerchantRetailerDB
    any_rel = exists(select(rel.id).where(rel.retailer_id == RetailerDB.id))
    any_unsuspended = exists(
        select(rel.id).where(
            rel.retailer_id == RetailerDB.id,
            rel.status != RelationshipStatus.SUSPENDED.value,
        )
    )
    any_active_listed = exists(
        select(rel.id).where(
            rel.retailer_id == RetailerDB.id,
            rel.status == RelationshipStatus.ACTIVE.value,
            rel.listing_status == ListingStatus.LISTED.value,
        )
    )
    return and_(
        RetailerDB.eligibility == RetailerEligibility.ELIGIBLE.value,
        or_(not_(any_rel), not_(any_unsuspended), any_active_listed),
    )
