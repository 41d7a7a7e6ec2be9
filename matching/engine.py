"""
Matching Engine — ranks inventory against a customer's extracted request.

Candidates come from two sources, in this order:
  1. verified, active supplier offers
  2. published catalog itineraries

They are deduplicated on a case-insensitive (title, destination) key (first
seen wins) and scored on five independent criteria:

  destination   40   exact 40 · contains 38 · country 35 · region 30 ·
                     word overlap 25-35 · highlights 20 · activities 18
  dates         25   fully inside window 25 · partial 20 · no fixed window 18 ·
                     valid within 30 days of the start 15 · otherwise 0
  budget        20   ≤5% off 20 · ≤10% 18 · ≤20% 15 · ≤30% 10 · over 5 · under 12
  travelers     10   fits 10 · short by ≤2 7 · short by more 3 · over capacity 2
  requirements   5   package type +2 · meal plan +1 · hotel rating +2

A candidate is returned only if its total is at least 30 AND its destination
score is at least 20. Survivors are sorted by total, ties keeping discovery
order, and the top five are returned.
"""
from __future__ import annotations

import re
import structlog
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional

from config.settings import MatchingConfig
from database.store_base import BaseWorkflowStore
from models.schemas import (
    ExtractedData, InventoryItem, MatchCandidate, ScoreBreakdown, SourceType,
)

logger = structlog.get_logger()

_WORD = re.compile(r"[a-z0-9]+")


def _today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class InventoryCandidate:
    """An inventory item tagged with where it came from."""
    item: InventoryItem
    source_type: SourceType

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.item.title.strip().lower(), self.item.destination.strip().lower())


@dataclass
class SubScore:
    points: int
    reason: str = ""
    gap: str = ""


def dedupe(candidates: Iterable[InventoryCandidate]) -> list[InventoryCandidate]:
    """Collapse candidates sharing a (title, destination) key, keeping the first."""
    seen: set[tuple[str, str]] = set()
    unique = []
    for candidate in candidates:
        key = candidate.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    return unique


class MatchingEngine:
    """Scores and ranks inventory candidates. Reads the store, never writes it."""

    def __init__(
        self,
        store: BaseWorkflowStore,
        config: Optional[MatchingConfig] = None,
        today: Callable[[], date] = _today,
    ):
        self._store = store
        self._config = config or MatchingConfig()
        self._today = today

    async def match_packages(
        self,
        criteria: ExtractedData,
        tenant_id: str,
        message_id: Optional[str] = None,
    ) -> list[MatchCandidate]:
        offers = await self._store.list_supplier_offers(tenant_id, searchable_only=True)
        catalog = await self._store.list_catalog_itineraries(tenant_id, published_only=True)
        candidates = dedupe(
            [InventoryCandidate(o, SourceType.SUPPLIER_OFFER) for o in offers]
            + [InventoryCandidate(i, SourceType.CATALOG_ITINERARY) for i in catalog]
        )
        ranked = self.rank(criteria, candidates)

        if message_id:
            logger.info("packages_matched",
                        message_id=message_id,
                        tenant_id=tenant_id,
                        destination=criteria.destination,
                        candidates=len(candidates),
                        returned=len(ranked),
                        top_score=ranked[0].total if ranked else 0)
        return ranked

    def rank(self, criteria: ExtractedData, candidates: list[InventoryCandidate]) -> list[MatchCandidate]:
        """Score, gate, stable-sort and truncate. Pure."""
        scored = [self.score_candidate(criteria, c) for c in candidates]
        passed = [
            m for m in scored
            if m.total >= self._config.min_total_score
            and m.score.destination >= self._config.min_destination_score
        ]
        passed = sorted(passed, key=lambda m: m.total, reverse=True)
        return passed[:self._config.max_results]

    def score_candidate(self, criteria: ExtractedData, candidate: InventoryCandidate) -> MatchCandidate:
        item = candidate.item
        destination = self.score_destination(criteria, item)
        dates = self.score_dates(criteria, item)
        budget = self.score_budget(criteria, item)
        travelers = self.score_travelers(criteria, item)
        requirements = self.score_requirements(criteria, item)

        reasons, gaps = [], []
        if destination.points > 30:
            reasons.append(destination.reason)
        elif destination.points < 20:
            gaps.append(
                f"Destination mismatch: looking for {criteria.destination or 'unspecified'}, "
                f"package offers {item.destination or 'unspecified'}"
            )
        if dates.points > 15:
            reasons.append(dates.reason)
        elif dates.points < 10:
            gaps.append(dates.gap)
        if budget.points > 15:
            reasons.append(budget.reason)
        elif budget.points < 10:
            gaps.append(budget.gap)
        if travelers.points == 10 and criteria.travelers.adults:
            reasons.append(travelers.reason)
        elif travelers.points < 5:
            gaps.append(travelers.gap)

        return MatchCandidate(
            candidate_id=item.id,
            source_type=candidate.source_type,
            title=item.title,
            destination=item.destination,
            price=item.price,
            currency=item.currency,
            score=ScoreBreakdown(
                destination=destination.points,
                dates=dates.points,
                budget=budget.points,
                travelers=travelers.points,
                requirements=requirements.points,
            ),
            reasons=[r for r in reasons if r],
            gaps=[g for g in gaps if g],
        )

    # ── Criteria ──────────────────────────────────────────────

    @staticmethod
    def score_destination(criteria: ExtractedData, item: InventoryItem) -> SubScore:
        wanted = (criteria.destination or "").strip().lower()
        if not wanted:
            return SubScore(0, gap="No destination requested")

        dest = item.destination.strip().lower()
        if wanted == dest:
            return SubScore(40, f"Exact destination match: {item.destination}")
        if dest and (wanted in dest or dest in wanted):
            return SubScore(38, f"Destination match: {item.destination}")
        if item.country and wanted == item.country.strip().lower():
            return SubScore(35, f"Country match: {item.country}")
        if item.region and wanted == item.region.strip().lower():
            return SubScore(30, f"Region match: {item.region}")

        wanted_words = [w for w in _WORD.findall(wanted) if len(w) > 3]
        offered_words = [w for w in _WORD.findall(dest) if len(w) > 2]
        if wanted_words and offered_words:
            common = [w for w in wanted_words if any(w in o or o in w for o in offered_words)]
            if common:
                fraction = len(common) / len(wanted_words)
                return SubScore(min(35, 25 + round(10 * fraction)), "Partial destination match")

        if wanted in " ".join(item.highlights).lower():
            return SubScore(20, "Destination mentioned in highlights")
        if wanted in " ".join(item.activities).lower():
            return SubScore(18, "Destination mentioned in activities")
        return SubScore(0, "No destination match")

    def score_dates(self, criteria: ExtractedData, item: InventoryItem) -> SubScore:
        start, end = criteria.dates.start, criteria.dates.end
        valid_from, valid_until = item.valid_from, item.valid_until

        def valid_on(day: date) -> bool:
            return (valid_from is None or valid_from <= day) and (valid_until is None or day <= valid_until)

        if start is None:
            if valid_on(self._today()):
                return SubScore(20, "Package available now")
            return SubScore(15, "Flexible dates")

        if valid_from is None and valid_until is None:
            return SubScore(18, "Available year-round")

        if valid_on(start):
            if end is None or valid_until is None or end <= valid_until:
                return SubScore(25, f"Available for requested dates ({start.isoformat()})")
            return SubScore(20, "Partially available for dates",
                            "End date may extend beyond package validity")

        if end is not None and valid_on(end):
            return SubScore(20, "Partially available for dates",
                            "Start date falls before package validity")

        if valid_from is not None:
            days_until_valid = (valid_from - start).days
            if 0 < days_until_valid <= self._config.soon_valid_days:
                return SubScore(15, f"Available {days_until_valid} days after preferred date",
                                f"Package valid from {valid_from.isoformat()}")

        window = f"{valid_from or '…'} - {valid_until or '…'}"
        return SubScore(0, "Dates not available",
                        f"Inquiry: {start.isoformat()}, Package: {window}")

    @staticmethod
    def score_budget(criteria: ExtractedData, item: InventoryItem) -> SubScore:
        budget = criteria.budget.amount
        if not budget:
            return SubScore(15, "Budget flexible")
        price = item.price
        if price is None:
            return SubScore(10, "Price on request", "Package price not listed")

        percent_diff = abs(price - budget) / budget * 100
        label = f"{item.currency} {price:g}"
        if percent_diff <= 5:
            return SubScore(20, f"Perfect budget match ({label})")
        if percent_diff <= 10:
            return SubScore(18, f"Excellent budget fit ({label})")
        if percent_diff <= 20:
            return SubScore(15, f"Good budget fit ({label})")
        if percent_diff <= 30:
            return SubScore(10, "Moderate budget fit", f"Package {price:g} vs budget {budget:g}")
        if price > budget:
            return SubScore(5, "Above budget",
                            f"Package {price:g} exceeds budget {budget:g} by {round(percent_diff)}%")
        return SubScore(12, f"Below budget ({label})",
                        f"Package {price:g} is {round(percent_diff)}% below budget")

    @staticmethod
    def score_travelers(criteria: ExtractedData, item: InventoryItem) -> SubScore:
        party = criteria.travelers.party_size
        if not party:
            return SubScore(8, "Traveler count flexible")

        min_pax = item.min_pax or 1
        max_pax = item.max_pax or 999
        if min_pax <= party <= max_pax:
            return SubScore(10, f"Accommodates {party} travelers")
        if party < min_pax:
            shortfall = min_pax - party
            points = 7 if shortfall <= 2 else 3
            return SubScore(points, "Below minimum group size",
                            f"Need {shortfall} more travelers (min {min_pax})")
        return SubScore(2, "Exceeds capacity", f"Group of {party} exceeds max {max_pax}")

    @staticmethod
    def score_requirements(criteria: ExtractedData, item: InventoryItem) -> SubScore:
        points = 0
        if criteria.package_type and item.package_type \
                and criteria.package_type.strip().lower() == item.package_type.strip().lower():
            points += 2
        if criteria.meal_plan and item.meal_plan:
            wanted, offered = criteria.meal_plan.lower(), item.meal_plan.lower()
            if wanted in offered or offered in wanted:
                points += 1
        if criteria.hotel_rating and item.hotel_rating and item.hotel_rating >= criteria.hotel_rating:
            points += 2
        return SubScore(min(points, 5))
