"""
Tests for MatchingEngine — per-criterion scoring, gating, ordering, dedup.
"""
from datetime import date

import pytest

from conftest import TODAY, paris_request
from models.schemas import (
    Budget, CatalogItinerary, DateRange, ExtractedData, InventoryItem, SourceType,
    SupplierOffer, Travelers,
)


def _engine(store=None, **config):
    from config.settings import MatchingConfig
    from matching.engine import MatchingEngine
    return MatchingEngine(store, MatchingConfig(**config), today=lambda: TODAY)


def _candidate(item, source=SourceType.CATALOG_ITINERARY):
    from matching.engine import InventoryCandidate
    return InventoryCandidate(item, source)


# ──────────────────────────────────────────────────────────────
#  End-to-end scoring
# ──────────────────────────────────────────────────────────────

class TestParisScenario:
    def test_offer_scores_on_every_criterion(self, paris_offer):
        match = _engine().score_candidate(paris_request(), _candidate(paris_offer, SourceType.SUPPLIER_OFFER))

        assert match.score.destination == 38
        assert match.score.dates == 25
        assert match.score.budget >= 18
        assert match.score.travelers == 10
        assert match.total >= 66
        assert match.source_type == SourceType.SUPPLIER_OFFER
        assert any("Destination match" in r for r in match.reasons)
        assert match.gaps == []

    @pytest.mark.asyncio
    async def test_match_packages_reads_offers_then_catalog(self, store, paris_offer, catalog):
        await store.add_supplier_offers([paris_offer])
        await store.add_catalog_itineraries(catalog)

        ranked = await _engine(store).match_packages(paris_request(), "acme", message_id="m1")

        ids = [m.candidate_id for m in ranked]
        assert ids == ["it-paris", "offer-paris"]
        assert ranked[0].source_type == SourceType.CATALOG_ITINERARY
        assert ranked[1].source_type == SourceType.SUPPLIER_OFFER
        assert "it-rome" not in ids

    @pytest.mark.asyncio
    async def test_unverified_offers_and_other_tenants_are_ignored(self, store, paris_offer):
        pending = paris_offer.model_copy(update={"id": "o2", "verified": False, "title": "Unverified"})
        foreign = paris_offer.model_copy(update={"id": "o3", "tenant_id": "globex", "title": "Foreign"})
        await store.add_supplier_offers([pending, foreign])

        assert await _engine(store).match_packages(paris_request(), "acme") == []


# ──────────────────────────────────────────────────────────────
#  Criteria
# ──────────────────────────────────────────────────────────────

class TestDestinationScore:
    @pytest.mark.parametrize("item_kwargs,expected", [
        ({"destination": "Paris"}, 40),
        ({"destination": "paris"}, 40),
        ({"destination": "Paris, France"}, 38),
        ({"destination": "Lyon", "country": "Paris"}, 35),
        ({"destination": "Lyon", "region": "Paris"}, 30),
        ({"destination": "Nice", "highlights": ["Day trip to Paris"]}, 20),
        ({"destination": "Nice", "activities": ["paris shopping"]}, 18),
        ({"destination": "Tokyo"}, 0),
    ])
    def test_tiers(self, item_kwargs, expected):
        from matching.engine import MatchingEngine
        item = InventoryItem(title="Pkg", **item_kwargs)
        assert MatchingEngine.score_destination(ExtractedData(destination="Paris"), item).points == expected

    def test_word_overlap_between_25_and_35(self):
        from matching.engine import MatchingEngine
        criteria = ExtractedData(destination="Amalfi Coast Italy")
        item = InventoryItem(title="Pkg", destination="Positano Amalfi")
        points = MatchingEngine.score_destination(criteria, item).points
        assert 25 <= points <= 35

    def test_no_destination_requested(self):
        from matching.engine import MatchingEngine
        assert MatchingEngine.score_destination(ExtractedData(), InventoryItem(title="x", destination="Paris")).points == 0


class TestDateScore:
    def _item(self, valid_from=None, valid_until=None):
        return InventoryItem(title="Pkg", valid_from=valid_from, valid_until=valid_until)

    def test_no_start_date_currently_valid(self):
        item = self._item(date(2025, 1, 1), date(2025, 12, 31))
        assert _engine().score_dates(ExtractedData(), item).points == 20

    def test_no_start_date_not_currently_valid(self):
        item = self._item(date(2026, 1, 1), date(2026, 12, 31))
        assert _engine().score_dates(ExtractedData(), item).points == 15

    def test_no_validity_window(self):
        assert _engine().score_dates(paris_request(), self._item()).points == 18

    def test_end_beyond_validity_is_partial(self):
        item = self._item(date(2025, 5, 1), date(2025, 6, 3))
        assert _engine().score_dates(paris_request(), item).points == 20

    def test_only_end_inside_window(self):
        item = self._item(date(2025, 6, 5), date(2025, 9, 1))
        assert _engine().score_dates(paris_request(), item).points == 20

    def test_valid_soon_after_start(self):
        criteria = paris_request(dates=DateRange(start=date(2025, 6, 1)))
        item = self._item(date(2025, 6, 20), date(2025, 9, 1))
        result = _engine().score_dates(criteria, item)
        assert result.points == 15
        assert "19 days" in result.reason

    def test_out_of_window(self):
        criteria = paris_request(dates=DateRange(start=date(2025, 6, 1)))
        item = self._item(date(2025, 9, 1), date(2025, 10, 1))
        assert _engine().score_dates(criteria, item).points == 0


class TestBudgetScore:
    @pytest.mark.parametrize("price,expected", [
        (5000, 20), (5250, 20), (5500, 18), (4000, 15), (6400, 10), (8000, 5), (2000, 12),
    ])
    def test_bands(self, price, expected):
        from matching.engine import MatchingEngine
        criteria = ExtractedData(budget=Budget(amount=5000))
        assert MatchingEngine.score_budget(criteria, InventoryItem(title="x", price=price)).points == expected

    def test_no_budget(self):
        from matching.engine import MatchingEngine
        assert MatchingEngine.score_budget(ExtractedData(), InventoryItem(title="x", price=100)).points == 15

    def test_no_price_leaves_a_gap(self):
        from matching.engine import MatchingEngine
        result = MatchingEngine.score_budget(ExtractedData(budget=Budget(amount=5000)), InventoryItem(title="x"))
        assert result.points == 10
        assert result.gap


class TestTravelerScore:
    @pytest.mark.parametrize("adults,min_pax,max_pax,expected", [
        (2, 1, 6, 10),
        (2, None, None, 10),
        (2, 4, 10, 7),
        (2, 8, 10, 3),
        (12, 1, 10, 2),
    ])
    def test_bands(self, adults, min_pax, max_pax, expected):
        from matching.engine import MatchingEngine
        criteria = ExtractedData(travelers=Travelers(adults=adults))
        item = InventoryItem(title="x", min_pax=min_pax, max_pax=max_pax)
        assert MatchingEngine.score_travelers(criteria, item).points == expected

    def test_unknown_party(self):
        from matching.engine import MatchingEngine
        assert MatchingEngine.score_travelers(ExtractedData(), InventoryItem(title="x")).points == 8


class TestRequirementScore:
    def test_capped_at_five(self):
        from matching.engine import MatchingEngine
        criteria = ExtractedData(package_type="honeymoon", meal_plan="half board", hotel_rating=4)
        item = InventoryItem(title="x", package_type="Honeymoon", meal_plan="Half Board", hotel_rating=5)
        assert MatchingEngine.score_requirements(criteria, item).points == 5

    def test_lower_rating_earns_nothing(self):
        from matching.engine import MatchingEngine
        criteria = ExtractedData(hotel_rating=5)
        assert MatchingEngine.score_requirements(criteria, InventoryItem(title="x", hotel_rating=3)).points == 0


# ──────────────────────────────────────────────────────────────
#  Ranking
# ──────────────────────────────────────────────────────────────

class TestRanking:
    def test_destination_gate_blocks_high_total(self):
        # 0 destination + 25 + 20 + 10 + 5 = 60 total, still excluded
        criteria = paris_request(package_type="city", meal_plan="breakfast", hotel_rating=3)
        item = InventoryItem(title="Tokyo Lights", destination="Tokyo", price=5000,
                             valid_from=date(2025, 1, 1), valid_until=date(2025, 12, 31),
                             package_type="city", meal_plan="breakfast", hotel_rating=4)
        assert _engine().rank(criteria, [_candidate(item)]) == []

    def test_total_gate(self):
        criteria = paris_request()
        item = InventoryItem(title="Paris off-season", destination="Nice",
                             highlights=["Paris"], price=20000,
                             valid_from=date(2026, 1, 1), valid_until=date(2026, 2, 1),
                             min_pax=20)
        # 20 + 0 + 5 + 3 = 28
        assert _engine().rank(criteria, [_candidate(item)]) == []

    def test_ties_keep_discovery_order(self):
        items = [InventoryItem(id=f"p{i}", title=f"Paris {i}", destination="Paris", price=5000)
                 for i in range(3)]
        ranked = _engine().rank(paris_request(), [_candidate(i) for i in items])
        assert [m.candidate_id for m in ranked] == ["p0", "p1", "p2"]
        assert len({m.total for m in ranked}) == 1

    def test_sorted_descending_and_truncated(self):
        prices = [9000, 5000, 7000, 5400, 6000, 4900, 6300]
        items = [InventoryItem(id=f"p{i}", title=f"Paris {i}", destination="Paris", price=p)
                 for i, p in enumerate(prices)]
        ranked = _engine().rank(paris_request(), [_candidate(i) for i in items])

        totals = [m.total for m in ranked]
        assert len(ranked) == 5
        assert totals == sorted(totals, reverse=True)
        assert "p0" not in [m.candidate_id for m in ranked]

    def test_dedup_first_seen_wins(self):
        from matching.engine import InventoryCandidate, dedupe
        offer = SupplierOffer(id="o1", title="Paris Week", destination="Paris")
        itinerary = CatalogItinerary(id="c1", title="paris week ", destination="PARIS")
        unique = dedupe([
            InventoryCandidate(offer, SourceType.SUPPLIER_OFFER),
            InventoryCandidate(itinerary, SourceType.CATALOG_ITINERARY),
        ])
        assert [c.item.id for c in unique] == ["o1"]
