"""
Catalog itinerary matching — decides what to do with a complete customer request.

Pure store filtering and arithmetic, no model calls:
  1. validate required fields (destination, dates, adults, budget)
  2. search published itineraries by destination and duration (±2 days)
  3. weighted 100-point score, keep ≥ 50
  4. pick a workflow action from the best score
"""
from __future__ import annotations

import structlog
from typing import Optional

from core.collaborators import ItineraryMatcher
from database.store_base import BaseWorkflowStore
from models.schemas import (
    CatalogItinerary, ExtractedData, FieldValidation, ItineraryDecision,
    ItineraryMatch, MissingField, WorkflowAction, WorkflowDecision,
)

logger = structlog.get_logger()

GOOD_MATCH_SCORE = 70
MODERATE_MATCH_SCORE = 50
DURATION_TOLERANCE_DAYS = 2
MAX_SUGGESTIONS = 3


def validate_required_fields(extracted: ExtractedData) -> FieldValidation:
    checks = {
        "destination": bool(extracted.destination),
        "dates": bool(extracted.dates.start and extracted.dates.end),
        "travelers": bool(extracted.travelers.adults),
        "budget": bool(extracted.budget.amount),
    }
    missing = []
    if not checks["destination"]:
        missing.append(MissingField(
            field="destination",
            label="Destination (where they want to go)",
            question="Which destination would you like to visit?",
        ))
    if not checks["dates"]:
        missing.append(MissingField(
            field="dates",
            label="Travel start date and Travel end date",
            question="When would you like to travel? Please provide your preferred travel dates.",
        ))
    if not checks["travelers"]:
        missing.append(MissingField(
            field="travelers",
            label="Number of adult travelers",
            question="How many adults will be traveling?",
        ))
    if not checks["budget"]:
        missing.append(MissingField(
            field="budget",
            label="Budget amount",
            question="What is your budget for this trip?",
            priority="high",
        ))

    optional = []
    if not extracted.hotel_type:
        optional.append(MissingField(
            field="hotel_type",
            label="Hotel preference (budget/standard/premium/luxury)",
            question="What type of accommodation would you prefer?",
            priority="optional",
        ))
    if not extracted.meal_plan:
        optional.append(MissingField(
            field="meal_plan",
            label="Meal plan preference",
            question="Would you like meals included in your package?",
            priority="optional",
        ))

    return FieldValidation(
        is_valid=not missing,
        missing_fields=missing,
        optional_fields=optional,
        completeness=sum(checks.values()) / len(checks),
    )


def requested_duration(extracted: ExtractedData) -> Optional[int]:
    if extracted.dates.start and extracted.dates.end:
        return (extracted.dates.end - extracted.dates.start).days
    return extracted.duration_days


# ── Scoring (each 0-100, weighted) ───────────────────────────

def score_destination(itinerary: CatalogItinerary, wanted: Optional[str]) -> int:
    if not wanted:
        return 0
    wanted = wanted.lower()
    for place in (itinerary.destination, itinerary.country):
        place = place.lower()
        if place and (wanted in place or place in wanted):
            return 100
    if any(wanted in d.lower() for d in itinerary.additional_destinations):
        return 90
    return 0


def score_duration(itinerary: CatalogItinerary, requested: int) -> int:
    difference = abs(requested - (itinerary.duration_days or 0))
    if difference == 0:
        return 100
    if difference == 1:
        return 90
    if difference == 2:
        return 75
    if difference == 3:
        return 60
    if difference <= 5:
        return 40
    return 20


def score_budget(itinerary: CatalogItinerary, budget: float) -> int:
    if not itinerary.price:
        return 50
    percent_diff = abs(itinerary.price - budget) / budget * 100
    if percent_diff <= 10:
        return 100
    if percent_diff <= 20:
        return 85
    if percent_diff <= 30:
        return 70
    if percent_diff <= 50:
        return 50
    return 30


def score_activities(itinerary: CatalogItinerary, activities: list[str]) -> int:
    if not itinerary.highlights:
        return 50
    highlights = [h.lower() for h in itinerary.highlights]
    matched = 0
    for activity in activities:
        activity = activity.lower()
        if any(activity in h or h in activity for h in highlights):
            matched += 1
    return min(100, round(matched / len(activities) * 100))


def calculate_match_score(itinerary: CatalogItinerary, extracted: ExtractedData) -> ItineraryMatch:
    """Criteria the customer left blank contribute nothing."""
    breakdown = {"destination": score_destination(itinerary, extracted.destination)}
    score = breakdown["destination"] * 0.40

    duration = requested_duration(extracted)
    if duration is not None:
        breakdown["duration"] = score_duration(itinerary, duration)
        score += breakdown["duration"] * 0.20
    if extracted.budget.amount:
        breakdown["budget"] = score_budget(itinerary, extracted.budget.amount)
        score += breakdown["budget"] * 0.25
    if extracted.travelers.adults:
        breakdown["capacity"] = 100
        score += 100 * 0.10
    if extracted.activities:
        breakdown["activities"] = score_activities(itinerary, extracted.activities)
        score += breakdown["activities"] * 0.05

    return ItineraryMatch(
        itinerary_id=itinerary.id,
        title=itinerary.title,
        destination=itinerary.destination,
        price=itinerary.price,
        score=round(score),
        breakdown=breakdown,
    )


def determine_workflow_action(validation: FieldValidation, matches: list[ItineraryMatch]) -> WorkflowDecision:
    if not validation.is_valid:
        return WorkflowDecision(action=WorkflowAction.ASK_CUSTOMER, reason="missing_required_fields")
    if matches and matches[0].score >= GOOD_MATCH_SCORE:
        return WorkflowDecision(
            action=WorkflowAction.SEND_ITINERARIES,
            reason="good_matches_found",
            matches=matches[:MAX_SUGGESTIONS],
        )
    if matches and matches[0].score >= MODERATE_MATCH_SCORE:
        return WorkflowDecision(
            action=WorkflowAction.SEND_ITINERARIES_WITH_NOTE,
            reason="moderate_matches_found",
            matches=matches[:MAX_SUGGESTIONS],
        )
    return WorkflowDecision(action=WorkflowAction.FORWARD_TO_SUPPLIER, reason="no_matching_itineraries")


class CatalogItineraryMatcher(ItineraryMatcher):
    """Evaluates a request against the tenant's published catalog."""

    def __init__(self, store: BaseWorkflowStore):
        self._store = store

    async def search_itineraries(self, extracted: ExtractedData, tenant_id: str) -> list[ItineraryMatch]:
        itineraries = await self._store.list_catalog_itineraries(tenant_id, published_only=True)
        duration = requested_duration(extracted)

        candidates = []
        for itinerary in itineraries:
            if extracted.destination and score_destination(itinerary, extracted.destination) == 0:
                continue
            if duration is not None and itinerary.duration_days is not None \
                    and abs(itinerary.duration_days - duration) > DURATION_TOLERANCE_DAYS:
                continue
            candidates.append(calculate_match_score(itinerary, extracted))

        candidates.sort(key=lambda m: m.score, reverse=True)
        return [m for m in candidates if m.score >= MODERATE_MATCH_SCORE]

    async def evaluate_itinerary_match(self, extracted: ExtractedData, tenant_id: str) -> ItineraryDecision:
        try:
            validation = validate_required_fields(extracted)
            matches = []
            if validation.is_valid:
                matches = await self.search_itineraries(extracted, tenant_id)
            workflow = determine_workflow_action(validation, matches)
        except Exception as e:
            logger.error("itinerary_matching_failed", tenant_id=tenant_id, error=str(e))
            return ItineraryDecision(success=False, error=str(e))

        logger.info("itinerary_matching_decided",
                    tenant_id=tenant_id,
                    completeness=round(validation.completeness, 2),
                    matches=len(matches),
                    action=workflow.action.value)
        return ItineraryDecision(success=True, validation=validation, workflow=workflow)
