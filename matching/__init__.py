"""
Matching — scores inventory against a customer's request.

  MatchingEngine          ranked supplier offers + catalog itineraries (0-100)
  CatalogItineraryMatcher required-field check and the itinerary workflow decision
"""
from matching.engine import InventoryCandidate, MatchingEngine, dedupe
from matching.itinerary import CatalogItineraryMatcher, validate_required_fields

__all__ = [
    "InventoryCandidate", "MatchingEngine", "dedupe",
    "CatalogItineraryMatcher", "validate_required_fields",
]
