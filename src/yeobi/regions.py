from __future__ import annotations

from typing import Optional

from .policy import DEFAULT_POLICY, PolicyTables, TIER_METRO_CITY, TIER_OTHER, TIER_SEOUL


class RegionalMatcher:
    """Maps free-text locations to metro region codes by substring keyword lookup.

    Regions are scanned in declaration order and the first region owning a keyword
    contained in the text wins. Short keywords can produce false matches inside
    longer place names; that is an accepted limitation of the heuristic.
    """

    def __init__(self, policy: Optional[PolicyTables] = None) -> None:
        self.policy = policy or DEFAULT_POLICY
        self._keywords = tuple(self.policy.metro_keywords.items())
        self._metro_cities = frozenset(self.policy.metro_cities)

    def detect_metro(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return None
        stripped = text.strip()
        if not stripped:
            return None
        for metro, keywords in self._keywords:
            for keyword in keywords:
                if keyword in stripped:
                    return metro
        return None

    def lodging_region(self, metro: Optional[str]) -> str:
        if metro == TIER_SEOUL:
            return TIER_SEOUL
        if metro in self._metro_cities:
            return TIER_METRO_CITY
        return TIER_OTHER


_default_matcher = RegionalMatcher()


def detect_metro(text: Optional[str]) -> Optional[str]:
    return _default_matcher.detect_metro(text)


def get_lodging_region(metro: Optional[str]) -> str:
    return _default_matcher.lodging_region(metro)
