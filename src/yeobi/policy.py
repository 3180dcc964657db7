from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

import yaml


RULE_VERSION = "KR_DOMESTIC_TRAVEL_2025_01"

DAILY_ALLOWANCE = 25000
DAILY_ALLOWANCE_OFFICIAL_CAR = 12500

MEAL_ALLOWANCE = 25000
# floor(25000 / 3 / 10) * 10
MEAL_DEDUCTION = 8330
MEAL_ROUNDING_UNIT = 10

FUEL_RATE_PER_KM = 1680

DOMESTIC_SHORT = 10000
DOMESTIC_LONG = 20000

TIER_SEOUL = "서울"
TIER_METRO_CITY = "광역시"
TIER_OTHER = "기타"

LODGING_CAPS_STAFF: Dict[str, int] = {
    TIER_SEOUL: 100000,
    TIER_METRO_CITY: 80000,
    TIER_OTHER: 70000,
}

# Declaration order is the tie-break for overlapping keywords.
METRO_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "서울": ("서울", "서울특별시", "서울시"),
    "부산": ("부산", "부산광역시", "부산시"),
    "대구": ("대구", "대구광역시", "대구시"),
    "인천": ("인천", "인천광역시", "인천시"),
    "광주": ("광주", "광주광역시", "광주시"),
    "대전": ("대전", "대전광역시", "대전시"),
    "울산": ("울산", "울산광역시", "울산시"),
    "세종": ("세종", "세종특별자치시", "세종시", "정부세종청사", "세종정부청사"),
    "경기": (
        "경기", "경기도", "수원", "성남", "용인", "안양", "안산", "고양", "과천", "광명",
        "구리", "군포", "김포", "남양주", "동두천", "부천", "시흥", "안성", "양주", "양평",
        "여주", "오산", "의왕", "의정부", "이천", "파주", "평택", "포천", "하남", "화성",
    ),
    "강원": ("강원", "강원특별자치도", "강원도", "춘천", "원주", "강릉", "속초", "동해", "태백", "삼척"),
    "충북": (
        "충북", "충청북도", "청주", "충주", "제천", "괴산", "단양", "보은", "영동", "옥천",
        "음성", "진천", "증평", "오송",
    ),
    "충남": ("충남", "충청남도", "천안", "아산", "논산", "공주", "서산", "당진", "보령", "홍성", "예산", "태안", "부여"),
    "전북": ("전북", "전북특별자치도", "전라북도", "전주", "익산", "군산", "정읍", "김제", "남원", "완주"),
    "전남": ("전남", "전라남도", "목포", "여수", "순천", "나주", "광양", "무안", "해남", "담양"),
    "경북": ("경북", "경상북도", "포항", "경주", "구미", "안동", "김천", "영주", "영천", "상주", "문경", "칠곡"),
    "경남": ("경남", "경상남도", "창원", "김해", "진주", "양산", "거제", "통영", "사천", "밀양", "함안", "거창"),
    "제주": ("제주", "제주특별자치도", "제주도", "제주시", "서귀포"),
}

METRO_CITIES: Tuple[str, ...] = ("부산", "대구", "인천", "광주", "대전", "울산")

HUB_STATIONS: Tuple[str, ...] = ("서울", "용산", "수서", "영등포", "청량리", "광명")


class PolicyConfigError(ValueError):
    """Raised when a policy table file has an invalid shape."""


@dataclass(frozen=True)
class PolicyTables:
    """Immutable rate, cap and keyword tables injected into the calculators."""

    rule_version: str = RULE_VERSION
    daily_allowance: int = DAILY_ALLOWANCE
    daily_allowance_official_car: int = DAILY_ALLOWANCE_OFFICIAL_CAR
    meal_allowance: int = MEAL_ALLOWANCE
    meal_deduction: int = MEAL_DEDUCTION
    meal_rounding_unit: int = MEAL_ROUNDING_UNIT
    fuel_rate_per_km: int = FUEL_RATE_PER_KM
    domestic_short: int = DOMESTIC_SHORT
    domestic_long: int = DOMESTIC_LONG
    lodging_caps_staff: Mapping[str, int] = field(default_factory=lambda: dict(LODGING_CAPS_STAFF))
    metro_keywords: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: dict(METRO_KEYWORDS))
    metro_cities: Tuple[str, ...] = METRO_CITIES
    hub_stations: Tuple[str, ...] = HUB_STATIONS

    def lodging_cap(self, tier: str) -> int:
        caps = self.lodging_caps_staff
        return caps.get(tier, caps.get(TIER_OTHER, 0))

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "PolicyTables":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise PolicyConfigError(f"Unknown policy keys: {unknown}")

        changes: Dict[str, Any] = {}
        for key, value in values.items():
            if key == "rule_version":
                changes[key] = str(value)
            elif key == "lodging_caps_staff":
                changes[key] = _int_mapping(key, value)
            elif key == "metro_keywords":
                changes[key] = _keyword_mapping(value)
            elif key in ("metro_cities", "hub_stations"):
                if not isinstance(value, list):
                    raise PolicyConfigError(f"{key} must be a list of names")
                changes[key] = tuple(str(item) for item in value)
            else:
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    raise PolicyConfigError(f"{key} must be a non-negative integer, got {value!r}")
                changes[key] = value

        return replace(cls(), **changes)

    @classmethod
    def from_yaml(cls, path: Path | str) -> "PolicyTables":
        path = Path(path)
        with path.open("r", encoding="utf-8") as policy_file:
            loaded = yaml.safe_load(policy_file)

        if loaded is None:
            return cls()
        if not isinstance(loaded, dict):
            raise PolicyConfigError(f"Policy file must contain a dictionary at root: {path}")
        return cls.from_mapping(loaded)


def _int_mapping(key: str, value: Any) -> Dict[str, int]:
    if not isinstance(value, dict):
        raise PolicyConfigError(f"{key} must be a mapping of tier to amount")
    result: Dict[str, int] = {}
    for tier, amount in value.items():
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise PolicyConfigError(f"{key}.{tier} must be an integer")
        result[str(tier)] = amount
    return result


def _keyword_mapping(value: Any) -> Dict[str, Tuple[str, ...]]:
    if not isinstance(value, dict) or not value:
        raise PolicyConfigError("metro_keywords must be a non-empty mapping of region to keywords")
    result: Dict[str, Tuple[str, ...]] = {}
    for region, keywords in value.items():
        if not isinstance(keywords, list) or not keywords:
            raise PolicyConfigError(f"metro_keywords.{region} must be a non-empty list")
        result[str(region)] = tuple(str(kw) for kw in keywords)
    return result


DEFAULT_POLICY = PolicyTables()


__all__ = [
    "DEFAULT_POLICY",
    "PolicyConfigError",
    "PolicyTables",
    "RULE_VERSION",
    "TIER_METRO_CITY",
    "TIER_OTHER",
    "TIER_SEOUL",
]
