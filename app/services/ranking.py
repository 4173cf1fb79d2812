from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Optional, Sequence

from pydantic import ValidationError

from app.catalog import CatalogItem, ProductSource
from app.models import AccountProfile, CamelModel, EphemeralProfile, RankingPreferences, UserSkinProfile


logger = logging.getLogger("glow-core.ranking")

CATEGORY_MATCH_SCORE = 30
SKIN_TYPE_MATCH_SCORE = 25
CONCERN_MATCH_SCORE = 20
PREFERENCE_FLAG_SCORE = 10
BUDGET_MATCH_SCORE = 15
TOP_RATED_SCORE = 10
WELL_RATED_SCORE = 5
IN_STOCK_SCORE = 5
INGREDIENT_MATCH_SCORE = 20
UNSCORED_INGREDIENT_SCORE = 50

DEFAULT_LIMIT = 4
DEFAULT_MIN_SCORE = 10
CATEGORY_LIMIT = 3
ROUTINE_SLOT_LIMIT = 2
ROUTINE_SLOTS: tuple[str, ...] = ("cleanser", "serum", "moisturizer", "sunscreen")

# Inclusive bounds; neighbouring ranges overlap on purpose.
BUDGET_RANGES: dict[str, tuple[float, float]] = {
    "budget": (0, 30),
    "mid": (25, 50),
    "premium": (45, math.inf),
}

CONCERN_SYNONYMS: dict[str, tuple[str, ...]] = {
    "acne": ("acne", "breakouts", "blemishes", "pimples"),
    "aging": ("anti-aging", "fine lines", "wrinkles", "mature"),
    "dark spots": ("dark spots", "hyperpigmentation", "brightening", "uneven tone"),
    "dryness": ("hydration", "dry", "moisture", "dehydration"),
    "oiliness": ("oil control", "oily", "sebum", "shine"),
    "sensitivity": ("sensitivity", "sensitive", "redness", "irritation", "calm"),
    "pores": ("pores", "texture", "enlarged pores"),
    "dullness": ("dullness", "brightening", "radiance", "glow"),
}

_PREFERENCE_FLAGS: tuple[tuple[str, str], ...] = (
    ("cruelty_free", "Cruelty-free"),
    ("vegan", "Vegan"),
    ("fragrance_free", "Fragrance-free"),
)


class RankedProduct(CatalogItem):
    relevance_score: int
    match_reasons: tuple[str, ...] = ()


class RetrievalQuery(CamelModel):
    skin_type: Optional[str] = None
    concerns: list[str] = []
    category: Optional[str] = None
    source: Optional[ProductSource] = None


class RetrievalResult(CamelModel):
    products: list[RankedProduct]
    total_matches: int
    query: RetrievalQuery


def _concern_terms(concern: str) -> tuple[str, ...]:
    normalized = concern.strip().lower()
    return CONCERN_SYNONYMS.get(normalized, (normalized,))


def score_item(item: CatalogItem, profile: UserSkinProfile, category: Optional[str] = None) -> tuple[int, list[str]]:
    """Additive relevance score for one catalog item plus the reasons behind it."""
    score = 0
    reasons: list[str] = []

    if category and item.category.lower() == category.lower():
        score += CATEGORY_MATCH_SCORE
        reasons.append(f"Matches requested category: {category}")

    if profile.skin_type:
        wanted = profile.skin_type.lower()
        if any(st.lower() in (wanted, "all") for st in item.skin_types):
            score += SKIN_TYPE_MATCH_SCORE
            reasons.append(f"Suitable for {profile.skin_type} skin")

    matched: list[str] = []
    item_concerns = [c.lower() for c in item.concerns]
    for concern in profile.concerns:
        terms = _concern_terms(concern)
        if any(term in ic for ic in item_concerns for term in terms):
            matched.append(concern)
            score += CONCERN_MATCH_SCORE
    if matched:
        reasons.append(f"Addresses concerns: {', '.join(matched)}")

    prefs = profile.preferences
    for flag, label in _PREFERENCE_FLAGS:
        if getattr(prefs, flag) and getattr(item.preferences, flag):
            score += PREFERENCE_FLAG_SCORE
            reasons.append(label)

    bounds = BUDGET_RANGES.get(prefs.budget_range or "")
    if bounds is not None and bounds[0] <= item.price <= bounds[1]:
        score += BUDGET_MATCH_SCORE
        reasons.append(f"Within {prefs.budget_range} budget")

    if item.rating >= 4.8:
        score += TOP_RATED_SCORE
        reasons.append("Highly rated")
    elif item.rating >= 4.5:
        score += WELL_RATED_SCORE

    if item.in_stock:
        score += IN_STOCK_SCORE

    return score, reasons


def _ranked(item: CatalogItem, score: int, reasons: Sequence[str]) -> RankedProduct:
    return RankedProduct(**dict(item), relevance_score=score, match_reasons=tuple(reasons))


def _has_ingredient(item: CatalogItem, needle: str) -> bool:
    if any(needle in ing.lower() for ing in item.key_ingredients):
        return True
    return any(needle in ing.name.lower() for ing in item.active_ingredients)


def _preferences_from(raw: Mapping[str, Any]) -> RankingPreferences:
    try:
        return RankingPreferences.model_validate(dict(raw))
    except ValidationError as exc:
        logger.warning("ranking_preferences_invalid err=%s", exc.errors()[:3])
        return RankingPreferences()


def profile_from_ephemeral(profile: EphemeralProfile) -> UserSkinProfile:
    return UserSkinProfile(
        skin_type=profile.skin_type,
        concerns=list(profile.concerns),
        preferences=_preferences_from(profile.preferences),
    )


def profile_from_account(profile: AccountProfile) -> UserSkinProfile:
    return UserSkinProfile(
        skin_type=profile.skin_type,
        concerns=list(profile.concerns),
        preferences=_preferences_from(profile.preferences),
    )


class CatalogRankingEngine:
    """Pure ranking over an immutable catalog; safe to share between requests."""

    def __init__(self, catalog: Sequence[CatalogItem]) -> None:
        self._catalog: tuple[CatalogItem, ...] = tuple(catalog)

    @property
    def catalog(self) -> tuple[CatalogItem, ...]:
        return self._catalog

    def retrieve_products(
        self,
        profile: UserSkinProfile,
        *,
        category: Optional[str] = None,
        limit: int = DEFAULT_LIMIT,
        min_score: int = DEFAULT_MIN_SCORE,
        source: Optional[ProductSource] = None,
    ) -> RetrievalResult:
        scored: list[RankedProduct] = []
        for item in self._catalog:
            if source and item.source != source:
                continue
            score, reasons = score_item(item, profile, category)
            if score >= min_score:
                scored.append(_ranked(item, score, reasons))

        # Stable: equal scores keep catalog order.
        scored.sort(key=lambda p: -p.relevance_score)
        return RetrievalResult(
            products=scored[: max(0, limit)],
            total_matches=len(scored),
            query=RetrievalQuery(
                skin_type=profile.skin_type,
                concerns=list(profile.concerns),
                category=category,
                source=source,
            ),
        )

    def retrieve_by_category(self, category: str, profile: UserSkinProfile, limit: int = CATEGORY_LIMIT) -> list[RankedProduct]:
        return self.retrieve_products(profile, category=category, limit=limit).products

    def retrieve_routine_products(self, profile: UserSkinProfile) -> dict[str, list[RankedProduct]]:
        return {slot: self.retrieve_by_category(slot, profile, ROUTINE_SLOT_LIMIT) for slot in ROUTINE_SLOTS}

    def search_by_ingredient(
        self,
        ingredient: str,
        profile: Optional[UserSkinProfile] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[RankedProduct]:
        """Substring match over key and active ingredient names; a blank ingredient matches every item."""
        needle = ingredient.strip().lower()
        matches = [item for item in self._catalog if _has_ingredient(item, needle)]
        contains = f"Contains {ingredient.strip()}"

        if profile is None:
            return [_ranked(item, UNSCORED_INGREDIENT_SCORE, [contains]) for item in matches[: max(0, limit)]]

        ranked: list[RankedProduct] = []
        for item in matches:
            score, reasons = score_item(item, profile)
            ranked.append(_ranked(item, score + INGREDIENT_MATCH_SCORE, [contains, *reasons]))
        ranked.sort(key=lambda p: -p.relevance_score)
        return ranked[: max(0, limit)]
