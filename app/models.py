from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


InteractionKind = Literal["click", "input", "navigation", "selection", "completion"]
TimeOfDay = Literal["morning", "evening", "both"]
EngagementLevel = Literal["low", "medium", "high"]


class CamelModel(BaseModel):
    """JSON uses camelCase keys; both spellings are accepted on input."""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


class SavedProduct(CamelModel):
    id: int
    name: str = ""
    brand: str = ""
    category: Optional[str] = None
    saved_at: str = ""


class Routine(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    time_of_day: TimeOfDay = "both"
    steps: list[dict[str, Any]] = Field(default_factory=list)
    thumbnail: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


class Location(CamelModel):
    city: str = ""
    state: str = ""
    zip: str = ""

    def is_empty(self) -> bool:
        return not (self.city or self.state or self.zip)


class Interaction(CamelModel):
    timestamp: int
    type: InteractionKind
    target: str
    data: Any = None


class SessionContext(CamelModel):
    current_page: str = "/"
    visited_pages: list[str] = Field(default_factory=list)
    completed_actions: list[str] = Field(default_factory=list)
    search_history: list[str] = Field(default_factory=list)
    viewed_products: list[str] = Field(default_factory=list)


class SessionState(CamelModel):
    session_id: str
    start_time: int
    interactions: list[Interaction] = Field(default_factory=list)
    preferences: dict[str, Any] = Field(default_factory=dict)
    context: SessionContext = Field(default_factory=SessionContext)
    skin_type: Optional[str] = None
    concerns: list[str] = Field(default_factory=list)


class EphemeralProfile(CamelModel):
    skin_type: Optional[str] = None
    concerns: list[str] = Field(default_factory=list)
    survey_answers: Optional[dict[str, Any]] = None
    saved_products: list[SavedProduct] = Field(default_factory=list)
    routines: list[Routine] = Field(default_factory=list)
    search_history: list[str] = Field(default_factory=list)
    viewed_products: list[str] = Field(default_factory=list)
    location: Optional[Location] = None
    preferences: dict[str, Any] = Field(default_factory=dict)

    @field_validator("concerns")
    @classmethod
    def _unique_concerns(cls, value: list[str]) -> list[str]:
        return _dedupe([c for c in value if c])

    def has_mergeable_data(self) -> bool:
        return bool(
            self.skin_type
            or self.concerns
            or self.saved_products
            or self.routines
            or self.search_history
            or self.viewed_products
            or self.survey_answers
            or (self.location is not None and not self.location.is_empty())
        )


class BehaviorPatterns(CamelModel):
    engagement_level: EngagementLevel
    primary_interests: list[str]
    preferred_features: list[str]
    session_duration: int
    interaction_frequency: float


class AccountProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    skin_type: Optional[str] = None
    concerns: list[str] = Field(default_factory=list)
    preferences: dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[str] = None

    @field_validator("concerns", mode="before")
    @classmethod
    def _none_concerns(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("preferences", mode="before")
    @classmethod
    def _none_preferences(cls, value: Any) -> Any:
        return {} if value is None else value


class MergeResult(CamelModel):
    success: bool = False
    merged_fields: list[str] = Field(default_factory=list)
    skipped_fields: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class RankingPreferences(CamelModel):
    cruelty_free: bool = False
    vegan: bool = False
    fragrance_free: bool = False
    budget_range: Optional[str] = None

    @field_validator("budget_range", mode="before")
    @classmethod
    def _normalize_budget(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        text = value.strip().lower()
        if text == "luxury":
            return "premium"
        return text or None


class UserSkinProfile(CamelModel):
    skin_type: Optional[str] = None
    concerns: list[str] = Field(default_factory=list)
    preferences: RankingPreferences = Field(default_factory=RankingPreferences)
