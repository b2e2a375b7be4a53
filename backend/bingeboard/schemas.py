"""
schemas.py

Pydantic schemas shared by the aggregator, fusion engine and fairness auditor.
"""
import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from bingeboard.utils.timezone import utc_now


class SourceTag(str, Enum):
    TMDB = "tmdb"
    WATCHMODE = "watchmode"
    UTELLY = "utelly"
    HYBRID = "hybrid"


# Merge order of the three catalog passes; ties in the final ranking keep this order
SOURCE_ORDER = (SourceTag.TMDB, SourceTag.WATCHMODE, SourceTag.UTELLY)


class ViewingHistoryEntry(BaseModel):
    show_id: int
    title: str
    tmdb_id: Optional[int] = None


class UserPreferences(BaseModel):
    favorite_genres: List[str] = Field(default_factory=list)
    preferred_networks: List[str] = Field(default_factory=list)
    watching_habits: List[str] = Field(default_factory=list)
    content_rating: Optional[str] = None
    language_preferences: List[str] = Field(default_factory=list)
    viewing_history: List[ViewingHistoryEntry] = Field(default_factory=list)
    demographic: Optional[str] = None


class UserTemporalProfile(BaseModel):
    user_id: str
    avg_session_minutes: float = 0.0
    total_watch_hours: float = 0.0
    binge_session_count: int = 0
    top_genres: List[str] = Field(default_factory=list)
    preferred_hours: List[int] = Field(default_factory=list)
    device_split: Dict[str, float] = Field(default_factory=dict)
    extra: Dict[str, object] = Field(default_factory=dict)
    last_computed_at: datetime.datetime = Field(default_factory=utc_now)

    @field_validator("preferred_hours")
    @classmethod
    def _valid_hours(cls, hours: List[int]) -> List[int]:
        bad = [h for h in hours if not 0 <= h <= 23]
        if bad:
            raise ValueError(f"hours out of range: {bad}")
        return sorted(set(hours))

    @field_validator("device_split")
    @classmethod
    def _normalize_split(cls, split: Dict[str, float]) -> Dict[str, float]:
        total = sum(split.values())
        if total <= 0:
            return {}
        return {device: value / total for device, value in split.items()}


class StreamingAvailability(BaseModel):
    total_platforms: int = 0
    affiliate_platforms: int = 0
    top_platforms: List[str] = Field(default_factory=list)


class Candidate(BaseModel):
    """One source's normalized opinion about one title."""
    source: SourceTag
    external_id: str
    canonical_id: Optional[int] = None
    title: str
    kind: str = "tv"
    overview: str = ""
    poster_path: str = ""
    backdrop_path: Optional[str] = None
    first_air_date: str = ""
    release_year: Optional[int] = None
    genres: List[str] = Field(default_factory=list)
    networks: List[str] = Field(default_factory=list)
    rating: float = 0.0  # 0-10
    popularity: float = 0.0
    critic_score: float = 0.0
    availability: Optional[StreamingAvailability] = None
    confidence: int = 0
    reason: str = ""
    score: float = 0.0


class FusedRecommendation(BaseModel):
    canonical_id: int
    title: str
    kind: str = "tv"
    overview: str = ""
    poster_path: str = ""
    backdrop_path: Optional[str] = None
    first_air_date: str = ""
    release_year: Optional[int] = None
    genres: List[str] = Field(default_factory=list)
    networks: List[str] = Field(default_factory=list)
    vote_average: float = 0.0
    popularity: float = 0.0
    source: SourceTag
    sources: List[SourceTag] = Field(default_factory=list)
    confidence: int = 0
    reason: str = ""
    streaming_availability: Optional[StreamingAvailability] = None
    personalized_score: float = 0.0


AlertType = Literal["genre_concentration", "creator_dominance", "demographic_inequity", "exploration_deficit"]
Severity = Literal["low", "medium", "high", "critical"]


class BiasAlert(BaseModel):
    type: AlertType
    severity: Severity
    message: str
    affected_users: int = 0
    recommended_action: str
    timestamp: datetime.datetime = Field(default_factory=utc_now)

    @property
    def is_dispatchable(self) -> bool:
        return self.severity in ("high", "critical")


class GenreDiversity(BaseModel):
    average_genres_per_user: float = 0.0
    genre_distribution: Dict[str, float] = Field(default_factory=dict)
    diversity_score: float = 0.0
    users: int = 0


class CreatorShare(BaseModel):
    creator: str
    percentage: float


class CreatorRepresentation(BaseModel):
    top_creators: List[CreatorShare] = Field(default_factory=list)
    concentration_index: float = 0.0
    fairness_violations: List[str] = Field(default_factory=list)


class ContentAgeBalance(BaseModel):
    recent_content: float = 0.0
    catalog_content: float = 0.0
    balance_score: float = 0.0
    sample_size: int = 0


class ExplorationComfort(BaseModel):
    familiar_content: float = 0.0
    exploration_content: float = 0.0
    exploration_score: float = 0.0
    sample_size: int = 0


class DemographicFairness(BaseModel):
    engagement_by_demographic: Dict[str, float] = Field(default_factory=dict)
    variance_score: float = 0.0
    inequity_alerts: List[str] = Field(default_factory=list)


class FairnessMetrics(BaseModel):
    genre_diversity: GenreDiversity
    creator_representation: CreatorRepresentation
    content_age_balance: ContentAgeBalance
    demographic_fairness: DemographicFairness
    exploration_comfort: ExplorationComfort


class FairnessAuditRecord(BaseModel):
    window_start: datetime.datetime
    window_end: datetime.datetime
    metrics: FairnessMetrics
    alerts: List[BiasAlert] = Field(default_factory=list)


class HealthStatus(BaseModel):
    status: Literal["healthy", "warning", "error"]
    last_run: Optional[datetime.datetime] = None
    last_run_age_hours: Optional[float] = None
    issues: List[str] = Field(default_factory=list)
