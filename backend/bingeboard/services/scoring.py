"""
scoring.py

Per-source personalized scores on a 0-100 scale.

TMDB:      vote_average*10 + min(popularity/10, 20) + genre matches + recency
Watchmode: user_rating*10 + min(critic_score, 20) + network matches
           + min(sources*3, 15) + genre matches + recency
Utelly:    40 + min(locations*5, 25) + preferred-platform matches

Bonus sizes come from Settings; every score is clamped to [0, 100].
"""
from datetime import datetime
from typing import Iterable, List, Optional

from bingeboard.core.config import Settings, settings as default_settings
from bingeboard.schemas import UserPreferences
from bingeboard.services.catalogs.tmdb_client import TmdbShow, genre_id_for
from bingeboard.services.catalogs.utelly_client import UtellyResult
from bingeboard.services.catalogs.watchmode_client import WatchmodeTitle

SCORE_MIN = 0.0
SCORE_MAX = 100.0

POPULARITY_CAP = 20.0
CRITIC_CAP = 20.0
SOURCES_WEIGHT = 3.0
SOURCES_CAP = 15.0
UTELLY_BASE = 40.0
LOCATION_WEIGHT = 5.0
LOCATION_CAP = 25.0


def clamp_score(value: float, low: float = SCORE_MIN, high: float = SCORE_MAX) -> float:
    return max(low, min(high, float(value)))


def _lowered(values: Iterable[str]) -> List[str]:
    return [v.lower() for v in values if v]


def count_genre_matches(genres: Iterable[str], favorites: Iterable[str]) -> int:
    favs = set(_lowered(favorites))
    return sum(1 for g in set(_lowered(genres)) if g in favs)


def count_partial_matches(names: Iterable[str], preferred: Iterable[str]) -> int:
    """Names containing any preferred substring, case-insensitive ("HBO" matches "HBO Max")."""
    prefs = _lowered(preferred)
    return sum(1 for n in _lowered(names) if any(p in n for p in prefs))


def is_recent(year: Optional[int], years: int, now: Optional[datetime] = None) -> bool:
    if year is None:
        return False
    current = (now or datetime.now()).year
    return current - year <= years


def score_tmdb_show(show: TmdbShow, prefs: UserPreferences, settings: Optional[Settings] = None,
                    now: Optional[datetime] = None) -> float:
    cfg = settings or default_settings
    score = show.vote_average * 10
    score += min(show.popularity / 10, POPULARITY_CAP)

    # TMDB genres are matched on ids so "Thriller" and "Mystery" fans both match 9648
    favorite_ids = {genre_id_for(g) for g in prefs.favorite_genres} - {None}
    score += len(favorite_ids.intersection(show.genre_ids)) * cfg.fusion_genre_match_bonus

    if is_recent(show.release_year, cfg.fusion_recency_years, now):
        score += cfg.fusion_recency_bonus
    return clamp_score(score)


def score_watchmode_title(title: WatchmodeTitle, prefs: UserPreferences, settings: Optional[Settings] = None,
                          now: Optional[datetime] = None) -> float:
    cfg = settings or default_settings
    score = (title.user_rating or 0) * 10
    score += min(title.critic_score or 0, CRITIC_CAP)
    score += count_partial_matches(title.network_names, prefs.preferred_networks) * cfg.fusion_network_bonus
    score += min(len(title.sources) * SOURCES_WEIGHT, SOURCES_CAP)
    score += count_genre_matches(title.genre_names, prefs.favorite_genres) * cfg.fusion_genre_match_bonus
    if is_recent(title.year, cfg.fusion_recency_years, now):
        score += cfg.fusion_recency_bonus
    return clamp_score(score)


def score_utelly_result(result: UtellyResult, prefs: UserPreferences, settings: Optional[Settings] = None) -> float:
    cfg = settings or default_settings
    score = UTELLY_BASE
    score += min(len(result.locations) * LOCATION_WEIGHT, LOCATION_CAP)
    score += count_partial_matches(result.platform_names, prefs.preferred_networks) * cfg.fusion_network_bonus
    return clamp_score(score)
