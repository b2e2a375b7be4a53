"""
FusionEngine blends three catalog sources into one ranked recommendation list.
Sources:
- TMDB (primary): discover by favorite genre, similar-to viewing history
- Watchmode (secondary): trending titles, genre searches
- Utelly (tertiary): availability searches, resolved to TMDB ids

Flow:
- Fan out to the three sources concurrently, each under its own timeout; a failing
  source contributes nothing and the request carries on with the rest
- Score per source, normalize into Candidates keyed by TMDB id
- Merge duplicates (max confidence + corroboration bonus, joined reasons, "hybrid")
- Enrich with streaming availability, add the temporal-profile bonus
- Stable sort by personalized score, truncate to limit, log the output for auditing
"""
from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from bingeboard.core.config import Settings, settings as default_settings
from bingeboard.core.metrics import MetricsSink, NullMetricsSink, Timer
from bingeboard.schemas import (
    Candidate,
    FusedRecommendation,
    SourceTag,
    SOURCE_ORDER,
    UserPreferences,
)
from bingeboard.services.availability import has_affiliate_support
from bingeboard.services.catalogs.tmdb_client import genre_id_for
from bingeboard.services.scoring import (
    count_genre_matches,
    score_tmdb_show,
    score_utelly_result,
    score_watchmode_title,
)

logger = logging.getLogger(__name__)

FUSION_LOG_METHOD = "fusion_recommendation"

# Confidence each source pass assigns to its candidates (0-100)
CONFIDENCE_TMDB_GENRE = 85
CONFIDENCE_TMDB_SIMILAR = 90
CONFIDENCE_WATCHMODE_TRENDING = 75
CONFIDENCE_WATCHMODE_GENRE = 70
CONFIDENCE_UTELLY = 60

FAVORITE_GENRES_PRIMARY = 3
FAVORITE_GENRES_SECONDARY = 2
HISTORY_SEEDS = 3
SIMILAR_PER_SEED = 2
WATCHMODE_SEARCH_PER_GENRE = 3
ENRICH_CONCURRENCY = 5

QUOTA_KEYS = {
    SourceTag.TMDB: "primary",
    SourceTag.WATCHMODE: "secondary",
    SourceTag.UTELLY: "tertiary",
}


def source_quota(limit: int, share: float) -> int:
    return max(1, int(limit * share))


def merge_candidates(candidates: List[Candidate], corroboration_bonus: float = 10,
                     delimiter: str = " • ") -> List[FusedRecommendation]:
    """Deduplicate by canonical id, keeping first-appearance order.

    Every later candidate for an id raises its confidence to
    max(existing, new) + corroboration_bonus and marks it hybrid. The fused
    confidence is not capped.
    """
    fused: Dict[int, FusedRecommendation] = {}
    for c in candidates:
        if c.canonical_id is None:
            logger.debug(f"Dropping {c.source.value} candidate without canonical id: {c.title}")
            continue

        existing = fused.get(c.canonical_id)
        if existing is None:
            fused[c.canonical_id] = FusedRecommendation(
                canonical_id=c.canonical_id,
                title=c.title,
                kind=c.kind,
                overview=c.overview,
                poster_path=c.poster_path,
                backdrop_path=c.backdrop_path,
                first_air_date=c.first_air_date,
                release_year=c.release_year,
                genres=list(c.genres),
                networks=list(c.networks),
                vote_average=c.rating,
                popularity=c.popularity,
                source=c.source,
                sources=[c.source],
                confidence=c.confidence,
                reason=c.reason,
                streaming_availability=c.availability,
                personalized_score=c.score,
            )
            continue

        if c.source not in existing.sources:
            existing.sources.append(c.source)
        existing.source = SourceTag.HYBRID
        existing.confidence = int(max(existing.confidence, c.confidence) + corroboration_bonus)
        existing.personalized_score = max(existing.personalized_score, c.score)

        if c.reason and c.reason not in existing.reason.split(delimiter):
            existing.reason = f"{existing.reason}{delimiter}{c.reason}" if existing.reason else c.reason

        # first seen wins; later sources only fill gaps
        for field in ("overview", "poster_path", "backdrop_path", "first_air_date"):
            if not getattr(existing, field) and getattr(c, field):
                setattr(existing, field, getattr(c, field))
        if existing.release_year is None:
            existing.release_year = c.release_year
        if not existing.genres:
            existing.genres = list(c.genres)
        if not existing.networks:
            existing.networks = list(c.networks)
        if existing.streaming_availability is None:
            existing.streaming_availability = c.availability
    return list(fused.values())


def rank(items: List[FusedRecommendation], limit: int) -> List[FusedRecommendation]:
    """Descending by score; sorted() is stable so ties keep merge order."""
    if limit <= 0:
        return []
    return sorted(items, key=lambda r: r.personalized_score, reverse=True)[:limit]


def creator_of(item: FusedRecommendation) -> Optional[str]:
    if item.streaming_availability and item.streaming_availability.top_platforms:
        return item.streaming_availability.top_platforms[0]
    if item.networks:
        return item.networks[0]
    return None


def is_exploration(item: FusedRecommendation, prefs: UserPreferences) -> bool:
    return bool(item.genres) and count_genre_matches(item.genres, prefs.favorite_genres) == 0


class FusionEngine:
    def __init__(
        self,
        tmdb=None,
        watchmode=None,
        utelly=None,
        availability=None,
        store=None,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self.tmdb = tmdb
        self.watchmode = watchmode
        self.utelly = utelly
        self.availability = availability
        self.store = store
        self.settings = settings or default_settings
        self.metrics = metrics or NullMetricsSink()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, store=None,
                      metrics: Optional[MetricsSink] = None) -> "FusionEngine":
        from bingeboard.services.availability import AvailabilityService
        from bingeboard.services.catalogs.tmdb_client import TmdbClient
        from bingeboard.services.catalogs.utelly_client import UtellyClient
        from bingeboard.services.catalogs.watchmode_client import WatchmodeClient

        cfg = settings or default_settings
        tmdb = TmdbClient(settings=cfg)
        watchmode = WatchmodeClient(settings=cfg)
        utelly = UtellyClient(settings=cfg)
        availability = AvailabilityService(tmdb=tmdb, watchmode=watchmode, utelly=utelly, settings=cfg)
        return cls(tmdb, watchmode, utelly, availability, store=store, settings=cfg, metrics=metrics)

    # --- source passes ---

    async def _gather_queries(self, source: SourceTag, queries: List[Awaitable]) -> List:
        """Run one source's sub-queries; the source fails only if every query failed."""
        if not queries:
            return []
        results = await asyncio.gather(*queries, return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors and len(errors) == len(results):
            raise errors[0]
        for e in errors:
            logger.debug(f"{source.value} query failed: {e}")
        return [[] if isinstance(r, BaseException) else r for r in results]

    async def tmdb_candidates(self, prefs: UserPreferences, quota: int) -> List[Candidate]:
        genres = [g for g in prefs.favorite_genres[:FAVORITE_GENRES_PRIMARY] if genre_id_for(g) is not None]
        seeds = [h for h in prefs.viewing_history if h.tmdb_id][:HISTORY_SEEDS]
        per_genre = max(1, quota // max(1, len(genres)))

        queries = [self.tmdb.discover_by_genre(genre_id_for(g)) for g in genres]
        queries += [self.tmdb.similar(h.tmdb_id) for h in seeds]
        results = await self._gather_queries(SourceTag.TMDB, queries)

        candidates: List[Candidate] = []
        for genre, shows in zip(genres, results[:len(genres)]):
            for show in shows[:per_genre]:
                score = score_tmdb_show(show, prefs, self.settings)
                candidates.append(show.to_candidate(CONFIDENCE_TMDB_GENRE, f"Because you like {genre}", score))
        for seed, shows in zip(seeds, results[len(genres):]):
            for show in shows[:SIMILAR_PER_SEED]:
                score = score_tmdb_show(show, prefs, self.settings)
                candidates.append(show.to_candidate(CONFIDENCE_TMDB_SIMILAR, f"Similar to {seed.title}", score))
        return candidates

    async def watchmode_candidates(self, prefs: UserPreferences, quota: int) -> List[Candidate]:
        genres = prefs.favorite_genres[:FAVORITE_GENRES_SECONDARY]
        queries = [self.watchmode.trending("tv_series", quota)]
        queries += [self.watchmode.search(f"{g} series", "tv_series") for g in genres]
        results = await self._gather_queries(SourceTag.WATCHMODE, queries)

        candidates: List[Candidate] = []
        trending = [t for t in results[0] if t.tmdb_id][:max(1, quota // 2)]
        for rank_index, title in enumerate(trending):
            score = score_watchmode_title(title, prefs, self.settings)
            candidates.append(title.to_candidate(
                CONFIDENCE_WATCHMODE_TRENDING,
                "Trending on streaming platforms",
                score,
                # trending rank approximation
                popularity=float(100 - rank_index * 5),
            ))
        for genre, titles in zip(genres, results[1:]):
            for title in [t for t in titles if t.tmdb_id][:WATCHMODE_SEARCH_PER_GENRE]:
                score = score_watchmode_title(title, prefs, self.settings)
                candidates.append(title.to_candidate(
                    CONFIDENCE_WATCHMODE_GENRE,
                    f"{genre} shows on streaming",
                    score,
                    popularity=title.critic_score or 0.0,
                ))
        return candidates

    async def _resolve(self, title: str) -> Optional[int]:
        if self.tmdb is None:
            return None
        try:
            return await self.tmdb.resolve_id(title)
        except Exception as e:
            logger.debug(f"Could not resolve TMDB id for '{title}': {e}")
            return None

    async def utelly_candidates(self, prefs: UserPreferences, quota: int) -> List[Candidate]:
        genres = prefs.favorite_genres[:FAVORITE_GENRES_SECONDARY]
        results = await self._gather_queries(
            SourceTag.UTELLY, [self.utelly.search(f"{g} TV series") for g in genres]
        )

        picked = []
        for genre, rows in zip(genres, results):
            picked += [(genre, row) for row in rows[:max(1, quota // 2)]]
        canonical_ids = await asyncio.gather(*(self._canonical_id(row) for _, row in picked))

        candidates: List[Candidate] = []
        for (genre, row), canonical_id in zip(picked, canonical_ids):
            if canonical_id is None:
                continue
            affiliates = sum(1 for p in row.platform_names if has_affiliate_support(p))
            score = score_utelly_result(row, prefs, self.settings)
            candidates.append(row.to_candidate(
                canonical_id, genre, CONFIDENCE_UTELLY, f"Streaming availability in {genre}", score,
                affiliate_platforms=affiliates,
            ))
        return candidates

    async def _canonical_id(self, row) -> Optional[int]:
        return row.tmdb_id if row.tmdb_id else await self._resolve(row.name)

    def _passes(self) -> Dict[SourceTag, Callable[[UserPreferences, int], Awaitable[List[Candidate]]]]:
        passes = {}
        if self.tmdb is not None:
            passes[SourceTag.TMDB] = self.tmdb_candidates
        if self.watchmode is not None:
            passes[SourceTag.WATCHMODE] = self.watchmode_candidates
        if self.utelly is not None:
            passes[SourceTag.UTELLY] = self.utelly_candidates
        return passes

    async def _run_pass(self, source: SourceTag, fn, prefs: UserPreferences, quota: int) -> List[Candidate]:
        try:
            async with Timer(self.metrics, f"fusion.source.{source.value}"):
                candidates = await asyncio.wait_for(fn(prefs, quota), timeout=self.settings.fusion_adapter_timeout_seconds)
            await self.metrics.increment(f"fusion.source.{source.value}.candidates", len(candidates))
            return candidates
        except asyncio.TimeoutError:
            logger.warning(f"{source.value} recommendations timed out after {self.settings.fusion_adapter_timeout_seconds}s")
            await self.metrics.increment(f"fusion.source.{source.value}.failures")
            return []
        except Exception as e:
            logger.warning(f"{source.value} recommendations failed: {e}")
            await self.metrics.increment(f"fusion.source.{source.value}.failures")
            return []

    async def collect_candidates(self, prefs: UserPreferences, limit: int) -> List[Candidate]:
        passes = self._passes()
        quotas = self.settings.fusion_source_quotas
        order = [s for s in SOURCE_ORDER if s in passes]
        results = await asyncio.gather(*(
            self._run_pass(s, passes[s], prefs, source_quota(limit, quotas.get(QUOTA_KEYS[s], 0.0)))
            for s in order
        ))
        candidates: List[Candidate] = []
        for batch in results:
            candidates.extend(batch)
        return candidates

    # --- enrichment and personalization ---

    async def enrich(self, items: List[FusedRecommendation]) -> None:
        if self.availability is None or not items:
            return
        limiter = asyncio.Semaphore(ENRICH_CONCURRENCY)

        async def enrich_one(item: FusedRecommendation):
            async with limiter:
                try:
                    availability = await self.availability.get_availability(item.canonical_id, item.title, item.kind)
                except Exception as e:
                    logger.debug(f"Failed to get streaming data for {item.title}: {e}")
                    item.streaming_availability = None
                    return
            item.streaming_availability = availability
            item.personalized_score += availability.affiliate_platforms * self.settings.fusion_affiliate_bonus

        await asyncio.gather(*(enrich_one(i) for i in items))

    async def apply_profile_bonus(self, items: List[FusedRecommendation], user_id: Optional[str]) -> None:
        if not user_id or self.store is None:
            return
        try:
            profile = await self.store.get_profile(user_id)
        except Exception as e:
            logger.debug(f"Temporal profile unavailable for {user_id}: {e}")
            return
        if profile is None or not profile.top_genres:
            return
        for item in items:
            if count_genre_matches(item.genres, profile.top_genres):
                item.personalized_score += self.settings.fusion_profile_genre_bonus

    async def log_output(self, items: List[FusedRecommendation], prefs: UserPreferences,
                         user_id: Optional[str], duration_ms: float) -> None:
        if self.store is None or not self.settings.fusion_log_output or not items:
            return
        rows = [
            {
                "method_name": FUSION_LOG_METHOD,
                "user_id": user_id,
                "duration_ms": int(duration_ms),
                "context": {
                    "canonical_id": item.canonical_id,
                    "genres": item.genres,
                    "creator": creator_of(item),
                    "release_year": item.release_year,
                    "is_exploration": is_exploration(item, prefs),
                    "demographic": prefs.demographic,
                    "source": item.source.value,
                    "score": item.personalized_score,
                },
            }
            for item in items
        ]
        try:
            await self.store.insert_logs(rows)
        except Exception as e:
            logger.warning(f"Failed to log fusion output: {e}")

    # --- entry point ---

    async def get_recommendations(self, preferences: UserPreferences, limit: int = 20,
                                  user_id: Optional[str] = None) -> List[FusedRecommendation]:
        if limit <= 0:
            return []
        logger.info(f"Starting multi-source recommendation generation (limit={limit})")
        await self.metrics.increment("fusion.requests")

        async with Timer(self.metrics, "fusion.request") as timer:
            candidates = await self.collect_candidates(preferences, limit)
            if not candidates:
                logger.warning("No candidates from any source")
                return []
            fused = merge_candidates(
                candidates,
                corroboration_bonus=self.settings.fusion_corroboration_bonus,
                delimiter=self.settings.fusion_reason_delimiter,
            )
            await self.enrich(fused)
            await self.apply_profile_bonus(fused, user_id)
            ranked = rank(fused, limit)

        await self.log_output(ranked, preferences, user_id, timer.elapsed_ms)
        logger.info(f"Fused {len(candidates)} candidates into {len(fused)} items, returning {len(ranked)}")
        return ranked
