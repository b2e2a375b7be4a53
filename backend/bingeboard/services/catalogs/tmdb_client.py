"""
TMDB client for BingeBoard (primary catalog).
- Async httpx client, API key from settings.
- Handles 429 with backoff and Retry-After.
- TMDB ids are the canonical identifiers every other source is reconciled to.
"""
import logging
from typing import Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from bingeboard.core.config import Settings, settings as default_settings
from bingeboard.errors import CatalogAuthError
from bingeboard.schemas import Candidate, SourceTag
from bingeboard.services.catalogs.base import CatalogClient

logger = logging.getLogger(__name__)

# Preference vocabulary -> TMDB TV genre id
GENRE_IDS: Dict[str, int] = {
    "Action": 10759,
    "Adventure": 10759,
    "Comedy": 35,
    "Drama": 18,
    "Crime": 80,
    "Documentary": 99,
    "Family": 10751,
    "Horror": 9648,
    "Mystery": 9648,
    "Romance": 10749,
    "Sci-Fi": 10765,
    "Thriller": 9648,
}

# TMDB TV genre id -> name in the preference vocabulary where one exists
GENRE_NAMES: Dict[int, str] = {
    10759: "Action",
    16: "Animation",
    35: "Comedy",
    80: "Crime",
    99: "Documentary",
    18: "Drama",
    10751: "Family",
    10762: "Kids",
    9648: "Mystery",
    10763: "News",
    10764: "Reality",
    10749: "Romance",
    10765: "Sci-Fi",
    10766: "Soap",
    10767: "Talk",
    10768: "War & Politics",
    37: "Western",
}


def genre_id_for(name: str) -> Optional[int]:
    for key, value in GENRE_IDS.items():
        if key.lower() == name.lower():
            return value
    return None


class TmdbShow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""
    overview: Optional[str] = ""
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
    first_air_date: Optional[str] = None
    genre_ids: List[int] = Field(default_factory=list)
    vote_average: float = 0.0
    popularity: float = 0.0

    @property
    def release_year(self) -> Optional[int]:
        if not self.first_air_date or len(self.first_air_date) < 4:
            return None
        try:
            return int(self.first_air_date[:4])
        except ValueError:
            return None

    @property
    def genre_names(self) -> List[str]:
        return [GENRE_NAMES[g] for g in self.genre_ids if g in GENRE_NAMES]

    def to_candidate(self, confidence: int, reason: str, score: float) -> Candidate:
        return Candidate(
            source=SourceTag.TMDB,
            external_id=str(self.id),
            canonical_id=self.id,
            title=self.name,
            overview=self.overview or "",
            poster_path=self.poster_path or "",
            backdrop_path=self.backdrop_path,
            first_air_date=self.first_air_date or "",
            release_year=self.release_year,
            genres=self.genre_names,
            rating=self.vote_average,
            popularity=self.popularity,
            confidence=confidence,
            reason=reason,
            score=score,
        )


class TmdbClient(CatalogClient):
    source = "tmdb"

    def __init__(self, api_key: Optional[str] = None, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        cfg = settings or default_settings
        super().__init__(cfg.tmdb_base_url, timeout=cfg.http_timeout_seconds, transport=transport, max_retries=4)
        self.api_key = api_key if api_key is not None else cfg.tmdb_api_key

    async def _get(self, path: str, **params):
        if not self.api_key:
            raise CatalogAuthError("TMDB API key not configured", source=self.source)
        params["api_key"] = self.api_key
        return await self._get_json(path, params=params)

    @staticmethod
    def _shows(data: Dict) -> List[TmdbShow]:
        shows = []
        for raw in data.get("results") or []:
            if not isinstance(raw, dict) or "id" not in raw:
                continue
            try:
                shows.append(TmdbShow.model_validate(raw))
            except ValueError as e:
                logger.debug(f"Skipping malformed TMDB result {raw.get('id')}: {e}")
        return shows

    async def discover_by_genre(self, genre_id: int, page: int = 1) -> List[TmdbShow]:
        data = await self._get(
            "/discover/tv",
            with_genres=genre_id,
            sort_by="vote_average.desc",
            **{"vote_count.gte": 100},
            page=page,
        )
        return self._shows(data)

    async def similar(self, tmdb_id: int, page: int = 1) -> List[TmdbShow]:
        return self._shows(await self._get(f"/tv/{tmdb_id}/similar", page=page))

    async def search(self, query: str) -> List[TmdbShow]:
        return self._shows(await self._get("/search/tv", query=query))

    async def resolve_id(self, title: str) -> Optional[int]:
        """Canonical id for a title: the first TMDB search hit."""
        if not title:
            return None
        results = await self.search(title)
        return results[0].id if results else None

    async def watch_providers(self, tmdb_id: int, kind: str = "tv", region: str = "US") -> List[str]:
        """Provider names offering the title in a region (flatrate, then buy, then rent)."""
        media = "movie" if kind == "movie" else "tv"
        data = await self._get(f"/{media}/{tmdb_id}/watch/providers")
        regional = (data.get("results") or {}).get(region) or {}
        names: List[str] = []
        for bucket in ("flatrate", "buy", "rent"):
            for provider in regional.get(bucket) or []:
                name = provider.get("provider_name")
                if name:
                    names.append(name)
        return names
