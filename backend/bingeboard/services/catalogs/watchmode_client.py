"""
Watchmode client for BingeBoard (secondary catalog).
Trending titles and name search; titles carry the TMDB id used for reconciliation.
"""
import logging
from typing import Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from bingeboard.core.config import Settings, settings as default_settings
from bingeboard.errors import CatalogAuthError
from bingeboard.schemas import Candidate, SourceTag, StreamingAvailability
from bingeboard.services.catalogs.base import CatalogClient

logger = logging.getLogger(__name__)


class WatchmodeTitle(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    title: str = ""
    name: Optional[str] = None  # search results use "name"
    year: Optional[int] = None
    tmdb_id: Optional[int] = None
    plot_overview: Optional[str] = None
    image_url: Optional[str] = None
    genre_names: List[str] = Field(default_factory=list)
    network_names: List[str] = Field(default_factory=list)
    user_rating: Optional[float] = None
    critic_score: Optional[float] = None
    sources: List[Dict] = Field(default_factory=list)

    @property
    def display_title(self) -> str:
        return self.title or self.name or ""

    def to_candidate(self, confidence: int, reason: str, score: float, popularity: float = 0.0) -> Candidate:
        return Candidate(
            source=SourceTag.WATCHMODE,
            external_id=str(self.id),
            canonical_id=self.tmdb_id,
            title=self.display_title,
            overview=self.plot_overview or "",
            poster_path=self.image_url or "",
            first_air_date=str(self.year) if self.year else "",
            release_year=self.year,
            genres=list(self.genre_names),
            networks=list(self.network_names),
            rating=self.user_rating or 0.0,
            popularity=popularity,
            critic_score=self.critic_score or 0.0,
            availability=StreamingAvailability(
                total_platforms=len(self.sources),
                affiliate_platforms=0,
                top_platforms=self.network_names[:3],
            ),
            confidence=confidence,
            reason=reason,
            score=score,
        )


class WatchmodeClient(CatalogClient):
    source = "watchmode"

    def __init__(self, api_key: Optional[str] = None, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        cfg = settings or default_settings
        super().__init__(cfg.watchmode_base_url, timeout=cfg.http_timeout_seconds, transport=transport)
        self.api_key = api_key if api_key is not None else cfg.watchmode_api_key

    async def _get(self, path: str, **params):
        if not self.api_key:
            raise CatalogAuthError("Watchmode API key not configured", source=self.source)
        params["apiKey"] = self.api_key
        return await self._get_json(path, params=params)

    @staticmethod
    def _titles(rows) -> List[WatchmodeTitle]:
        titles = []
        for raw in rows or []:
            if not isinstance(raw, dict) or "id" not in raw:
                continue
            try:
                titles.append(WatchmodeTitle.model_validate(raw))
            except ValueError as e:
                logger.debug(f"Skipping malformed Watchmode title {raw.get('id')}: {e}")
        return titles

    async def trending(self, kind: str = "tv_series", limit: int = 20) -> List[WatchmodeTitle]:
        data = await self._get("/list-titles/", sort_by="popularity_desc", types=kind, limit=limit)
        return self._titles(data.get("titles"))

    async def search(self, query: str, kind: str = "tv_series") -> List[WatchmodeTitle]:
        data = await self._get("/search/", search_field="name", search_value=query, types=kind)
        return self._titles(data.get("title_results") or data.get("titles"))

    async def find_by_tmdb_id(self, tmdb_id: int, kind: str = "tv") -> Optional[WatchmodeTitle]:
        types = "movie" if kind == "movie" else "tv_series"
        data = await self._get("/search/", search_field="tmdb_id", search_value=str(tmdb_id), types=types)
        titles = self._titles(data.get("title_results") or data.get("titles"))
        return titles[0] if titles else None

    async def title_sources(self, watchmode_id: int, region: str = "US") -> List[str]:
        data = await self._get(f"/title/{watchmode_id}/sources/", regions=region)
        rows = data.get("sources") if isinstance(data, dict) else data
        return [
            s["name"] for s in rows or []
            if isinstance(s, dict) and s.get("name") and s.get("region", region) == region
        ]
