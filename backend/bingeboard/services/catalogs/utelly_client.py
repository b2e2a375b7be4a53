"""
Utelly client for BingeBoard (availability catalog, served through RapidAPI).
Free-text lookup returns titles with the platforms that stream them; a TMDB id is
only present when Utelly carries it in external_ids.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from bingeboard.core.config import Settings, settings as default_settings
from bingeboard.errors import CatalogAuthError
from bingeboard.schemas import Candidate, SourceTag, StreamingAvailability
from bingeboard.services.catalogs.base import CatalogClient

logger = logging.getLogger(__name__)


class StreamingLocation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    display_name: str = ""
    name: str = ""
    url: Optional[str] = None
    icon: Optional[str] = None


class UtellyResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    picture: Optional[str] = None
    locations: List[StreamingLocation] = Field(default_factory=list)
    weight: float = 0.0
    external_ids: Dict[str, Any] = Field(default_factory=dict)

    @property
    def tmdb_id(self) -> Optional[int]:
        ref = self.external_ids.get("tmdb")
        raw = ref.get("id") if isinstance(ref, dict) else ref
        try:
            return int(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def platform_names(self) -> List[str]:
        return [loc.display_name for loc in self.locations if loc.display_name]

    def to_candidate(self, canonical_id: Optional[int], genre: str, confidence: int, reason: str,
                     score: float, affiliate_platforms: int = 0) -> Candidate:
        return Candidate(
            source=SourceTag.UTELLY,
            external_id=self.id,
            canonical_id=canonical_id,
            title=self.name,
            poster_path=self.picture or "",
            # genre is inferred from the search term
            genres=[genre] if genre else [],
            availability=StreamingAvailability(
                total_platforms=len(self.locations),
                affiliate_platforms=affiliate_platforms,
                top_platforms=self.platform_names[:3],
            ),
            confidence=confidence,
            reason=reason,
            score=score,
        )


class UtellyClient(CatalogClient):
    source = "utelly"

    def __init__(self, api_key: Optional[str] = None, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        cfg = settings or default_settings
        super().__init__(f"https://{cfg.utelly_host}", timeout=cfg.http_timeout_seconds, transport=transport)
        self.api_key = api_key if api_key is not None else cfg.utelly_api_key
        self.host = cfg.utelly_host
        self.country = cfg.utelly_country

    async def search(self, term: str, country: Optional[str] = None) -> List[UtellyResult]:
        if not self.api_key:
            raise CatalogAuthError("Utelly API key not configured", source=self.source)
        data = await self._get_json(
            "/lookup",
            params={"term": term, "country": country or self.country},
            headers={"X-RapidAPI-Key": self.api_key, "X-RapidAPI-Host": self.host},
        )
        results = []
        for raw in (data.get("results") if isinstance(data, dict) else None) or []:
            if not isinstance(raw, dict) or "id" not in raw:
                continue
            try:
                results.append(UtellyResult.model_validate(raw))
            except ValueError as e:
                logger.debug(f"Skipping malformed Utelly result {raw.get('id')}: {e}")
        return results
