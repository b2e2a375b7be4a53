"""
availability.py

Streaming availability lookup used to enrich fused recommendations.

Platforms are collected from TMDB watch providers, Watchmode title sources and a
Utelly title lookup, normalized to one naming scheme and deduplicated. Platforms
in AFFILIATE_COMMISSIONS are monetization-eligible.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from bingeboard.core.config import Settings, settings as default_settings
from bingeboard.errors import CatalogUnavailableError
from bingeboard.schemas import StreamingAvailability

logger = logging.getLogger(__name__)

# Commission rate (%) per platform with affiliate support
AFFILIATE_COMMISSIONS: Dict[str, float] = {
    "Netflix": 8.5,
    "Amazon Prime Video": 4.5,
    "Hulu": 6.0,
    "Disney Plus": 7.2,
    "Disney+": 7.2,
    "HBO Max": 9.0,
    "Max": 9.0,
    "Apple TV Plus": 5.0,
    "Apple TV+": 5.0,
    "Paramount Plus": 5.5,
    "Paramount+": 5.5,
    "Peacock": 4.8,
    "Crunchyroll": 6.5,
    "YouTube Premium": 3.2,
    "Showtime": 7.0,
    "Starz": 6.8,
}

PLATFORM_ALIASES: Dict[str, str] = {
    "Disney Plus": "Disney+",
    "Amazon Prime": "Amazon Prime Video",
    "Apple TV Plus": "Apple TV+",
    "Paramount Plus": "Paramount+",
    "HBO Max": "Max",
    "Peacock Premium": "Peacock",
    "YouTube TV": "YouTube Premium",
}

TOP_PLATFORMS = 3


def normalize_platform(name: str) -> str:
    name = (name or "").strip()
    return PLATFORM_ALIASES.get(name, name)


def has_affiliate_support(name: str) -> bool:
    return name in AFFILIATE_COMMISSIONS


def summarize_platforms(names: List[str]) -> StreamingAvailability:
    """Deduplicate (case-insensitive, first seen wins) and count affiliate platforms."""
    seen: Dict[str, str] = {}
    for raw in names:
        name = normalize_platform(raw)
        if name and name.lower() not in seen:
            seen[name.lower()] = name
    platforms = list(seen.values())
    return StreamingAvailability(
        total_platforms=len(platforms),
        affiliate_platforms=sum(1 for p in platforms if has_affiliate_support(p)),
        top_platforms=platforms[:TOP_PLATFORMS],
    )


class AvailabilityService:
    def __init__(self, tmdb=None, watchmode=None, utelly=None, settings: Optional[Settings] = None):
        self.tmdb = tmdb
        self.watchmode = watchmode
        self.utelly = utelly
        self.settings = settings or default_settings

    async def _from_tmdb(self, canonical_id: int, kind: str) -> List[str]:
        return await self.tmdb.watch_providers(canonical_id, kind=kind, region=self.settings.availability_region)

    async def _from_watchmode(self, canonical_id: int, kind: str) -> List[str]:
        title = await self.watchmode.find_by_tmdb_id(canonical_id, kind=kind)
        if title is None:
            return []
        return await self.watchmode.title_sources(title.id, region=self.settings.availability_region)

    async def _from_utelly(self, title: str) -> List[str]:
        results = await self.utelly.search(title)
        # the first hit is the closest title match
        return results[0].platform_names if results else []

    async def get_availability(self, canonical_id: int, title: str, kind: str = "tv") -> StreamingAvailability:
        """Raises CatalogUnavailableError only when every configured lookup failed."""
        lookups = []
        if self.tmdb is not None:
            lookups.append(("tmdb", self._from_tmdb(canonical_id, kind)))
        if self.watchmode is not None:
            lookups.append(("watchmode", self._from_watchmode(canonical_id, kind)))
        if self.utelly is not None and title:
            lookups.append(("utelly", self._from_utelly(title)))
        if not lookups:
            return StreamingAvailability()

        results = await asyncio.gather(*(coro for _, coro in lookups), return_exceptions=True)
        names: List[str] = []
        failures = 0
        for (source, _), result in zip(lookups, results):
            if isinstance(result, BaseException):
                failures += 1
                logger.debug(f"{source} availability failed for {canonical_id}: {result}")
                continue
            names.extend(result)

        if failures == len(lookups):
            raise CatalogUnavailableError(f"No availability source answered for {canonical_id}")
        return summarize_platforms(names)
