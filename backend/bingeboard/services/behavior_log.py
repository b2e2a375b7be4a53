"""
behavior_log.py

Reader over the user_behavior event table.

Profile includes:
- Average session length and cumulative watch hours (metadata.sessionMinutes)
- Binge sessions (metadata.consecutiveEpisodes > 1)
- Top genres from watched content (metadata.genres)
- Preferred hours of day and device split
- Time-of-day / day-of-week / seasonality distributions in the extension map
"""
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from bingeboard.core.config import Settings, settings as default_settings
from bingeboard.models import UserBehavior
from bingeboard.schemas import UserTemporalProfile
from bingeboard.utils.timezone import ensure_utc, utc_now

logger = logging.getLogger(__name__)

SESSION_ACTIONS = ("watch_start", "watch_complete")
PREFERRED_HOURS_COUNT = 3


def _time_of_day(hour: int) -> str:
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 22:
        return "evening"
    return "night"


def _season(month: int) -> str:
    # month is 1-12
    if 3 <= month <= 5:
        return "spring"
    if 6 <= month <= 8:
        return "summer"
    if 9 <= month <= 11:
        return "fall"
    return "winter"


def _normalize(counts: Counter) -> Dict[str, float]:
    total = sum(counts.values())
    if not total:
        return {}
    return {k: v / total for k, v in counts.items()}


def build_temporal_profile(user_id: str, events: List[Dict[str, Any]], top_genres: int = 5,
                           now: Optional[datetime] = None) -> UserTemporalProfile:
    """Summarize raw behavior events into a temporal profile."""
    sessions = [e for e in events if e.get("action_type") in SESSION_ACTIONS]

    minutes: List[float] = []
    binge_sessions = 0
    genres: Counter = Counter()
    hours: Counter = Counter()
    devices: Counter = Counter()
    time_of_day: Counter = Counter()
    day_of_week: Counter = Counter()
    seasonality: Counter = Counter()

    for session in sessions:
        ts = ensure_utc(session["timestamp"])
        meta = session.get("metadata") or {}
        if not isinstance(meta, dict):
            logger.warning(f"Invalid session metadata for user {user_id}; ignoring")
            meta = {}

        hours[ts.hour] += 1
        time_of_day[_time_of_day(ts.hour)] += 1
        day_of_week["weekend" if ts.weekday() >= 5 else "weekday"] += 1
        seasonality[_season(ts.month)] += 1

        session_minutes = meta.get("sessionMinutes") or 0
        if isinstance(session_minutes, (int, float)) and session_minutes > 0:
            minutes.append(float(session_minutes))
        consecutive = meta.get("consecutiveEpisodes") or 0
        if isinstance(consecutive, (int, float)) and consecutive > 1:
            binge_sessions += 1
        for genre in meta.get("genres") or []:
            if isinstance(genre, str) and genre:
                genres[genre] += 1
        device = meta.get("device")
        if isinstance(device, str) and device:
            devices[device] += 1

    return UserTemporalProfile(
        user_id=user_id,
        avg_session_minutes=float(np.mean(minutes)) if minutes else 0.0,
        total_watch_hours=float(np.sum(minutes)) / 60.0 if minutes else 0.0,
        binge_session_count=binge_sessions,
        top_genres=[g for g, _ in genres.most_common(top_genres)],
        preferred_hours=[h for h, _ in hours.most_common(PREFERRED_HOURS_COUNT)],
        device_split=dict(devices),
        extra={
            "sessions": len(sessions),
            "time_of_day": _normalize(time_of_day),
            "day_of_week": _normalize(day_of_week),
            "seasonality": _normalize(seasonality),
        },
        last_computed_at=now or utc_now(),
    )


class BehaviorLogReader:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None, settings: Optional[Settings] = None):
        if session_factory is None:
            from bingeboard.core.database import get_session_factory
            session_factory = get_session_factory()
        self._session_factory = session_factory
        self.settings = settings or default_settings

    async def list_active_users(self, since: datetime) -> List[str]:
        async with self._session_factory() as session:
            stmt = (
                select(UserBehavior.user_id)
                .where(UserBehavior.timestamp >= since)
                .distinct()
                .order_by(UserBehavior.user_id)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def compute_temporal_profile(self, user_id: str) -> UserTemporalProfile:
        since = utc_now() - timedelta(days=self.settings.aggregation_active_window_days)
        async with self._session_factory() as session:
            stmt = (
                select(UserBehavior)
                .where(UserBehavior.user_id == user_id)
                .where(UserBehavior.timestamp >= since)
                .order_by(UserBehavior.timestamp.desc())
                .limit(self.settings.behavior_events_limit)
            )
            rows = (await session.execute(stmt)).scalars().all()
        events = [
            {"action_type": r.action_type, "timestamp": r.timestamp, "metadata": r.event_metadata}
            for r in rows
        ]
        return build_temporal_profile(user_id, events, top_genres=self.settings.profile_top_genres)
