"""
Nearby-school lookup.

Given a school and a radius in miles, returns the ids of other schools whose
coordinates fall inside the radius, nearest first. Distances are great-circle
(haversine) distances computed with numpy over every school that has
coordinates.

Results are cached in-process per (school, radius) for
nearby_schools_cache_ttl seconds. Proximity relationships only change when a
school's coordinates change, so callers clear the cache explicitly then.
"""
import logging
import time
from typing import Callable, Optional

import numpy as np
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedranker.config import settings
from feedranker.models import School

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3958.8


def haversine_miles(
    lat: float, lon: float, lats: np.ndarray, lons: np.ndarray
) -> np.ndarray:
    lat1, lon1 = np.radians(lat), np.radians(lon)
    lat2, lon2 = np.radians(lats), np.radians(lons)
    a = (
        np.sin((lat2 - lat1) / 2) ** 2
        + np.cos(lat1) * np.cos(lat2) * np.sin((lon2 - lon1) / 2) ** 2
    )
    return 2 * EARTH_RADIUS_MILES * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


class ProximityClient:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cache_ttl: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._cache_ttl = cache_ttl or settings.nearby_schools_cache_ttl
        self._clock = clock
        self._cache: dict[tuple[str, float], tuple[list[str], float]] = {}

    async def _query_nearby(self, school_id: str, radius_miles: float) -> list[str]:
        async with self._session_factory() as session:
            school = await session.get(School, school_id)
            if not school or school.latitude is None or school.longitude is None:
                return []

            rows = await session.execute(
                select(School.school_id, School.latitude, School.longitude).where(
                    School.school_id != school_id,
                    School.latitude.is_not(None),
                    School.longitude.is_not(None),
                )
            )
            others = rows.all()

        if not others:
            return []

        ids = [row[0] for row in others]
        distances = haversine_miles(
            school.latitude,
            school.longitude,
            np.array([row[1] for row in others], dtype=np.float64),
            np.array([row[2] for row in others], dtype=np.float64),
        )
        order = np.argsort(distances, kind="stable")
        nearby = [ids[i] for i in order if distances[i] <= radius_miles]
        logger.info(
            "Found %d schools within %s miles of school %s",
            len(nearby), radius_miles, school_id,
        )
        return nearby

    async def get_nearby_school_ids(
        self, school_id: str, radius_miles: Optional[float] = None
    ) -> list[str]:
        radius = radius_miles or settings.proximity_radius_miles
        key = (school_id, radius)
        cached = self._cache.get(key)
        if cached and self._clock() - cached[1] < self._cache_ttl:
            logger.debug("Using cached nearby schools for %s", school_id)
            return cached[0]

        schools = await self._query_nearby(school_id, radius)
        self._cache[key] = (schools, self._clock())
        return schools

    def clear(self, school_id: str) -> None:
        for key in [k for k in self._cache if k[0] == school_id]:
            del self._cache[key]
        logger.debug("Cleared nearby schools cache for %s", school_id)

    def clear_all(self) -> None:
        self._cache.clear()
        logger.debug("Cleared all nearby schools cache")
