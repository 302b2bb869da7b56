"""
Instance-wide feature flags.

Flags live in the single-row `meta` table so operators can toggle them at
runtime. Reads are cached for meta_cache_ttl seconds; when the row is missing
the values from Settings apply.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedranker.config import settings
from feedranker.models import Meta

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureFlags:
    enable_school_proximity_boost: bool = True
    disable_local_timeline: bool = False

    @classmethod
    def from_settings(cls) -> "FeatureFlags":
        return cls(
            enable_school_proximity_boost=settings.enable_school_proximity_boost,
            disable_local_timeline=settings.disable_local_timeline,
        )


class MetaClient:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cache_ttl: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._cache_ttl = settings.meta_cache_ttl if cache_ttl is None else cache_ttl
        self._clock = clock
        self._cached: Optional[tuple[FeatureFlags, float]] = None

    async def get_flags(self) -> FeatureFlags:
        if self._cached and self._clock() - self._cached[1] < self._cache_ttl:
            return self._cached[0]

        async with self._session_factory() as session:
            rows = await session.execute(select(Meta).limit(1))
            meta = rows.scalars().first()

        if meta is None:
            flags = FeatureFlags.from_settings()
        else:
            flags = FeatureFlags(
                enable_school_proximity_boost=meta.enable_school_proximity_boost,
                disable_local_timeline=meta.disable_local_timeline,
            )
        self._cached = (flags, self._clock())
        return flags
