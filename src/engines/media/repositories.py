"""
Media Repositories

- UploadSessionRepository: short-TTL store for UploadSession records
  (Redis in deployments, in-memory for single-process development and tests)
- AssetRepository: SQLModel persistence for ImageAsset manifests
"""

import calendar
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.modules.media.models import ImageAsset, UploadSession, utcnow

logger = get_logger(__name__)


def _score(moment: datetime) -> float:
    """UTC datetime -> epoch seconds."""
    return calendar.timegm(moment.utctimetuple()) + moment.microsecond / 1_000_000


# =============================================================================
# Upload Session Store
# =============================================================================

class UploadSessionRepository(ABC):
    """
    Transient store for upload sessions.

    claim() is the only way to take a session for completion or cancellation:
    it removes the record atomically, so at most one caller ever receives it.
    """

    @abstractmethod
    async def create(self, session: UploadSession) -> UploadSession:
        pass

    @abstractmethod
    async def get(self, upload_id: str) -> Optional[UploadSession]:
        pass

    @abstractmethod
    async def claim(self, upload_id: str) -> Optional[UploadSession]:
        pass

    @abstractmethod
    async def discard(self, upload_id: str) -> None:
        pass

    @abstractmethod
    async def pop_expired(self, now: Optional[datetime] = None, limit: int = 100) -> List[UploadSession]:
        """Atomically take up to `limit` sessions whose expiry has passed."""
        pass

    async def ping(self) -> bool:
        return True


class RedisUploadSessionRepository(UploadSessionRepository):
    """Redis-backed store: one JSON value per session plus a sorted set by expiry."""

    def __init__(self, redis_client, retention_seconds: int = 86400):
        self.redis = redis_client
        self.retention_seconds = retention_seconds
        self.prefix = "media:upload"
        self.index_key = f"{self.prefix}:expiry"

    def _key(self, upload_id: str) -> str:
        return f"{self.prefix}:{upload_id}"

    @staticmethod
    def _load(raw: Optional[str]) -> Optional[UploadSession]:
        return UploadSession.model_validate_json(raw) if raw else None

    async def create(self, session: UploadSession) -> UploadSession:
        # Kept past expiry so the reaper can still find the raw upload key
        ttl = max(1, int(_score(session.expires_at) - _score(utcnow())) + self.retention_seconds)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key(session.id), session.model_dump_json(), ex=ttl)
            pipe.zadd(self.index_key, {session.id: _score(session.expires_at)})
            await pipe.execute()
        return session

    async def get(self, upload_id: str) -> Optional[UploadSession]:
        return self._load(await self.redis.get(self._key(upload_id)))

    async def claim(self, upload_id: str) -> Optional[UploadSession]:
        raw = await self.redis.getdel(self._key(upload_id))
        await self.redis.zrem(self.index_key, upload_id)
        return self._load(raw)

    async def discard(self, upload_id: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(upload_id))
            pipe.zrem(self.index_key, upload_id)
            await pipe.execute()

    async def pop_expired(self, now: Optional[datetime] = None, limit: int = 100) -> List[UploadSession]:
        cutoff = _score(now or utcnow())
        upload_ids = await self.redis.zrangebyscore(self.index_key, "-inf", cutoff, start=0, num=limit)

        expired: List[UploadSession] = []
        for upload_id in upload_ids:
            session = await self.claim(upload_id)
            if session is not None:
                expired.append(session)
        return expired

    async def ping(self) -> bool:
        return bool(await self.redis.ping())


class InMemoryUploadSessionRepository(UploadSessionRepository):
    """Process-local store. No awaits between check and pop, so claims are atomic on one loop."""

    def __init__(self):
        self._sessions: Dict[str, UploadSession] = {}

    async def create(self, session: UploadSession) -> UploadSession:
        self._sessions[session.id] = session.model_copy()
        return session

    async def get(self, upload_id: str) -> Optional[UploadSession]:
        session = self._sessions.get(upload_id)
        return session.model_copy() if session else None

    async def claim(self, upload_id: str) -> Optional[UploadSession]:
        return self._sessions.pop(upload_id, None)

    async def discard(self, upload_id: str) -> None:
        self._sessions.pop(upload_id, None)

    async def pop_expired(self, now: Optional[datetime] = None, limit: int = 100) -> List[UploadSession]:
        now = now or utcnow()
        expired_ids = sorted(
            (s.id for s in self._sessions.values() if s.is_expired(now)),
            key=lambda upload_id: self._sessions[upload_id].expires_at,
        )[:limit]
        return [self._sessions.pop(upload_id) for upload_id in expired_ids]

    def __len__(self) -> int:
        return len(self._sessions)


# =============================================================================
# Asset Repository
# =============================================================================

class AssetRepository:
    """Repository for ImageAsset manifests."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, asset: ImageAsset) -> ImageAsset:
        """Persist a manifest. This is the single commit point of a completion."""
        self.session.add(asset)
        try:
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise
        # No refresh: columns are filled client-side and sessions keep state on commit
        return asset

    async def get(self, asset_id: str) -> Optional[ImageAsset]:
        return await self.session.get(ImageAsset, asset_id)

    async def delete(self, asset: ImageAsset) -> None:
        await self.session.delete(asset)
        try:
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise
