import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from src.core.exceptions import SessionStateError
from src.engines.media.repositories import (
    AssetRepository,
    InMemoryUploadSessionRepository,
    RedisUploadSessionRepository,
)
from src.modules.media.models import ImageAsset, MediaKind, UploadSession, UploadState, utcnow


def make_session(upload_id: str = "u1", expires_in: int = 1800, **overrides) -> UploadSession:
    now = utcnow()
    fields = dict(
        id=upload_id,
        filename="photo.jpg",
        content_type="image/jpeg",
        size_bytes=1024,
        kind=MediaKind.GALLERY,
        entity_slug="rig",
        destination_key=f"gallery/rig/uploads/{upload_id}.jpg",
        artifact_prefix="abc123def456",
        created_at=now,
        expires_at=now + timedelta(seconds=expires_in),
    )
    fields.update(overrides)
    return UploadSession(**fields)


# =============================================================================
# UploadSession state machine
# =============================================================================

def test_happy_path_transitions():
    session = make_session()
    for state in (UploadState.UPLOADED, UploadState.PROCESSING, UploadState.COMPLETED):
        session.transition(state)
    assert session.state == UploadState.COMPLETED


@pytest.mark.parametrize("path,illegal", [
    ([], UploadState.COMPLETED),
    ([UploadState.UPLOADED, UploadState.PROCESSING], UploadState.ABANDONED),
    ([UploadState.UPLOADED, UploadState.PROCESSING, UploadState.FAILED], UploadState.PROCESSING),
    ([UploadState.ABANDONED], UploadState.UPLOADED),
])
def test_illegal_transitions_raise(path, illegal):
    session = make_session()
    for state in path:
        session.transition(state)
    with pytest.raises(SessionStateError) as exc_info:
        session.transition(illegal)
    assert exc_info.value.code == 409


def test_expiry():
    session = make_session(expires_in=10)
    assert not session.is_expired()
    assert session.is_expired(utcnow() + timedelta(seconds=11))


def test_asset_storage_keys_original_first():
    asset = ImageAsset(
        bucket="local", key="gallery/rig/p.webp", mime="image/png",
        width=10, height=10, bytes=1, blurhash="x", avg_color="#000000", alt="a",
        derivatives={
            "original": {"key": "gallery/rig/p.webp", "width": 10, "height": 10, "sizeBytes": 1},
            "sizes": [{"key": "gallery/rig/p__640w.webp", "suffix": "640w"}],
        },
    )
    assert asset.storage_keys() == ["gallery/rig/p.webp", "gallery/rig/p__640w.webp"]


# =============================================================================
# In-memory session store
# =============================================================================

@pytest.mark.asyncio
async def test_in_memory_claim_is_single_use():
    repo = InMemoryUploadSessionRepository()
    await repo.create(make_session("u1"))

    assert (await repo.get("u1")).id == "u1"
    first = await repo.claim("u1")
    second = await repo.claim("u1")

    assert first is not None and first.id == "u1"
    assert second is None
    assert await repo.get("u1") is None


@pytest.mark.asyncio
async def test_in_memory_concurrent_claims_yield_one_winner():
    repo = InMemoryUploadSessionRepository()
    await repo.create(make_session("u1"))

    results = await asyncio.gather(*(repo.claim("u1") for _ in range(10)))

    assert sum(1 for r in results if r is not None) == 1


@pytest.mark.asyncio
async def test_in_memory_get_returns_a_copy():
    repo = InMemoryUploadSessionRepository()
    await repo.create(make_session("u1"))

    copy = await repo.get("u1")
    copy.transition(UploadState.UPLOADED)

    assert (await repo.get("u1")).state == UploadState.SIGNED


@pytest.mark.asyncio
async def test_in_memory_pop_expired_oldest_first_with_limit():
    repo = InMemoryUploadSessionRepository()
    await repo.create(make_session("fresh", expires_in=600))
    await repo.create(make_session("old", expires_in=-300))
    await repo.create(make_session("older", expires_in=-600))

    popped = await repo.pop_expired(limit=1)
    assert [s.id for s in popped] == ["older"]

    popped = await repo.pop_expired()
    assert [s.id for s in popped] == ["old"]
    assert len(repo) == 1
    assert await repo.pop_expired() == []


@pytest.mark.asyncio
async def test_in_memory_discard():
    repo = InMemoryUploadSessionRepository()
    await repo.create(make_session("u1"))
    await repo.discard("u1")
    await repo.discard("u1")
    assert len(repo) == 0


# =============================================================================
# Redis session store
# =============================================================================

@pytest.fixture
def redis_client():
    client = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True, 1])
    client.pipeline.return_value.__aenter__.return_value = pipe
    client.pipeline.return_value.__aexit__.return_value = False
    client.get = AsyncMock()
    client.getdel = AsyncMock()
    client.zrem = AsyncMock()
    client.zrangebyscore = AsyncMock()
    client.ping = AsyncMock(return_value=True)
    client.pipe = pipe
    return client


@pytest.mark.asyncio
async def test_redis_create_sets_ttl_and_expiry_index(redis_client):
    repo = RedisUploadSessionRepository(redis_client, retention_seconds=86400)
    session = make_session("u1", expires_in=1800)

    await repo.create(session)

    pipe = redis_client.pipe
    key, payload = pipe.set.call_args.args
    assert key == "media:upload:u1"
    assert UploadSession.model_validate_json(payload) == session
    ttl = pipe.set.call_args.kwargs["ex"]
    assert 86400 + 1795 <= ttl <= 86400 + 1800
    index_key, mapping = pipe.zadd.call_args.args
    assert index_key == "media:upload:expiry"
    assert list(mapping) == ["u1"]
    pipe.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_claim_uses_getdel(redis_client):
    repo = RedisUploadSessionRepository(redis_client)
    session = make_session("u1")
    redis_client.getdel.side_effect = [session.model_dump_json(), None]

    first = await repo.claim("u1")
    second = await repo.claim("u1")

    assert first == session
    assert second is None
    redis_client.getdel.assert_awaited_with("media:upload:u1")
    redis_client.zrem.assert_awaited_with("media:upload:expiry", "u1")


@pytest.mark.asyncio
async def test_redis_get_missing(redis_client):
    redis_client.get.return_value = None
    assert await RedisUploadSessionRepository(redis_client).get("nope") is None


@pytest.mark.asyncio
async def test_redis_pop_expired_claims_each_id(redis_client):
    repo = RedisUploadSessionRepository(redis_client)
    expired = make_session("old", expires_in=-60)
    redis_client.zrangebyscore.return_value = ["old", "raced"]
    # "raced" was claimed by someone else between the range read and the claim
    redis_client.getdel.side_effect = [expired.model_dump_json(), None]

    popped = await repo.pop_expired(limit=50)

    assert [s.id for s in popped] == ["old"]
    args = redis_client.zrangebyscore.call_args
    assert args.args[0] == "media:upload:expiry"
    assert args.kwargs == {"start": 0, "num": 50}


@pytest.mark.asyncio
async def test_redis_ping(redis_client):
    assert await RedisUploadSessionRepository(redis_client).ping() is True


# =============================================================================
# Asset repository
# =============================================================================

@pytest.fixture
async def db_session(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/assets.db")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    maker = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with maker() as session:
        yield session
    await engine.dispose()


def make_asset(**overrides) -> ImageAsset:
    fields = dict(
        bucket="local",
        key="cover/rig/abc.webp",
        kind="cover",
        entity_slug="rig",
        mime="image/jpeg",
        width=1200,
        height=1500,
        bytes=4096,
        format="WEBP",
        blurhash="LEHV6nWB2yk8pyo0adR*.7kCMdnj",
        avg_color="#112233",
        alt="A build",
        derivatives={"original": {"key": "cover/rig/abc.webp", "width": 1200, "height": 1500, "sizeBytes": 4096}, "sizes": []},
    )
    fields.update(overrides)
    return ImageAsset(**fields)


@pytest.mark.asyncio
async def test_asset_create_get_delete(db_session):
    repo = AssetRepository(db_session)

    created = await repo.create(make_asset())
    fetched = await repo.get(created.id)

    assert fetched is not None
    assert fetched.key == "cover/rig/abc.webp"
    assert fetched.derivatives["original"]["width"] == 1200

    await repo.delete(fetched)
    assert await repo.get(created.id) is None


@pytest.mark.asyncio
async def test_asset_get_missing(db_session):
    assert await AssetRepository(db_session).get("does-not-exist") is None


class RefreshFailingSession(AsyncSession):
    async def refresh(self, instance, *args, **kwargs):
        raise OperationalError("SELECT image_assets", {}, Exception("connection reset"))


@pytest.mark.asyncio
async def test_asset_create_returns_once_committed(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/assets.db")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    maker = sessionmaker(engine, class_=RefreshFailingSession, expire_on_commit=False)

    async with maker() as session:
        created = await AssetRepository(session).create(make_asset())

    assert created.created_at.tzinfo is not None
    async with maker() as session:
        fetched = await AssetRepository(session).get(created.id)
    assert fetched is not None
    assert fetched.alt == "A build"
    await engine.dispose()
