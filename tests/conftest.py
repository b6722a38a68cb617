import io
import os
import tempfile

# Settings are read at import time; point everything at throwaway locations first
_TEST_ROOT = tempfile.mkdtemp(prefix="media-tests-")
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT}/media.db"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["LOCAL_STORAGE_PATH"] = os.path.join(_TEST_ROOT, "storage")
os.environ["SESSION_BACKEND"] = "memory"
os.environ["SESSION_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["LOG_FORMAT_JSON"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image
from typing import AsyncGenerator

from src.main import app


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    # Trigger lifespan events (startup/shutdown)
    # app.router.lifespan_context(app) returns an async context manager
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


@pytest.fixture
def make_image():
    """Factory for encoded test images: make_image(width, height, format="PNG", ...)."""

    def _make(width: int, height: int, format: str = "PNG", color=(200, 30, 30), mode: str = "RGB", exif=None) -> bytes:
        fill = color if mode != "RGBA" or len(color) == 4 else (*color, 255)
        img = Image.new(mode, (width, height), fill)
        buffer = io.BytesIO()
        params = {}
        if exif is not None:
            params["exif"] = exif
        img.save(buffer, format=format, **params)
        return buffer.getvalue()

    return _make
