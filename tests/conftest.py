# tests/conftest.py
from __future__ import annotations

import os
import tempfile

# Must run before chathub.storage.database creates its engine
_DATA_DIR = tempfile.mkdtemp(prefix="chathub-tests-")
os.environ["DB_URL"] = f"sqlite:///{_DATA_DIR}/test.db"
os.environ["OLLAMA_BASE_URL"] = "http://127.0.0.1:11434"
os.environ.setdefault("LOG_FORMAT", "plain")

import uuid  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from chathub.core.settings import get_settings  # noqa: E402
from chathub.providers.model_registry import model_registry  # noqa: E402
from chathub.storage import catalog  # noqa: E402

OLLAMA_URL = "http://127.0.0.1:11434"


@pytest.fixture(autouse=True)
def fresh_registry():
    model_registry.reset()
    yield
    model_registry.reset()


@pytest.fixture
def settings():
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def seeded_catalog():
    catalog.seed_defaults()
    return catalog.find_active_names("ollama")


@pytest.fixture
def user_id() -> str:
    return f"user-{uuid.uuid4().hex[:8]}"


@pytest_asyncio.fixture
async def client(seeded_catalog, user_id):
    from apps.api.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers={"X-User-Id": user_id}) as ac:
        yield ac
