import os
import sys
from pathlib import Path

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CHAT_STORE_BACKEND", "memory")
os.environ.setdefault("ENV", "dev")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from cargolink.domain.chat import service as chat_service
from cargolink.domain.chat.store import InMemoryChatStore
from cargolink.infra import postgres
from cargolink.main import app
from cargolink.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from cargolink.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""API tests authenticate via X-User-Id, which is only accepted in dev mode."""
	original_env = settings.environment
	original_backend = settings.chat_store_backend
	settings.environment = "dev"
	settings.chat_store_backend = "memory"
	try:
		yield
	finally:
		settings.environment = original_env
		settings.chat_store_backend = original_backend


@pytest.fixture(autouse=True)
def chat_store():
	store = InMemoryChatStore()
	chat_service.set_store(store)
	try:
		yield store
	finally:
		chat_service.set_store(None)


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
