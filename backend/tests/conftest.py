import os

# Settings are read at import time; point them at throwaway values first.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["OPENROUTER_API_KEY"] = "test-key"

from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from chatrelay.core.database import get_db, init_models
from chatrelay.core.exceptions import ProviderError
from chatrelay.core.security import create_access_token, hash_password
from chatrelay.main import create_app
from chatrelay.models.user import User
from chatrelay.services.chat_service import ChatRelay
from chatrelay.services.model_catalog import ModelCatalog

DEFAULT_MODEL = "meta-llama/llama-3.2-11b-vision-instruct:free"
GPT = "openai/gpt-4o-mini"
HAIKU = "anthropic/claude-3-haiku"

RAW_MODELS = [
    {
        "id": GPT,
        "name": "OpenAI: GPT-4o mini",
        "context_length": 128000,
        "top_provider": {"max_completion_tokens": 16384},
        "pricing": {"prompt": "0.00000015", "completion": "0.0000006"},
    },
    {
        "id": HAIKU,
        "name": "Anthropic: Claude 3 Haiku",
        "context_length": 200000,
        "top_provider": {"max_completion_tokens": 4096},
        "pricing": {"prompt": "0.00000025", "completion": "0.00000125"},
    },
]

# Monday 15 January 2024 09:30
FIXED_NOW = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)


class FakeProvider:
    """Stands in for the OpenRouter client; records every call it receives."""

    def __init__(self, reply="Hello! How can I help?", fragments=None, title="Friendly greeting"):
        self.reply = reply
        self.fragments = fragments if fragments is not None else ["Hel", "lo", "", " there"]
        self.title = title
        self.fail_complete = False
        self.fail_titles = False
        self.fail_stream_after: int | None = None
        self.complete_calls: list[tuple[list[dict], str, float]] = []
        self.stream_calls: list[tuple[list[dict], str, float]] = []

    @staticmethod
    def is_title_request(messages: list[dict]) -> bool:
        return messages[-1]["content"].startswith("Generate a short title")

    @property
    def chat_calls(self):
        return [c for c in self.complete_calls if not self.is_title_request(c[0])]

    @property
    def title_calls(self):
        return [c for c in self.complete_calls if self.is_title_request(c[0])]

    async def complete(self, messages, model, temperature):
        self.complete_calls.append((messages, model, temperature))
        if self.is_title_request(messages):
            if self.fail_titles:
                raise ProviderError("title request failed")
            return self.title
        if self.fail_complete:
            raise ProviderError("upstream returned 500")
        return self.reply

    async def stream(self, messages, model, temperature):
        self.stream_calls.append((messages, model, temperature))
        for i, fragment in enumerate(self.fragments):
            if self.fail_stream_after is not None and i >= self.fail_stream_after:
                raise ProviderError("stream interrupted")
            yield fragment


def make_catalog(raw_models=None, default_model=DEFAULT_MODEL, **kwargs) -> ModelCatalog:
    async def fetch():
        return list(RAW_MODELS if raw_models is None else raw_models)

    return ModelCatalog(fetch=fetch, default_model=default_model, **kwargs)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chatrelay.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def _make_user(session_factory, email, full_name, **profile) -> User:
    async with session_factory() as session:
        user = User(email=email, full_name=full_name, hashed_password=hash_password("password123"), **profile)
        session.add(user)
        await session.commit()
        return user


@pytest_asyncio.fixture
async def user(session_factory):
    return await _make_user(session_factory, "ada@example.com", "Ada Lovelace")


@pytest_asyncio.fixture
async def other_user(session_factory):
    return await _make_user(session_factory, "grace@example.com", "Grace Hopper")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def relay(provider, catalog, session_factory):
    return ChatRelay(provider, catalog, session_factory, clock=lambda: FIXED_NOW)


@pytest.fixture
def app(relay, catalog, session_factory):
    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.catalog = catalog
    app.state.relay = relay
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://test", headers={"Accept": "application/json"}
    ) as c:
        yield c


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def other_auth_headers(other_user):
    return {"Authorization": f"Bearer {create_access_token(other_user.id)}"}
