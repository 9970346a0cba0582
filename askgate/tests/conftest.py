"""Shared fixtures: an in-memory tenant directory and in-process provider fakes."""
from types import SimpleNamespace
from typing import Dict, List, Optional

import httpx
import pytest

from askgate.config import ProviderConfig, Settings
from askgate.db import create_directory_engine, init_db, make_sessionmaker
from askgate.deps import Services, endpoint_limits
from askgate.directory import TenantDirectory
from askgate.errors import UpstreamError
from askgate.generation import AnswerGenerator
from askgate.orchestrator import AskOrchestrator
from askgate.rate_limit import InMemoryRateLimitStore, RateLimiter
from askgate.retrieval import DocumentRetriever
from askgate.speech import AudioStream, FakeSpeechRenderer


class FakeDocumentStore:
    """Rows with an "embedding" key take part in vector search; the rest only match exactly."""

    def __init__(self, rows: Optional[List[Dict]] = None, error: Optional[Exception] = None):
        self.rows = list(rows or [])
        self.error = error
        self.calls: List[str] = []

    def _public(self, row: Dict) -> Dict:
        return {k: v for k, v in row.items() if k != "embedding"}

    def similarity_search(self, product_code, embedding, match_count, match_threshold):
        self.calls.append("similarity_search")
        if self.error is not None:
            raise self.error
        hits = [
            dict(self._public(r), similarity=0.9)
            for r in self.rows
            if r["product_code"] == product_code and r.get("embedding") is not None
        ]
        return hits[:match_count]

    def find_by_product_code(self, product_code, limit):
        self.calls.append("find_by_product_code")
        return [self._public(r) for r in self.rows if r["product_code"] == product_code][:limit]

    def ping(self):
        if self.error is not None:
            raise self.error
        return True


class FakeStoreFactory:
    def __init__(self, store: FakeDocumentStore, error: Optional[Exception] = None):
        self.store = store
        self.error = error
        self.requested: List[str] = []

    def for_credentials(self, credentials):
        self.requested.append(credentials.customer_id)
        if self.error is not None:
            raise self.error
        return self.store

    def for_default(self, url, key):
        return self.store if url else None

    def dispose(self):
        pass


class FakeEmbedder:
    def __init__(self, dim: int = 3, error: Optional[Exception] = None):
        self.dim = dim
        self.error = error
        self.queries: List[str] = []

    def embed_texts(self, texts):
        return [[0.1] * self.dim for _ in texts]

    def embed_query(self, text):
        self.queries.append(text)
        if self.error is not None:
            raise self.error
        return [0.1] * self.dim


class StubCompletions:
    def __init__(self, content: Optional[str]):
        self.content = content
        self.calls: List[Dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.content is None:
            return SimpleNamespace(choices=[])
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


class StubChatClient:
    """Stands in for openai.OpenAI; only chat.completions.create is used."""

    def __init__(self, content: Optional[str] = "The P1 costs 10 dollars."):
        self.chat = SimpleNamespace(completions=StubCompletions(content))

    @property
    def calls(self) -> List[Dict]:
        return self.chat.completions.calls


class RejectingSpeechRenderer(FakeSpeechRenderer):
    """Provider that refuses the request before any audio is produced."""

    def synthesize(self, text, options=None):
        raise UpstreamError("OpenAI speech error: 401 - invalid api key")


class InterruptedSpeechRenderer(FakeSpeechRenderer):
    """Provider whose stream breaks after the first chunk."""

    def __init__(self):
        super().__init__()
        self.closed = False

    def _chunks(self):
        yield b"partial"
        raise UpstreamError("Audio stream interrupted: connection reset")

    def synthesize(self, text, options=None):
        return AudioStream(self._chunks(), on_close=self._mark_closed)

    def _mark_closed(self):
        self.closed = True


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        OPENAI_API_KEY="sk-test",
        DATABASE_URL="sqlite:///:memory:",
        TTS_PROVIDER="fake",
        RATE_LIMIT_BACKEND="memory",
        ADMIN_API_KEY="",
        ENVIRONMENT="test",
    )


@pytest.fixture
def directory() -> TenantDirectory:
    engine = create_directory_engine("sqlite:///:memory:")
    init_db(engine)
    yield TenantDirectory(make_sessionmaker(engine))
    engine.dispose()


@pytest.fixture
def product_store() -> FakeDocumentStore:
    return FakeDocumentStore(
        [
            {"id": 1, "product_code": "P1", "name": "Kettle", "description": "1.7L steel kettle", "embedding": [0.1, 0.1, 0.1]},
            {"id": 2, "product_code": "P2", "name": "Toaster", "description": "Two slots", "embedding": None},
        ]
    )


@pytest.fixture
def chat_client() -> StubChatClient:
    return StubChatClient()


@pytest.fixture
def renderer() -> FakeSpeechRenderer:
    return FakeSpeechRenderer()


@pytest.fixture
def services(test_settings, directory, product_store, chat_client, renderer) -> Services:
    config = ProviderConfig.from_settings(test_settings)
    stores = FakeStoreFactory(product_store)
    retriever = DocumentRetriever(directory, stores, FakeEmbedder(), config)
    generator = AnswerGenerator("sk-test", test_settings.OPENAI_MODEL, client=chat_client)
    limiter = RateLimiter(InMemoryRateLimitStore(), window_seconds=test_settings.RATE_LIMIT_WINDOW_SECONDS)
    orchestrator = AskOrchestrator(directory, retriever, generator, renderer, limiter, endpoint_limits(test_settings))
    return Services(settings=test_settings, directory=directory, stores=stores, orchestrator=orchestrator)


@pytest.fixture
async def client(services):
    from askgate.main import create_app

    app = create_app(services)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def registered(directory):
    """Tenant t1 and its API key."""
    _, api_key = directory.register("t1", "postgresql+psycopg2://t1@store:5432/t1", "secret-t1", name="Tenant One")
    return "t1", api_key
