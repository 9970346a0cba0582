"""Service wiring and FastAPI dependencies.

build_services constructs every component once at process start from Settings and
an explicit ProviderConfig; the resulting Services bundle is stored on app.state
and handed to routes through the dependencies below. Tests build their own bundle
with fakes and pass it to create_app.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from fastapi import Depends, Header, Request

from askgate.config import ProviderConfig, Settings
from askgate.db import create_directory_engine, init_db, make_sessionmaker
from askgate.directory import TenantDirectory
from askgate.embedding import OpenAIEmbedder
from askgate.errors import ForbiddenError
from askgate.generation import AnswerGenerator
from askgate.orchestrator import AskOrchestrator
from askgate.rate_limit import InMemoryRateLimitStore, RateLimiter, RedisRateLimitStore, get_client_ip, get_redis
from askgate.retrieval import DocumentRetriever
from askgate.speech import build_speech_renderer
from askgate.store import DocumentStoreFactory

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    directory: TenantDirectory
    stores: DocumentStoreFactory
    orchestrator: AskOrchestrator
    started_at: float = field(default_factory=time.time)

    def close(self) -> None:
        self.stores.dispose()


def endpoint_limits(s: Settings) -> dict:
    return {"ask": s.RATE_LIMIT_ASK, "ask_text": s.RATE_LIMIT_ASK_TEXT, "voices": s.RATE_LIMIT_VOICES}


def build_rate_limiter(s: Settings) -> RateLimiter:
    backend = s.RATE_LIMIT_BACKEND.lower()
    if backend == "redis":
        store = RedisRateLimitStore(get_redis(s.REDIS_URL))
    elif backend == "memory":
        store = InMemoryRateLimitStore()
    else:
        raise ValueError(f"Unsupported rate limit backend: {s.RATE_LIMIT_BACKEND}")
    return RateLimiter(store, window_seconds=s.RATE_LIMIT_WINDOW_SECONDS)


def build_services(s: Settings, config: Optional[ProviderConfig] = None) -> Services:
    """Construct the production component graph."""
    config = config or ProviderConfig.from_settings(s)
    engine = create_directory_engine(s.DATABASE_URL)
    init_db(engine)
    directory = TenantDirectory(make_sessionmaker(engine))
    stores = DocumentStoreFactory()
    retriever = DocumentRetriever(
        directory,
        stores,
        OpenAIEmbedder(config.embedding_provider_key, s.OPENAI_EMBEDDING_MODEL),
        config,
        match_count=s.MATCH_COUNT,
        match_threshold=s.MATCH_THRESHOLD,
        allow_default_store=s.ALLOW_DEFAULT_DATASTORE,
    )
    generator = AnswerGenerator(
        config.completion_provider_key,
        s.OPENAI_MODEL,
        max_tokens=s.MAX_OUTPUT_TOKENS,
        temperature=s.TEMPERATURE,
        suffix=s.ANSWER_SUFFIX,
    )
    orchestrator = AskOrchestrator(
        directory,
        retriever,
        generator,
        build_speech_renderer(s, config),
        build_rate_limiter(s),
        endpoint_limits(s),
    )
    if s.ALLOW_DEFAULT_DATASTORE:
        logger.warning("Default datastore fallback is enabled; unresolved tenants will read the default store")
    return Services(settings=s, directory=directory, stores=stores, orchestrator=orchestrator)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_directory(services: Services = Depends(get_services)) -> TenantDirectory:
    return services.directory


def get_orchestrator(services: Services = Depends(get_services)) -> AskOrchestrator:
    return services.orchestrator


def rate_limited(endpoint: str) -> Callable:
    """Dependency factory: authenticate the x-api-key header, then count the request
    against `endpoint`. Returns the customer id.
    """

    async def dependency(
        request: Request,
        x_api_key: Optional[str] = Header(default=None),
        services: Services = Depends(get_services),
    ) -> str:
        client_ip = get_client_ip(
            request, services.settings.TRUST_X_FORWARDED_FOR, services.settings.REAL_IP_HEADER
        )
        return await services.orchestrator.admit(endpoint, x_api_key, client_ip)

    return dependency


def require_admin(
    x_admin_key: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> None:
    """Guard management routes when ADMIN_API_KEY is configured."""
    expected = services.settings.ADMIN_API_KEY
    if expected and x_admin_key != expected:
        raise ForbiddenError("Admin access required")
