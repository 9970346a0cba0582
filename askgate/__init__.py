"""Multi-tenant product question answering service.

Submodules overview:
- main: FastAPI application factory, exception handlers, health and docs endpoints.
- routes: customer management and ask/voices routers.
- deps: service construction and FastAPI dependencies (auth, admin guard, rate limits).
- config: settings from the environment and the explicit ProviderConfig.
- db / models: directory engine, sessions and ORM tables.
- directory: tenants and API-key lifecycle.
- store: per-tenant pgvector document stores.
- embedding / retrieval / generation: the answer pipeline.
- speech: swappable text-to-speech renderers and the AudioStream producer.
- orchestrator: per-request pipeline and error response shaping.
- rate_limit: sliding-window limiter with memory and Redis stores.
- obs: OpenTelemetry spans.
- ingestion: offline product catalogue loader.
"""
