"""Per-request pipeline for the ask endpoints.

States of one request:
    AUTHENTICATING -> RATE_CHECKING -> RETRIEVING -> GENERATING
        -> RENDERING (audio only) -> RESPONDING -> DONE
with ERROR reachable from every state. The first two run in AskOrchestrator.admit,
called from the route dependency before the body is handled. Nothing is retried
here; a failed request ends in ERROR and the caller decides whether to try again.

The audio variant commits its headers (including the base64 JSON side-channel in
X-Response-Metadata) only after the speech provider accepted the request. A
provider failure after that point cannot become a JSON error; the stream is cut.

This module is also the only place that shapes error responses
({"success": false, "error": ...}); askgate.main wires error_response into
FastAPI's exception handlers.
"""
import base64
import enum
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional

from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from askgate.directory import TenantDirectory
from askgate.errors import AuthError, GatewayError, InternalError, RateLimitError, describe
from askgate.generation import AnswerGenerator
from askgate.obs import span
from askgate.rate_limit import RateLimiter
from askgate.retrieval import DocumentRetriever
from askgate.schemas import AskRequest, AskTextData, dump, envelope
from askgate.speech import AudioStream, SpeechRenderer, VoiceOptions

logger = logging.getLogger(__name__)

METADATA_HEADER = "X-Response-Metadata"
SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+")


class PipelineState(str, enum.Enum):
    AUTHENTICATING = "authenticating"
    RATE_CHECKING = "rate_checking"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    RENDERING = "rendering"
    RESPONDING = "responding"
    DONE = "done"
    ERROR = "error"


@dataclass
class QueryContext:
    """Request-scoped values threaded through the pipeline; never persisted."""
    customer_id: str
    product_code: str = ""
    question: str = ""
    embedding: Optional[List[float]] = None
    records: List[Dict] = field(default_factory=list)
    answer: str = ""
    state: PipelineState = PipelineState.AUTHENTICATING
    started: float = field(default_factory=time.time)

    def enter(self, state: PipelineState) -> None:
        logger.debug(
            "Pipeline %s -> %s: customer_id=%s product_code=%s",
            self.state.value, state.value, self.customer_id, self.product_code,
        )
        self.state = state

    @property
    def elapsed_ms(self) -> int:
        return int((time.time() - self.started) * 1000)


def split_sentences(text: str) -> List[str]:
    parts = [s.strip() for s in SENTENCE_RE.findall(text)] or [text.strip()]
    return [s for s in parts if s]


def encode_metadata(ctx: QueryContext) -> str:
    """Compact side-channel summary of the answer, base64-encoded JSON."""
    payload = {
        "question": ctx.question,
        "responseText": ctx.answer,
        "customerId": ctx.customer_id,
        "productCode": ctx.product_code,
        "sentences": split_sentences(ctx.answer),
    }
    raw = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def error_response(exc: BaseException) -> JSONResponse:
    """Map any failure onto the public JSON error shape."""
    if not isinstance(exc, GatewayError):
        exc = InternalError("Internal server error")
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message},
        headers=headers,
    )


class AskOrchestrator:
    """Coordinate authentication, rate limiting, retrieval, generation and speech.

    Args:
        directory: Tenant directory used to authenticate API keys.
        retriever: Document retriever.
        generator: Answer generator.
        renderer: Speech renderer for the audio variant.
        limiter: Sliding-window rate limiter.
        limits: Ceiling per endpoint name ("ask", "ask_text", "voices").
    """

    def __init__(
        self,
        directory: TenantDirectory,
        retriever: DocumentRetriever,
        generator: AnswerGenerator,
        renderer: SpeechRenderer,
        limiter: RateLimiter,
        limits: Mapping[str, int],
    ):
        self.directory = directory
        self.retriever = retriever
        self.generator = generator
        self.renderer = renderer
        self.limiter = limiter
        self.limits = dict(limits)

    async def admit(self, endpoint: str, api_key: Optional[str], client_ip: str = "unknown") -> str:
        """Run the AUTHENTICATING and RATE_CHECKING steps for one request.

        Returns:
            str: The authenticated customer id.

        Raises:
            AuthError: Missing or unusable key.
            RateLimitError: Ceiling for `endpoint` reached inside the window.
        """
        ctx = QueryContext(customer_id="")
        try:
            ctx.customer_id = await self.authenticate(api_key)
            ctx.enter(PipelineState.RATE_CHECKING)
            self.check_rate(endpoint, ctx.customer_id or client_ip)
        except GatewayError as exc:
            self._fail(ctx, exc)
            raise
        return ctx.customer_id

    async def authenticate(self, api_key: Optional[str]) -> str:
        """Resolve the customer behind an API key.

        Raises:
            AuthError: Header missing, or key unknown/inactive/expired.
        """
        if not api_key:
            raise AuthError("API key required")
        return await run_in_threadpool(self.directory.customer_id_for_key, api_key)

    def check_rate(self, endpoint: str, identity: str) -> None:
        self.limiter.check(endpoint, identity, self.limits[endpoint])

    async def _answer(self, ctx: QueryContext) -> None:
        ctx.enter(PipelineState.RETRIEVING)
        with span("retrieve", {"customer_id": ctx.customer_id, "product_code": ctx.product_code}):
            ctx.records, ctx.embedding = await self.retriever.search(
                ctx.customer_id, ctx.product_code, ctx.question, ctx.embedding
            )
        logger.info("Product data retrieved: customer_id=%s records=%d elapsed_ms=%d",
                    ctx.customer_id, len(ctx.records), ctx.elapsed_ms)

        ctx.enter(PipelineState.GENERATING)
        with span("generate", {"records": len(ctx.records)}):
            ctx.answer = await run_in_threadpool(
                self.generator.generate, ctx.question, ctx.records, ctx.product_code
            )

    def _fail(self, ctx: QueryContext, exc: Exception) -> GatewayError:
        """Move to ERROR and attach the pipeline position to the error.

        Logging is left to the exception handlers in askgate.main, which see the
        returned error (and its __cause__ for unexpected failures).
        """
        failed_in = ctx.state
        ctx.enter(PipelineState.ERROR)
        where = {"customer_id": ctx.customer_id, "product_code": ctx.product_code, "state": failed_in.value}
        where = {k: v for k, v in where.items() if v}
        if isinstance(exc, GatewayError):
            for k, v in where.items():
                exc.context.setdefault(k, v)
            return exc
        return InternalError("Internal server error", **where)

    async def ask_text(self, customer_id: str, req: AskRequest) -> Dict[str, Any]:
        """Text-only variant: retrieve, generate, respond with JSON."""
        ctx = QueryContext(
            customer_id=customer_id, product_code=req.product_code, question=req.question,
            state=PipelineState.RATE_CHECKING,
        )
        try:
            await self._answer(ctx)
        except GatewayError as exc:
            self._fail(ctx, exc)
            raise
        except Exception as exc:
            raise self._fail(ctx, exc) from exc

        ctx.enter(PipelineState.RESPONDING)
        data = AskTextData(
            question=ctx.question,
            answer=ctx.answer,
            product_code=ctx.product_code,
            customer_id=ctx.customer_id,
            timestamp=datetime.now(timezone.utc),
        )
        ctx.enter(PipelineState.DONE)
        logger.info("Text answer completed: customer_id=%s product_code=%s total_ms=%d",
                    customer_id, ctx.product_code, ctx.elapsed_ms)
        return envelope(dump(data))

    async def ask_audio(self, customer_id: str, req: AskRequest) -> StreamingResponse:
        """Audio variant: retrieve, generate, synthesize, then stream audio/mpeg."""
        ctx = QueryContext(
            customer_id=customer_id, product_code=req.product_code, question=req.question,
            state=PipelineState.RATE_CHECKING,
        )
        options = VoiceOptions(
            voice=req.voice,
            language_code=req.language_code,
            gender=req.gender,
            speaking_rate=req.speaking_rate,
        )
        try:
            await self._answer(ctx)
            ctx.enter(PipelineState.RENDERING)
            with span("render", {"text_length": len(ctx.answer)}):
                stream = await run_in_threadpool(self.renderer.synthesize, ctx.answer, options)
        except GatewayError as exc:
            self._fail(ctx, exc)
            raise
        except Exception as exc:
            raise self._fail(ctx, exc) from exc

        ctx.enter(PipelineState.RESPONDING)
        headers = {METADATA_HEADER: encode_metadata(ctx), "Cache-Control": "no-store"}
        return StreamingResponse(self._stream(ctx, stream), media_type=stream.media_type, headers=headers)

    def _stream(self, ctx: QueryContext, stream: AudioStream) -> Iterator[bytes]:
        sent = 0
        try:
            for chunk in stream:
                sent += len(chunk)
                yield chunk
        except Exception as exc:
            # Headers are already on the wire; all that is left is to cut the body short
            self._fail(ctx, exc)
            logger.error("Audio stream aborted: %s", describe(exc, {"bytes_sent": sent}), exc_info=exc)
            raise
        finally:
            stream.close()
        ctx.enter(PipelineState.DONE)
        logger.info("Audio answer completed: customer_id=%s product_code=%s bytes=%d total_ms=%d",
                    ctx.customer_id, ctx.product_code, sent, ctx.elapsed_ms)

    async def list_voices(self) -> List[Dict]:
        return await run_in_threadpool(self.renderer.list_voices)
