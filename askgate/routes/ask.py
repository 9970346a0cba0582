"""Question answering routes: audio, text and the voice catalogue."""
from fastapi import APIRouter, Depends

from askgate.deps import get_orchestrator, rate_limited
from askgate.orchestrator import AskOrchestrator
from askgate.schemas import AskRequest, envelope

router = APIRouter(tags=["ask"])


@router.post("/ask")
async def ask(
    req: AskRequest,
    customer_id: str = Depends(rate_limited("ask")),
    orchestrator: AskOrchestrator = Depends(get_orchestrator),
):
    """Answer a product question as streamed audio/mpeg.

    The text answer and its sentences travel base64-encoded in the
    X-Response-Metadata header.
    """
    return await orchestrator.ask_audio(customer_id, req)


@router.post("/ask/text")
async def ask_text(
    req: AskRequest,
    customer_id: str = Depends(rate_limited("ask_text")),
    orchestrator: AskOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.ask_text(customer_id, req)


@router.get("/voices")
async def voices(
    customer_id: str = Depends(rate_limited("voices")),
    orchestrator: AskOrchestrator = Depends(get_orchestrator),
):
    items = await orchestrator.list_voices()
    return envelope(items, count=len(items))
