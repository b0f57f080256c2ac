import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from agents.scene_orchestrator import CHAPTER_NOT_FOUND_MESSAGE, NO_PROVIDER_MESSAGE, SceneOrchestrator
from core.config import BACKEND_ROOT, configure_logging, get_settings
from core.exceptions import GenerationError, GenerationInProgressError, StoryloomError, SynthesisError
from core.llm_client import EmbeddingProvider, LLMClient, create_llm_client_from_settings
from memory import StoryStore
from models import OutlineKind
from services.candidate_synthesis import CandidateSynthesizer, build_synthesis_context
from services.context_selection import ContextSelector
from services.rule_checker import RuleChecker
from services.scene_decomposition import SceneDecomposer
from services.setting_selection import SettingSelector
from services.task_queue import TaskQueue
from services.vectorize import register_vectorizer

settings = get_settings()
app = FastAPI(title="Storyloom API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

configure_logging(settings.log_level, settings.log_file)
logger = logging.getLogger("storyloom.api")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

data_root = (BACKEND_ROOT / settings.data_dir).resolve()

_store: Optional[StoryStore] = None
_llm_client: Optional[LLMClient] = None
_task_queue: Optional[TaskQueue] = None
_orchestrator: Optional[SceneOrchestrator] = None
_synthesizer: Optional[CandidateSynthesizer] = None


def get_store() -> StoryStore:
    global _store
    if _store is None:
        data_root.mkdir(parents=True, exist_ok=True)
        _store = StoryStore(str(data_root / "storyloom.db"))
    return _store


def get_llm_client() -> LLMClient:
    global _llm_client
    if _llm_client is None:
        _llm_client = create_llm_client_from_settings(settings)
        logger.info(
            "llm runtime provider=%s model=%s configured=%s",
            settings.llm_provider,
            _llm_client.model,
            _llm_client.is_configured,
        )
    return _llm_client


def get_task_queue() -> TaskQueue:
    global _task_queue
    if _task_queue is None:
        _task_queue = TaskQueue()
        register_vectorizer(_task_queue, get_store(), get_llm_client())
    return _task_queue


def get_embedder() -> Optional[EmbeddingProvider]:
    return get_llm_client()


def get_synthesizer() -> CandidateSynthesizer:
    global _synthesizer
    if _synthesizer is None:
        secondary = None
        if settings.secondary_model:
            secondary = create_llm_client_from_settings(settings, model=settings.secondary_model)
        _synthesizer = CandidateSynthesizer(
            get_llm_client(),
            secondary=secondary,
            attempts=settings.synthesis_attempts,
            attempt_timeout=settings.synthesis_timeout_seconds,
            max_tokens=settings.synthesis_max_tokens,
        )
    return _synthesizer


def get_orchestrator() -> SceneOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        client = get_llm_client()
        store = get_store()
        _orchestrator = SceneOrchestrator(
            repository=store,
            completion=client,
            decomposer=SceneDecomposer(store),
            context_selector=ContextSelector(client),
            setting_selector=SettingSelector(client, max_count=settings.setting_max_count),
            rule_checker=RuleChecker(),
            task_queue=get_task_queue(),
            character_cap=settings.character_cap,
            character_floor=settings.character_floor,
            continuity_max_chapters=settings.continuity_max_chapters,
            continuity_token_budget=settings.continuity_token_budget,
            setting_max_count=settings.setting_max_count,
            setting_token_budget=settings.setting_token_budget,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )
    return _orchestrator


@app.get("/api/chapters/{chapter_id}/generate")
async def generate_chapter_stream(
    chapter_id: str,
    request: Request,
    orchestrator: SceneOrchestrator = Depends(get_orchestrator),
):
    logger.info("generate stream start chapter_id=%s", chapter_id)

    async def event_stream():
        events = orchestrator.generate(chapter_id)
        try:
            async for event in events:
                if await request.is_disconnected():
                    logger.info("generate stream client disconnected chapter_id=%s", chapter_id)
                    break
                yield event.to_sse()
        finally:
            await events.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/api/chapters/{chapter_id}/generate")
async def generate_chapter(
    chapter_id: str,
    orchestrator: SceneOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.generate_chapter(chapter_id)
    except GenerationInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except GenerationError as exc:
        status_code = 404 if str(exc) == CHAPTER_NOT_FOUND_MESSAGE else 400
        raise HTTPException(status_code=status_code, detail=str(exc))


class SynthesizeOutlinesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: OutlineKind = OutlineKind.VOLUME
    brief: str = Field(min_length=1)
    target_count: int = Field(default=3, ge=1, le=30, alias="targetCount")
    volume_id: Optional[str] = Field(default=None, alias="volumeId")
    theme_tags: List[str] = Field(default_factory=list, alias="themeTags")


@app.post("/api/projects/{project_id}/outlines/synthesize")
async def synthesize_outlines(
    project_id: str,
    req: SynthesizeOutlinesRequest,
    synthesizer: CandidateSynthesizer = Depends(get_synthesizer),
    store: StoryStore = Depends(get_store),
    embedder: Optional[EmbeddingProvider] = Depends(get_embedder),
):
    if not getattr(synthesizer.primary, "is_configured", True):
        raise HTTPException(status_code=503, detail=NO_PROVIDER_MESSAGE)
    logger.info(
        "synthesize start project_id=%s kind=%s target=%d",
        project_id,
        req.kind.value,
        req.target_count,
    )
    context = await asyncio.to_thread(
        build_synthesis_context,
        store,
        project_id,
        req.kind,
        req.brief,
        req.target_count,
        ContextSelector(embedder),
        SettingSelector(embedder, max_count=settings.setting_max_count, token_budget=settings.setting_token_budget),
        req.volume_id,
        req.theme_tags,
    )
    try:
        result = await synthesizer.synthesize(context, req.target_count)
    except SynthesisError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {
        "success": True,
        "outlines": [outline.to_wire() for outline in result.outlines],
        "baseSetIndex": result.base_set_index,
        "setMeans": result.set_means,
        "attempts": [attempt.model_dump(mode="json") for attempt in result.attempts],
    }


@app.get("/api/health")
async def health_check(probe: bool = False):
    client = get_llm_client()
    body = {
        "status": "healthy",
        "llm_configured": client.is_configured,
        "tasks": get_task_queue().status(),
        "timestamp": datetime.now().isoformat(),
    }
    if probe:
        try:
            body["llm_reachable"] = await asyncio.to_thread(client.check_connectivity)
        except StoryloomError as exc:
            logger.warning("health probe failed error=%s", exc)
            body["llm_reachable"] = False
            body["llm_error"] = str(exc)
    return body


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
