import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.router import api_router
from app.core.settings import get_settings
from app.db.session import SessionLocal
from app.services.broadcast import LiveCallBroadcaster
from app.services.call_extraction import CallProfileExtractor
from app.services.finalization import CallFinalizer
from app.services.live_calls import EscalationRules, LiveCallRegistry
from app.services.llm_client import LlmClient

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def build_live_call_registry(finalizer: CallFinalizer, extractor: CallProfileExtractor) -> LiveCallRegistry:
    return LiveCallRegistry(
        broadcaster=LiveCallBroadcaster(queue_size=settings.stream_queue_size),
        finalizer=finalizer,
        live_summarizer=extractor.summarize_live if settings.live_summary_enabled else None,
        escalation=EscalationRules.from_settings(settings),
        placeholder_phone=settings.placeholder_phone,
        live_summary_interval=settings.live_summary_interval_lines,
        completed_snapshot_limit=settings.completed_snapshot_limit,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    extractor = CallProfileExtractor(LlmClient(), timeout_seconds=settings.summarizer_timeout_seconds)
    finalizer = CallFinalizer(SessionLocal, extractor)
    app.state.call_finalizer = finalizer
    app.state.live_calls = build_live_call_registry(finalizer, extractor)
    logger.info("Live call engine ready (summarizer mode: %s)", settings.summarizer_mode)
    try:
        yield
    finally:
        registry: LiveCallRegistry = app.state.live_calls
        await registry.wait_for_background_tasks(timeout=settings.shutdown_grace_seconds)
        registry.broadcaster.close_all()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

origins = [o.strip() for o in settings.allow_origins.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.api_prefix)
