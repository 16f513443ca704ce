import asyncio
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from app.config import Settings, get_settings
from app.db import postgres
from app.db.stores import MemoryContextStore, PricingStore, TelemetryStore, TranscriptStore
from app.db.zep import ZepClient
from app.core.background import BackgroundRunner
from app.core.memory import MemoryContextResolver
from app.core.pipeline import ChatServices
from app.core.prompt import PromptAssembler, PromptBudget
from app.core.provider import OpenAIProvider
from app.core.registry import ModelRegistry
from app.core.telemetry import TurnRecorder
from app.core.usage import UsageCalculator
from app.api import chat, system


def configure_logging(level: str) -> None:
    logger.remove()
    logger.configure(extra={"req_id": "-"})
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {extra[req_id]} | {message}",
    )


def build_services(settings: Settings) -> ChatServices:
    zep = ZepClient(settings)
    registry = ModelRegistry(PricingStore(), settings.default_model, settings.pricing_cache_ttl_s)
    memory = MemoryContextResolver(zep, MemoryContextStore())
    transcripts = TranscriptStore()
    return ChatServices(
        settings=settings,
        registry=registry,
        memory=memory,
        assembler=PromptAssembler(PromptBudget.from_settings(settings)),
        provider=OpenAIProvider(settings),
        usage=UsageCalculator(registry),
        transcripts=transcripts,
        recorder=TurnRecorder(
            TelemetryStore(),
            transcripts,
            zep,
            memory,
            refresh_on_store=settings.memory_refresh_on_store,
        ),
        background=BackgroundRunner(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting chat streaming backend...")
    logger.info(
        f"Connecting to PostgreSQL at {settings.postgres_host}:{settings.postgres_port}"
    )

    for attempt in range(10):
        try:
            await postgres.create_pool()
            break
        except Exception as e:
            if attempt < 9:
                logger.warning(
                    f"DB connection attempt {attempt + 1} failed: {e}. Retrying in 2s..."
                )
                await asyncio.sleep(2)
            else:
                logger.error("Failed to connect to database after 10 attempts")
                raise

    await postgres.apply_schema()
    services = build_services(settings)
    app.state.services = services
    logger.info(f"Chat backend ready (default model {settings.default_model})")
    yield

    await services.background.drain(settings.background_drain_timeout_s)
    await services.provider.aclose()
    await services.memory.zep.aclose()
    await postgres.close_pool()
    logger.info("Chat backend shut down")


app = FastAPI(
    title="Relay Chat API",
    version=system.VERSION,
    description="Streaming chat orchestrator with memory context, usage and cost tracking",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
)

app.include_router(chat.router)
app.include_router(system.router)


@app.get("/")
async def root():
    return {"message": "Relay Chat API", "version": system.VERSION, "docs": "/docs"}
