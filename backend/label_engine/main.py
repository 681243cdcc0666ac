"""AI Label Engine — FastAPI Application."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from label_engine.config import settings
from label_engine.database import async_session, init_db
from label_engine.api import accounts, processing, suggestions
from label_engine.services.classifier import classification_orchestrator
from label_engine.services.embeddings import embedding_service
from label_engine.services.processor import email_processor
from label_engine.services.similarity import similarity_index

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("ai-label-engine")

# Background sweep task handle
_sweep_task: asyncio.Task = None


async def periodic_sweep():
    """Background task that processes emails left without metadata (new or crashed mid-pipeline)."""
    while True:
        try:
            await asyncio.sleep(settings.process_interval_minutes * 60)

            result = await email_processor.process_unclassified(limit=settings.process_batch_size)
            if result.get("processed", 0) > 0 or result.get("errors", 0) > 0:
                logger.info(f"Periodic sweep: {result['processed']} processed, {result['errors']} errors")

        except asyncio.CancelledError:
            logger.info("Periodic sweep task cancelled")
            break
        except Exception as e:
            logger.error(f"Periodic sweep error: {e}")
            await asyncio.sleep(30)  # Brief pause on error before retry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    global _sweep_task

    # Startup
    logger.info("=" * 60)
    logger.info("AI Label Engine starting up")
    logger.info(f"Database: {settings.database_url.split('@')[-1]}")
    logger.info(f"LLM: gemini={'configured' if settings.gemini_configured else 'off'}, ollama={settings.ollama_model}")
    logger.info(f"RAG mode: {settings.rag_mode}, embeddings: {settings.embedding_primary} first")
    logger.info(f"Sweep interval: {settings.process_interval_minutes} min")
    logger.info("=" * 60)

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    async with async_session() as db:
        embeddings = await similarity_index.model_consistency(db)
    logger.info(f"Stored embeddings by model: {embeddings['models'] or 'none'}")

    _sweep_task = asyncio.create_task(periodic_sweep())
    logger.info("Periodic sweep task started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if _sweep_task:
        _sweep_task.cancel()
        try:
            await _sweep_task
        except asyncio.CancelledError:
            pass
    await classification_orchestrator.close()
    await embedding_service.close()
    logger.info("Shutdown complete")


# Create app
app = FastAPI(
    title="AI Label Engine",
    description="Email classification and label assignment with mailbox sync",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3100", "http://127.0.0.1:3100"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(suggestions.router)
app.include_router(processing.router)
app.include_router(accounts.router)


@app.get("/")
async def root():
    """Root endpoint — basic info."""
    return {
        "app": "AI Label Engine",
        "version": "0.1.0",
        "status": "running",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "llm": classification_orchestrator.llm_status(),
    }
