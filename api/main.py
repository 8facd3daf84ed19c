"""
FastAPI Application — HTTP front of the prompt relay.

Provides:
- Prompt submission (published to the durable prompt queue)
- Health endpoint reporting the producer's broker connection
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from config.settings import get_settings
from job_queue.producer import PromptProducer, SubmitStatus, create_producer
from models.schemas import ErrorResponse, HealthResponse, PromptSubmitRequest, SubmitAccepted

logger = structlog.get_logger()

_STATUS_CODES = {
    SubmitStatus.ACCEPTED: 202,
    SubmitStatus.REJECTED: 400,
    SubmitStatus.UNAVAILABLE: 503,
    SubmitStatus.ERROR: 500,
}


def create_app(producer: PromptProducer = None) -> FastAPI:
    """Build the application around a producer (a configured one by default)."""
    producer = producer or create_producer()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # A failed first connect is retried in the background; startup proceeds
        await producer.start()
        logger.info("prompt_api_started", queue=producer.queue_name)
        yield
        await producer.stop()
        logger.info("prompt_api_stopped")

    app = FastAPI(
        title="Prompt Relay API",
        description="Accepts prompt tasks and relays them to the worker queue",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.producer = producer

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "Backend server is running"

    @app.get("/health", response_model=HealthResponse)
    async def health():
        connected = producer.manager.is_connected
        return HealthResponse(
            status="healthy" if connected else "degraded",
            timestamp=datetime.now(timezone.utc),
            queue=producer.queue_name,
            queue_connection=producer.manager.state.value,
        )

    @app.post(
        "/api/prompts/submit",
        status_code=202,
        responses={
            202: {"model": SubmitAccepted},
            400: {"model": ErrorResponse},
            500: {"model": ErrorResponse},
            503: {"model": ErrorResponse},
        },
    )
    async def submit_prompt(req: PromptSubmitRequest):
        result = await producer.submit(
            prompt_text=req.prompt_text,
            prompt_id=req.prompt_id,
            requested_model=req.requested_model,
            enhance=req.enhance,
        )
        if result.accepted:
            body = SubmitAccepted(message=result.reason)
        else:
            body = ErrorResponse(error=result.reason)
        return JSONResponse(status_code=_STATUS_CODES[result.status], content=body.model_dump())

    logger.info("prompt_routes_mounted", prefix="/api/prompts", app=get_settings().app_name)
    return app


app = create_app()
