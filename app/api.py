from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from citewise import __version__
from citewise.config import load_app_config
from citewise.errors import CitewiseError, JobNotFound, QueryError
from citewise.logger import setup_logging
from citewise.pipeline import ResearchPipeline

setup_logging()
logger = logging.getLogger(__name__)


class ResearchRequest(BaseModel):
    query: str


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


async def sse_events(pipeline: ResearchPipeline, job_id: str) -> AsyncIterator[Dict[str, Any]]:
    """Progress events for ``job_id`` shaped for ``EventSourceResponse``."""

    subscription = await pipeline.subscribe(job_id)
    try:
        async for event in subscription:
            yield {"event": event.type.value, "id": str(event.sequence), "data": json.dumps(event.data)}
    finally:
        subscription.close()


def create_app(pipeline: Optional[ResearchPipeline] = None) -> FastAPI:
    started = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.pipeline = pipeline or ResearchPipeline.from_config(load_app_config())
        yield
        await app.state.pipeline.shutdown()

    app = FastAPI(title="citewise", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "validation_error", "request body must be a JSON object with a 'query' string")

    @app.exception_handler(CitewiseError)
    async def citewise_error(request: Request, exc: CitewiseError) -> JSONResponse:
        if isinstance(exc, QueryError):
            return _error(400, exc.code, exc.message)
        if isinstance(exc, JobNotFound):
            return _error(404, exc.code, exc.message)
        logger.error("Request failed: [%s] %s", exc.code, exc.message)
        return _error(500, "internal_error", exc.message)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__, "uptime_seconds": int(time.monotonic() - started)}

    @app.post("/v1/research", status_code=202)
    async def create_research(body: ResearchRequest, request: Request) -> dict:
        job = await request.app.state.pipeline.submit(body.query)
        return {"job_id": job.id, "status": job.status.value, "stream_url": f"/v1/jobs/{job.id}/stream"}

    @app.get("/v1/jobs")
    async def list_jobs(request: Request, limit: int = 20, offset: int = 0) -> dict:
        jobs = await request.app.state.pipeline.list_jobs(limit=min(max(limit, 1), 100), offset=max(offset, 0))
        return {"jobs": [job.model_dump(mode="json") for job in jobs]}

    @app.get("/v1/jobs/{job_id}")
    async def get_job(job_id: str, request: Request) -> dict:
        pipeline: ResearchPipeline = request.app.state.pipeline
        job = await pipeline.get_job(job_id)
        sources = await pipeline.get_sources(job_id)
        payload = job.model_dump(mode="json")
        payload["sources"] = [source.model_dump(mode="json") for source in sources]
        return payload

    @app.get("/v1/jobs/{job_id}/sources")
    async def get_sources(job_id: str, request: Request) -> dict:
        sources = await request.app.state.pipeline.get_sources(job_id)
        return {"sources": [source.model_dump(mode="json") for source in sources]}

    @app.get("/v1/jobs/{job_id}/stream")
    async def stream_job(job_id: str, request: Request) -> EventSourceResponse:
        pipeline: ResearchPipeline = request.app.state.pipeline
        await pipeline.get_job(job_id)
        return EventSourceResponse(sse_events(pipeline, job_id))

    return app


app = create_app()
