from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .config import DEFAULT_UPSTREAM_COLLECTION_URL
from .routing import UpstreamFetchError, fetch_collection

LOGGER = logging.getLogger("Devstack.Relay")

UPSTREAM_ERROR_MESSAGE = "Failed to fetch data from Blu-ray.com"


class HealthStatus(BaseModel):
    status: str = "ok"
    timestamp: str


class RelayError(BaseModel):
    error: str
    details: str


def _utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def create_app(
    *,
    upstream_url: str = DEFAULT_UPSTREAM_COLLECTION_URL,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    app = FastAPI(title="Blu-ray Collection Relay", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/blu-ray/collection/{user_id}")
    async def collection(user_id: str, action: str = "") -> Response:
        try:
            upstream = await fetch_collection(
                user_id,
                action or None,
                base_url=upstream_url,
                transport=upstream_transport,
            )
        except UpstreamFetchError as exc:
            LOGGER.error("Proxy error: %s", exc)
            payload = RelayError(error=UPSTREAM_ERROR_MESSAGE, details=str(exc))
            return JSONResponse(status_code=500, content=payload.model_dump())

        return Response(
            content=upstream.content,
            status_code=200,
            headers={
                "Content-Type": upstream.headers.get("content-type", "text/html"),
                "Cache-Control": "no-cache",
            },
        )

    @app.get("/health")
    async def health() -> HealthStatus:
        return HealthStatus(timestamp=_utc_timestamp())

    return app
