import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .config import Settings
from .feed import Feed
from .schemas import WebhookResponse
from .security import validate_token

logger = logging.getLogger(__name__)

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def get_feed(request: Request) -> Feed:
    return request.app.state.feed


async def _read_body(request: Request) -> Any:
    """Parse a JSON or form-encoded webhook body.

    Raises ``ValueError`` when the body cannot be decoded.
    """
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith(_FORM_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    raw = await request.body()
    if not raw.strip():
        return {}
    return json.loads(raw)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    if settings is None:
        settings = Settings.from_env()

    feed = Feed.from_settings(settings)
    limiter = Limiter(key_func=get_remote_address)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Result feed ready (capacity=%d, content=%s/%s)",
            feed.store.capacity,
            settings.content_format,
            feed.normalizer.layout.version,
        )
        yield
        await feed.broadcaster.close()

    app = FastAPI(title="Kiosk Result Feed", lifespan=lifespan)
    app.state.settings = settings
    app.state.feed = feed
    app.state.limiter = limiter

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    # -----------------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------------

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many webhook requests"},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": "Something went wrong"},
        )

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    @app.post("/webhook/result", response_model=WebhookResponse)
    @app.post("/api/webhook/v1/result", response_model=WebhookResponse, include_in_schema=False)
    @limiter.limit(settings.webhook_rate_limit)
    async def webhook_result(request: Request, feed: Feed = Depends(get_feed)):
        # --- Authenticate before touching the body ---
        if not validate_token(
            request.headers.get("authorization"),
            request.query_params.get("token"),
            settings.webhook_auth_token,
        ):
            raise HTTPException(
                status_code=401, detail="Invalid or missing authentication token"
            )

        try:
            body = await _read_body(request)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Malformed request body") from exc

        # --- Normalize, store, broadcast ---
        try:
            outcome = feed.ingest(body)
        except Exception:
            logger.exception("Webhook processing error")
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "message": "Failed to process analysis result",
                },
            )

        return WebhookResponse(
            success=True,
            analysisId=outcome.result.id,
            message=(
                "Fallback result created with placeholder data"
                if outcome.fallback
                else "Analysis result processed successfully"
            ),
            fallback=outcome.fallback,
        )

    @app.get("/result/latest")
    @app.get("/api/last", include_in_schema=False)
    async def latest_result(feed: Feed = Depends(get_feed)):
        latest = feed.store.latest()
        if latest is None:
            raise HTTPException(status_code=404, detail="No analysis results available")
        return latest.to_json()

    @app.get("/results")
    async def all_results(feed: Feed = Depends(get_feed)):
        return [result.to_json() for result in feed.store.all()]

    @app.get("/health")
    @app.get("/healthz", include_in_schema=False)
    async def health(feed: Feed = Depends(get_feed)):
        return {
            "ok": True,
            "queue": feed.store.size(),
            "capacity": feed.store.capacity,
            "subscribers": feed.broadcaster.subscriber_count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/config")
    async def kiosk_config():
        return {
            "typeformUrl": settings.typeform_url,
            "displaySeconds": settings.display_seconds,
            "pollIntervalSeconds": settings.poll_interval_seconds,
            "kioskTitle": settings.kiosk_title,
            "kioskSubtitle": settings.kiosk_subtitle,
        }

    @app.websocket("/ws")
    async def push_channel(ws: WebSocket):
        broadcaster = ws.app.state.feed.broadcaster
        await broadcaster.connect(ws)
        try:
            while True:
                # Inbound frames of any kind carry no meaning; reading detects
                # disconnects.
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(ws)

    return app


def serve() -> None:
    import uvicorn

    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(settings)
    logger.info("Webhook endpoint: http://localhost:%d/webhook/result", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    serve()
