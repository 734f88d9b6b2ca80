from fastapi import APIRouter, FastAPI, Query, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import logging
from typing import Optional

from config import settings, VERSION
from middleware import RateLimitMiddleware, SecurityHeadersMiddleware, SlidingWindowLimiter
from models import (
    EpgFetchRequest,
    HealthStatus,
    LivenessResult,
    PlaylistResponse,
    PlaylistTextRequest,
    PlaylistUrlRequest,
    RelayPolicy,
    RelayPurpose,
)
from relay_service import RelayError, RelayService

logger = logging.getLogger(__name__)


router = APIRouter()


def get_relay_service(request: Request) -> RelayService:
    return request.app.state.relay_service


@router.get("/health", response_model=HealthStatus)
async def health_check():
    """Liveness of the relay itself"""
    return HealthStatus()


# ============================================================================
# PLAYLISTS
# ============================================================================

@router.post("/playlist/fetch", response_model=PlaylistResponse)
async def fetch_playlist(
    body: PlaylistUrlRequest,
    relay: RelayService = Depends(get_relay_service)
):
    """Fetch a remote playlist and return its channels"""
    return await relay.fetch_playlist(body.url)


UPLOAD_BODY_SCHEMA = {
    "requestBody": {
        "content": {
            "multipart/form-data": {
                "schema": {
                    "type": "object",
                    "properties": {"file": {"type": "string", "format": "binary"}},
                }
            }
        }
    }
}


@router.post("/playlist/upload", response_model=PlaylistResponse, openapi_extra=UPLOAD_BODY_SCHEMA)
async def upload_playlist(
    request: Request,
    relay: RelayService = Depends(get_relay_service)
):
    """Parse an uploaded playlist file"""
    # Oversized bodies are refused before multipart parsing spools them
    relay.check_upload_length(request.headers.get("content-length"))

    data = None
    async with request.form() as form:
        file = form.get("file")
        if isinstance(file, UploadFile):
            # One byte over the limit is enough to reject the upload
            data = await file.read(relay.max_upload_size + 1)
    return relay.accept_uploaded_playlist(data)


@router.post("/playlist/text", response_model=PlaylistResponse)
async def parse_playlist_text(
    body: PlaylistTextRequest,
    relay: RelayService = Depends(get_relay_service)
):
    """Parse playlist text posted in the request body"""
    return relay.accept_inline_playlist(body.content)


# ============================================================================
# RELAY
# ============================================================================

@router.get("/relay/stream")
async def relay_stream(
    url: Optional[str] = Query(None, description="Stream URL, percent-encoded"),
    relay: RelayService = Depends(get_relay_service)
):
    """Relay a live stream to the caller (cross-origin friendly)"""
    return await relay.stream_resource(url, RelayPurpose.LIVE_STREAM)


@router.post("/stream/check", response_model=LivenessResult, response_model_exclude_none=True)
async def check_stream(
    request: Request,
    relay: RelayService = Depends(get_relay_service)
):
    """Probe a stream with a HEAD request; failures are part of the result"""
    # Read leniently: a malformed body is a dead stream, not a 400
    try:
        body = await request.json()
    except ValueError:
        body = None
    url = body.get("url") if isinstance(body, dict) else None
    return await relay.check_liveness(url)


@router.post("/epg/fetch")
async def fetch_epg(
    body: EpgFetchRequest,
    relay: RelayService = Depends(get_relay_service)
):
    """Fetch an EPG document and return it as XML"""
    return await relay.stream_resource(body.url, RelayPurpose.EPG_DOCUMENT)


@router.get("/download")
async def download(
    url: Optional[str] = Query(None, description="File URL, percent-encoded"),
    filename: Optional[str] = Query(None, description="Name offered to the browser"),
    relay: RelayService = Depends(get_relay_service)
):
    """Relay a file as an attachment"""
    return await relay.stream_resource(url, RelayPurpose.DOWNLOAD, filename=filename)


# ============================================================================
# ERROR HANDLERS
# ============================================================================

async def relay_error_handler(request: Request, exc: RelayError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    logger.debug(f"Rejected request to {request.url.path}: {errors}")
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {detail}"})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"})


def create_app(
    policy: Optional[RelayPolicy] = None,
    relay_service: Optional[RelayService] = None
) -> FastAPI:
    """Build the application with an explicit inbound policy and relay service."""
    policy = policy or RelayPolicy.from_settings(settings)
    relay_service = relay_service or RelayService()
    limiter = SlidingWindowLimiter.from_policy(policy)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events"""
        logger.info("iptv-relay starting up...")
        yield
        logger.info("iptv-relay shutting down...")
        await relay_service.aclose()

    app = FastAPI(
        title="iptv-relay",
        version=VERSION,
        description="IPTV playlist parser and cross-origin relay for streams, EPG documents and downloads",
        lifespan=lifespan,
        root_path=settings.ROOT_PATH,
        docs_url=settings.DOCS_URL,
        redoc_url=settings.REDOC_URL,
        openapi_url=settings.OPENAPI_URL,
    )
    app.state.relay_service = relay_service
    app.state.policy = policy
    app.state.limiter = limiter

    app.include_router(router, prefix=settings.API_PREFIX)

    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Last added runs first: CORS wraps everything, including 429 answers
    app.add_middleware(
        RateLimitMiddleware, limiter=limiter, trust_proxy_headers=policy.trust_proxy_headers)
    if settings.SECURITY_HEADERS:
        app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=policy.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    logger.debug(
        f"Rate limit: {policy.max_requests} requests per {policy.window_seconds:g}s, origins: {policy.allowed_origins}")
    return app


app = create_app()
