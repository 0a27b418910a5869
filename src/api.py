from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
from typing import Optional, List
from pydantic import BaseModel

from config import settings, VERSION
from errors import ProxyError, NotFoundError
from http_client import create_http_client
from kv_store import create_kv_store
from manifest_proxy import ManifestProxy, parse_proxy_path
from playlist_store import PlaylistStore

# Set up logging
logging.basicConfig(level=getattr(
    logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def detect_https_from_headers(request: Request) -> bool:
    """
    HTTPS detection from reverse proxy headers.

    Works with NGINX, Caddy, Traefik (X-Forwarded-Proto), Cloudflare and
    load balancers (X-Forwarded-Ssl), IIS/Azure (Front-End-Https) and RFC 7239
    compliant proxies (Forwarded).

    Forwarded headers are only trusted if the request came through a reverse
    proxy (X-Forwarded-For present); otherwise the actual request scheme is used.
    """
    if request.headers.get("x-forwarded-for") is None:
        return request.url.scheme == "https"

    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto and forwarded_proto.lower() == "https":
        return True

    forwarded_scheme = request.headers.get("x-forwarded-scheme")
    if forwarded_scheme and forwarded_scheme.lower() == "https":
        return True

    if request.headers.get("x-forwarded-ssl") == "on":
        return True

    if request.headers.get("front-end-https") == "on":
        return True

    forwarded = request.headers.get("forwarded")
    if forwarded and "proto=https" in forwarded.lower():
        return True

    if request.headers.get("x-forwarded-port") == "443":
        return True

    return False


def get_proxy_origin(request: Request) -> str:
    """
    Origin (plus mount path) that rewritten manifest URIs point at, so that
    segment requests come back through this proxy.
    """
    if settings.PUBLIC_URL:
        return settings.PUBLIC_URL.rstrip("/")

    scheme = "https" if detect_https_from_headers(request) else "http"
    host = request.url.netloc
    if request.headers.get("x-forwarded-for") is not None:
        forwarded_host = request.headers.get("x-forwarded-host")
        if forwarded_host:
            host = forwarded_host.split(",")[0].strip()

    root_path = request.scope.get("root_path") or settings.ROOT_PATH
    return f"{scheme}://{host}{root_path.rstrip('/')}"


# Request / response models
class PlaylistCreateRequest(BaseModel):
    # Optional here so a missing url reaches the store's validation
    url: Optional[str] = None
    name: Optional[str] = None


class PlaylistCreateResponse(BaseModel):
    id: str


class PlaylistSummaryResponse(BaseModel):
    id: str
    name: str
    count: int


class ChannelResponse(BaseModel):
    name: str
    url: str


# Global collaborators
http_client = create_http_client()
kv_store = create_kv_store()
playlist_store = PlaylistStore(kv_store, http_client)
manifest_proxy = ManifestProxy(http_client)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info(
        f"⚡️ playlist proxy {VERSION} starting up ({kv_store.backend_name} storage)")

    yield

    logger.info("playlist proxy shutting down...")
    await http_client.aclose()
    await kv_store.close()


app = FastAPI(
    title="playlist proxy",
    version=VERSION,
    description="M3U playlist store with a same-origin HLS proxy that rewrites manifests",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
)

# Browser players load playlists and segments cross-origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError):
    return PlainTextResponse(
        str(exc),
        status_code=exc.status_code,
        headers={"Access-Control-Allow-Origin": "*"}
    )


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": VERSION,
        "root_path": settings.ROOT_PATH,
        "storage": kv_store.backend_name,
    }


@app.post("/api/playlist", status_code=201, response_model=PlaylistCreateResponse)
async def create_playlist(request: PlaylistCreateRequest):
    """Fetch a remote M3U playlist, store its channels and return the new id"""
    playlist_id = await playlist_store.ingest(request.url, request.name)
    return PlaylistCreateResponse(id=playlist_id)


@app.get("/api/playlist", response_model=List[PlaylistSummaryResponse])
async def list_playlists():
    """List every stored playlist in ingestion order"""
    summaries = await playlist_store.list_playlists()
    return [PlaylistSummaryResponse(id=s.id, name=s.name, count=s.count) for s in summaries]


@app.get("/api/playlist/{playlist_id}", response_model=List[ChannelResponse])
async def get_playlist(playlist_id: str):
    """Channels of a single playlist"""
    channels = await playlist_store.get_channels(playlist_id)
    return [ChannelResponse(name=c.name, url=c.url) for c in channels]


@app.get("/api/fetch-m3u")
async def fetch_m3u(url: Optional[str] = Query(None, description="M3U URL to load")):
    """
    Load a remote M3U document on behalf of the browser without storing it.
    The document itself is returned unmodified.
    """
    text, content_type = await playlist_store.fetch_document(url)
    return Response(
        content=text,
        media_type=content_type or "application/vnd.apple.mpegurl; charset=utf-8",
        headers={"Access-Control-Allow-Origin": "*"}
    )


@app.get("/proxy/{scheme}/{rest:path}")
async def proxy(scheme: str, rest: str, request: Request):
    """
    Proxy any http(s) resource encoded as /proxy/<scheme>/<host>/<path>?<query>.
    HLS manifests are rewritten so their segments are fetched through here too.
    """
    if scheme not in ("http", "https"):
        raise NotFoundError("not found")

    # The route parameters are percent-decoded and lose the query string,
    # so the target is rebuilt from the raw request line instead.
    raw_path = request.scope.get("raw_path")
    raw_path = raw_path.decode("latin-1") if raw_path else request.url.path
    target = parse_proxy_path(raw_path, request.url.query)

    return await manifest_proxy.handle(
        target,
        request.headers,
        get_proxy_origin(request),
        is_disconnected=request.is_disconnected
    )
