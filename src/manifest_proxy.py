"""
Manifest-Rewriting Proxy
Forwards /proxy/<scheme>/<host-path-query> requests upstream. HLS manifests
are buffered and every segment/key URI inside is rewritten to route back
through the proxy; every other body is streamed through untouched.
"""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import urljoin, urlsplit

import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from config import settings
from errors import ValidationError, UpstreamFetchError, UpstreamStatusError

logger = logging.getLogger(__name__)

# Inbound headers relayed upstream. Host is always rebuilt from the target.
FORWARDED_REQUEST_HEADERS = ("Range", "User-Agent", "Referer")

# Connection-level headers that must not be copied between hops
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

# Directives whose URI="..." attribute is rewritten
URI_DIRECTIVES = ("#EXT-X-KEY",)

MANIFEST_CONTENT_TYPE = re.compile(r"mpegurl", re.IGNORECASE)
ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)
LINE_BREAK = re.compile(r"(\r?\n)")
URI_ATTRIBUTE = re.compile(r'(URI=")([^"]+)(")')
PROXY_PATH = re.compile(r"^.*?/proxy/(https?)/(.*)$", re.DOTALL)


@dataclass(frozen=True)
class ProxyTarget:
    scheme: str
    host: str
    path: str = ""
    query: str = ""

    @property
    def url(self) -> str:
        url = f"{self.scheme}://{self.host}{self.path}"
        if self.query:
            url += f"?{self.query}"
        return url


def parse_proxy_path(raw_path: str, query_string: str = "") -> ProxyTarget:
    """
    Recover the upstream target from the raw (still percent-encoded) inbound
    path and query string. The first /proxy/<scheme>/ segment marks the start
    of the encoded target; anything before it is the mount prefix.
    """
    raw_path = raw_path.split("?", 1)[0]
    match = PROXY_PATH.match(raw_path)
    if not match:
        raise ValidationError("invalid proxy path")

    scheme, rest = match.groups()
    host, slash, path = rest.partition("/")
    if not host:
        raise ValidationError("proxy target is missing a host")

    return ProxyTarget(scheme=scheme, host=host, path=slash + path, query=query_string)


def base_directory(url: str) -> str:
    """The URL's directory: scheme, host and path up to its final '/'"""
    parts = urlsplit(url)
    directory = parts.path[:parts.path.rfind("/") + 1] or "/"
    return f"{parts.scheme}://{parts.netloc}{directory}"


def resolve_uri(uri: str, base_dir: str) -> Optional[str]:
    """Absolute HTTP(S) URL for a manifest URI, or None if it doesn't resolve"""
    if ABSOLUTE_URL.match(uri):
        return uri
    try:
        absolute = urljoin(base_dir, uri)
        parts = urlsplit(absolute)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None
    return absolute


def proxy_url(absolute_url: str, proxy_origin: str) -> str:
    """Encode an absolute URL as <origin>/proxy/<scheme>/<rest>"""
    if absolute_url.startswith((f"{proxy_origin}/proxy/http/", f"{proxy_origin}/proxy/https/")):
        return absolute_url
    scheme = "https" if absolute_url.lower().startswith("https") else "http"
    return f"{proxy_origin}/proxy/{scheme}/{ABSOLUTE_URL.sub('', absolute_url, count=1)}"


def _rewrite_uri(uri: str, base_dir: str, proxy_origin: str) -> Optional[str]:
    absolute = resolve_uri(uri, base_dir)
    if absolute is None:
        logger.debug(f"Leaving unresolvable manifest URI untouched: {uri}")
        return None
    return proxy_url(absolute, proxy_origin)


def _rewrite_line(line: str, base_dir: str, proxy_origin: str) -> str:
    stripped = line.strip()
    if not stripped:
        return line

    if stripped.startswith("#"):
        if not stripped.startswith(URI_DIRECTIVES):
            return line

        def replace(match: re.Match) -> str:
            proxied = _rewrite_uri(match.group(2), base_dir, proxy_origin)
            if proxied is None:
                return match.group(0)
            return f"{match.group(1)}{proxied}{match.group(3)}"

        return URI_ATTRIBUTE.sub(replace, line, count=1)

    proxied = _rewrite_uri(stripped, base_dir, proxy_origin)
    return line if proxied is None else proxied


def rewrite_manifest(content: str, base_dir: str, proxy_origin: str) -> str:
    """
    Rewrite every segment, sub-playlist and key URI of an HLS manifest to go
    through the proxy. Comments, other directives and blank lines are kept
    verbatim, and so are URIs that fail to resolve.
    """
    proxy_origin = proxy_origin.rstrip("/")
    # Lines end at LF or CRLF only; the captured endings sit at odd indexes
    parts = LINE_BREAK.split(content)
    for i in range(0, len(parts), 2):
        parts[i] = _rewrite_line(parts[i], base_dir, proxy_origin)
    return "".join(parts)


def is_manifest(content_type: Optional[str]) -> bool:
    return bool(content_type and MANIFEST_CONTENT_TYPE.search(content_type))


def build_upstream_headers(inbound_headers: Mapping[str, str], target: ProxyTarget) -> Dict[str, str]:
    inbound = httpx.Headers(inbound_headers)
    headers = {}
    for name in FORWARDED_REQUEST_HEADERS:
        value = inbound.get(name)
        if value:
            headers[name] = value
    # Virtual-hosted upstreams route on Host, never trust the client's
    headers['Host'] = target.host
    return headers


def build_response_headers(upstream_headers: httpx.Headers) -> Dict[str, str]:
    headers = {
        name: value for name, value in upstream_headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS
    }
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Expose-Headers"] = "*"
    return headers


def _drop_headers(headers: Dict[str, str], *names: str):
    for name in list(headers):
        if name.lower() in names:
            del headers[name]


async def _iterate_loaded(upstream: httpx.Response):
    yield upstream.content


class ManifestProxy:
    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    async def handle(
        self,
        target: ProxyTarget,
        inbound_headers: Mapping[str, str],
        proxy_origin: str,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None
    ) -> Response:
        """
        Proxy a single request. Raises UpstreamFetchError when the upstream
        can't be reached and UpstreamStatusError for non-2xx answers.
        """
        headers = build_upstream_headers(inbound_headers, target)
        logger.debug(f"Proxying {target.url} with headers {headers}")

        try:
            request = self.http_client.build_request(
                "GET", target.url, headers=headers)
            upstream = await self.http_client.send(request, stream=True, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Upstream fetch error for {target.url}: {e}")
            raise UpstreamFetchError(f"upstream fetch error: {e}") from e

        # 206 is included in 2xx, range-requested segments answer with it
        if not upstream.is_success:
            await upstream.aclose()
            logger.warning(
                f"Upstream {target.url} returned status {upstream.status_code}")
            raise UpstreamStatusError(upstream.status_code)

        response_headers = build_response_headers(upstream.headers)

        if is_manifest(upstream.headers.get("content-type")):
            return await self._rewrite_response(upstream, response_headers, proxy_origin)

        return StreamingResponse(
            self._stream_body(upstream, is_disconnected),
            status_code=upstream.status_code,
            headers=response_headers,
            background=BackgroundTask(upstream.aclose)
        )

    async def _rewrite_response(
        self,
        upstream: httpx.Response,
        response_headers: Dict[str, str],
        proxy_origin: str
    ) -> Response:
        try:
            await upstream.aread()
        except httpx.HTTPError as e:
            logger.warning(f"Error reading manifest {upstream.url}: {e}")
            raise UpstreamFetchError(f"upstream fetch error: {e}") from e
        finally:
            await upstream.aclose()

        # Relative URIs resolve against where the manifest was finally served from
        content = rewrite_manifest(
            upstream.text, base_directory(str(upstream.url)), proxy_origin)

        # The body is now decoded and rewritten, old length/encoding are wrong
        _drop_headers(response_headers, "content-length", "content-encoding")

        logger.debug(f"Rewrote manifest {upstream.url}")
        return Response(content=content, status_code=upstream.status_code, headers=response_headers)

    async def _stream_body(
        self,
        upstream: httpx.Response,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None
    ):
        """
        Relay upstream bytes as sent (still content-encoded, so Content-Length
        and Content-Range stay valid), closing the upstream as soon as the
        client goes away.
        """
        if upstream.is_stream_consumed:
            # Body was already loaded into memory (in-process transports)
            chunks = _iterate_loaded(upstream)
        else:
            chunks = upstream.aiter_raw(chunk_size=settings.STREAM_CHUNK_SIZE)
        try:
            async for chunk in chunks:
                if is_disconnected is not None and await is_disconnected():
                    logger.info(
                        f"Client disconnected, aborting upstream {upstream.url}")
                    break
                yield chunk
        finally:
            await upstream.aclose()
