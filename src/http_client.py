import httpx

from config import settings


def create_http_client() -> httpx.AsyncClient:
    """
    Shared outbound client for playlist ingestion and proxying.
    - connect: fail fast if the upstream is down
    - read: per-chunk, tolerates CDN stalls while streaming segments
    - write: players may stop reading while their buffer is full

    Upstreams are asked for unencoded bodies so that relayed bytes and
    Range offsets match what the player sees.
    """
    return httpx.AsyncClient(
        headers={'Accept-Encoding': 'identity'},
        timeout=httpx.Timeout(
            connect=settings.DEFAULT_CONNECTION_TIMEOUT,
            read=settings.DEFAULT_READ_TIMEOUT,
            write=settings.STREAM_WRITE_TIMEOUT,
            pool=10.0
        ),
        follow_redirects=True,
        max_redirects=settings.MAX_REDIRECTS,
        limits=httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )
    )
