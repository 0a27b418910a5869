"""
Playlist Store
Fetches remote M3U documents, extracts their channel lists and keeps them in
a key-value store, together with a single index record summarising every
ingested playlist.
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, asdict
from typing import List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from config import settings
from errors import ValidationError, NotFoundError, UpstreamFetchError, UpstreamStatusError
from kv_store import KeyValueStore

logger = logging.getLogger(__name__)

# Index key has no ':' so it can never collide with a playlist record key
PLAYLIST_INDEX_KEY = "playlists"
PLAYLIST_KEY_PREFIX = "playlist:"
UNKNOWN_CHANNEL_NAME = "unknown"

_LINE_SPLIT = re.compile(r"\r?\n")


@dataclass(frozen=True)
class Channel:
    name: str
    url: str


@dataclass(frozen=True)
class PlaylistSummary:
    id: str
    name: str
    count: int


def validate_url(url: Optional[str]) -> str:
    """Validate that url is an absolute HTTP(S) URL"""
    if not url or not url.strip():
        raise ValidationError("url missing")

    url = url.strip()
    try:
        parsed = urlparse(url)
        # Raises for non-numeric or out of range ports
        parsed.port
        httpx.URL(url)
    except (ValueError, httpx.InvalidURL):
        raise ValidationError("Invalid URL format")

    if parsed.scheme.lower() not in ['http', 'https']:
        raise ValidationError("URL must use HTTP or HTTPS protocol")

    if not parsed.netloc or not parsed.hostname:
        raise ValidationError("URL must have a valid domain")

    return url


def parse_m3u(text: str) -> List[Channel]:
    """
    Extract channels from an M3U document in a single forward pass.

    An #EXTINF line names the next media line with the title after its last
    comma. A media line without a preceding #EXTINF is named "unknown".
    """
    channels: List[Channel] = []
    pending_name = UNKNOWN_CHANNEL_NAME
    for line in _LINE_SPLIT.split(text):
        if line.startswith("#EXTINF"):
            _, comma, title = line.rpartition(",")
            title = title.strip()
            pending_name = title if comma and title else UNKNOWN_CHANNEL_NAME
        elif line.strip() and not line.startswith("#"):
            channels.append(Channel(name=pending_name, url=line.strip()))
            pending_name = UNKNOWN_CHANNEL_NAME
    return channels


def playlist_key(playlist_id: str) -> str:
    return f"{PLAYLIST_KEY_PREFIX}{playlist_id}"


class PlaylistStore:
    def __init__(self, kv: KeyValueStore, http_client: httpx.AsyncClient):
        self.kv = kv
        self.http_client = http_client

    async def fetch_document(self, url: Optional[str]) -> Tuple[str, Optional[str]]:
        """Fetch an M3U document, returning its text and content type"""
        url = validate_url(url)
        headers = {'User-Agent': settings.DEFAULT_USER_AGENT}
        try:
            response = await self.http_client.get(url, headers=headers, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Failed to fetch playlist {url}: {e}")
            raise UpstreamFetchError(f"upstream fetch error: {e}") from e

        if not response.is_success:
            logger.warning(
                f"Playlist fetch for {url} returned status {response.status_code}")
            raise UpstreamStatusError(
                response.status_code, f"playlist fetch failed: upstream status {response.status_code}")

        return response.text, response.headers.get('content-type')

    async def ingest(self, url: Optional[str], name: Optional[str] = None) -> str:
        """Fetch, parse and store a playlist. Returns the new playlist id."""
        url = validate_url(url)
        text, _ = await self.fetch_document(url)
        channels = parse_m3u(text)

        playlist_id = str(uuid.uuid4())
        # The record goes first: a crash between the two writes may orphan a
        # record but never leaves an index entry without one.
        await self.kv.put(playlist_key(playlist_id), json.dumps([asdict(c) for c in channels]))

        # Read-modify-write without locking, concurrent ingests can lose an
        # index entry (last writer wins).
        summaries = await self.list_playlists()
        summaries.append(PlaylistSummary(
            id=playlist_id, name=name or url, count=len(channels)))
        await self.kv.put(PLAYLIST_INDEX_KEY, json.dumps([asdict(s) for s in summaries]))

        logger.info(
            f"Ingested playlist {playlist_id} from {url} with {len(channels)} channels")
        return playlist_id

    async def list_playlists(self) -> List[PlaylistSummary]:
        raw = await self.kv.get(PLAYLIST_INDEX_KEY)
        if not raw:
            return []
        return [PlaylistSummary(**item) for item in json.loads(raw)]

    async def get_channels(self, playlist_id: str) -> List[Channel]:
        raw = await self.kv.get(playlist_key(playlist_id))
        if raw is None:
            raise NotFoundError("not found")
        return [Channel(**item) for item in json.loads(raw)]
