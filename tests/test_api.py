# Add src to path
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import httpx
import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

import api
from api import app
from kv_store import MemoryKeyValueStore
from manifest_proxy import ManifestProxy
from playlist_store import PlaylistStore

PLAYLIST = """#EXTM3U
#EXTINF:-1 tvg-logo="http://logo/1.png",Channel One
http://cdn.example.com/live/one.m3u8
"""

MANIFEST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-KEY:METHOD=AES-128,URI="key.bin"
#EXTINF:10.0,
seg1.ts
#EXTINF:10.0,
https://other.example.com/seg2.ts
"""


class Upstream:
    """Programmable upstream origin for the mock transport"""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, url, response):
        self.routes[url] = response

    def __call__(self, request):
        self.requests.append(request)
        handler = self.routes.get(str(request.url))
        if handler is None:
            return httpx.Response(404, text="missing")
        if isinstance(handler, Exception):
            raise handler
        return handler


class TestHelperFunctions:
    """Test request origin detection"""

    def make_request(self, headers, scheme="http", server=("app.local", 8085)):
        from starlette.requests import Request
        return Request({
            "type": "http",
            "scheme": scheme,
            "server": server,
            "path": "/",
            "root_path": "",
            "query_string": b"",
            "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        })

    def test_direct_connection_ignores_forwarded_proto(self):
        request = self.make_request(
            {"host": "app.local:8085", "x-forwarded-proto": "https"})
        assert api.detect_https_from_headers(request) is False
        assert api.get_proxy_origin(request) == "http://app.local:8085"

    def test_reverse_proxy_headers(self):
        request = self.make_request({
            "host": "internal:8085",
            "x-forwarded-for": "1.2.3.4",
            "x-forwarded-proto": "https",
            "x-forwarded-host": "tv.example.com",
        })
        assert api.detect_https_from_headers(request) is True
        assert api.get_proxy_origin(request) == "https://tv.example.com"

    def test_rfc7239_forwarded(self):
        request = self.make_request({
            "host": "tv.example.com",
            "x-forwarded-for": "1.2.3.4",
            "forwarded": "for=1.2.3.4;proto=https",
        })
        assert api.detect_https_from_headers(request) is True

    def test_public_url_override(self):
        request = self.make_request({"host": "internal:8085"})
        with patch.object(api.settings, "PUBLIC_URL", "https://public.example.com/"):
            assert api.get_proxy_origin(request) == "https://public.example.com"


class TestAPI:
    """Test FastAPI endpoints"""

    @pytest.fixture
    def upstream(self):
        return Upstream()

    @pytest.fixture
    def kv(self):
        return MemoryKeyValueStore()

    @pytest.fixture
    def client(self, upstream, kv):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        with patch('api.playlist_store', PlaylistStore(kv, http_client)), \
                patch('api.manifest_proxy', ManifestProxy(http_client)):
            yield TestClient(app)

    def test_health_endpoint(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["storage"] == "memory"
        assert "version" in data

    def test_create_and_list_playlist(self, client, upstream):
        upstream.add("https://x/list.m3u", httpx.Response(200, text=PLAYLIST))

        response = client.post(
            "/api/playlist", json={"url": "https://x/list.m3u", "name": "Test"})
        assert response.status_code == 201
        playlist_id = response.json()["id"]

        response = client.get("/api/playlist")
        assert response.status_code == 200
        assert response.json() == [
            {"id": playlist_id, "name": "Test", "count": 1}]

        response = client.get(f"/api/playlist/{playlist_id}")
        assert response.status_code == 200
        assert response.json() == [
            {"name": "Channel One", "url": "http://cdn.example.com/live/one.m3u8"}]

    def test_list_playlists_empty(self, client):
        response = client.get("/api/playlist")
        assert response.status_code == 200
        assert response.json() == []

    def test_create_playlist_missing_url(self, client, kv, upstream):
        response = client.post("/api/playlist", json={"name": "No URL"})
        assert response.status_code == 400
        assert response.text == "url missing"
        assert kv.data == {}
        assert upstream.requests == []

    def test_create_playlist_invalid_url(self, client, kv):
        response = client.post("/api/playlist", json={"url": "not_a_valid_url"})
        assert response.status_code == 400
        assert kv.data == {}

    def test_create_playlist_upstream_404(self, client, kv):
        response = client.post("/api/playlist", json={"url": "https://x/gone.m3u"})
        assert response.status_code == 404
        assert "404" in response.text
        assert kv.data == {}

    def test_create_playlist_upstream_unreachable(self, client, kv, upstream):
        upstream.add("https://down/list.m3u", httpx.ConnectError("refused"))

        response = client.post("/api/playlist", json={"url": "https://down/list.m3u"})
        assert response.status_code == 502
        assert kv.data == {}

    def test_get_playlist_not_found(self, client):
        response = client.get("/api/playlist/nonexistent")
        assert response.status_code == 404
        assert response.text == "not found"

    def test_fetch_m3u(self, client, upstream):
        upstream.add("https://x/list.m3u", httpx.Response(
            200, text=PLAYLIST, headers={"Content-Type": "audio/x-mpegurl"}))

        response = client.get("/api/fetch-m3u", params={"url": "https://x/list.m3u"})
        assert response.status_code == 200
        assert response.text == PLAYLIST
        assert response.headers["access-control-allow-origin"] == "*"

    def test_fetch_m3u_missing_url(self, client):
        response = client.get("/api/fetch-m3u")
        assert response.status_code == 400

    def test_proxy_rewrites_manifest(self, client, upstream):
        upstream.add("https://cdn.example.com/live/index.m3u8?token=abc&exp=1", httpx.Response(
            200, text=MANIFEST, headers={"Content-Type": "application/vnd.apple.mpegurl"}))

        response = client.get(
            "/proxy/https/cdn.example.com/live/index.m3u8?token=abc&exp=1")

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        lines = response.text.splitlines()
        assert lines[2] == '#EXT-X-KEY:METHOD=AES-128,URI="http://testserver/proxy/https/cdn.example.com/live/key.bin"'
        assert lines[4] == "http://testserver/proxy/https/cdn.example.com/live/seg1.ts"
        assert lines[6] == "http://testserver/proxy/https/other.example.com/seg2.ts"
        assert int(response.headers["content-length"]) == len(response.content)

    def test_proxy_uses_forwarded_origin(self, client, upstream):
        upstream.add("http://cdn.example.com/index.m3u8", httpx.Response(
            200, text="seg.ts\n", headers={"Content-Type": "application/x-mpegURL"}))

        response = client.get("/proxy/http/cdn.example.com/index.m3u8", headers={
            "X-Forwarded-For": "1.2.3.4",
            "X-Forwarded-Proto": "https",
            "X-Forwarded-Host": "tv.example.com",
        })

        assert response.text == "https://tv.example.com/proxy/http/cdn.example.com/seg.ts\n"

    def test_proxy_range_request(self, client, upstream):
        payload = bytes(range(100))
        upstream.add("https://x.com/a.ts", httpx.Response(206, content=payload, headers={
            "Content-Type": "video/mp2t",
            "Content-Range": "bytes 0-99/1000",
        }))

        response = client.get("/proxy/https/x.com/a.ts", headers={
            "Range": "bytes=0-99",
            "Cookie": "session=secret",
        })

        sent = upstream.requests[0]
        assert sent.headers["range"] == "bytes=0-99"
        assert sent.headers["host"] == "x.com"
        assert "cookie" not in sent.headers
        assert response.status_code == 206
        assert response.content == payload
        assert response.headers["content-range"] == "bytes 0-99/1000"
        assert response.headers["access-control-expose-headers"] == "*"

    def test_proxy_relays_upstream_status(self, client, upstream):
        upstream.add("https://x.com/a.ts", httpx.Response(500, text="boom"))

        response = client.get("/proxy/https/x.com/a.ts")

        assert response.status_code == 500
        assert response.text == "upstream status 500"
        assert response.headers["access-control-allow-origin"] == "*"

    def test_proxy_upstream_unreachable(self, client, upstream):
        upstream.add("https://x.com/a.ts", httpx.ConnectError("refused"))

        response = client.get("/proxy/https/x.com/a.ts")

        assert response.status_code == 502
        assert response.text.startswith("upstream fetch error")

    def test_proxy_unsupported_scheme(self, client, upstream):
        response = client.get("/proxy/ftp/x.com/a.ts")
        assert response.status_code == 404
        assert upstream.requests == []

    def test_cors_preflight(self, client):
        response = client.options("/proxy/https/x.com/a.ts", headers={
            "Origin": "https://player.example.com",
            "Access-Control-Request-Method": "GET",
            "Access-Control-Request-Headers": "range",
        })
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
