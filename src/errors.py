"""
Error taxonomy shared by the playlist store and the manifest proxy.
Every error carries the HTTP status the API layer answers with.
"""

from typing import Optional


class ProxyError(Exception):
    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class ValidationError(ProxyError):
    """Missing or malformed caller input"""
    status_code = 400


class NotFoundError(ProxyError):
    status_code = 404


class UpstreamFetchError(ProxyError):
    """The external origin could not be reached at all"""
    status_code = 502


class UpstreamStatusError(ProxyError):
    """The external origin answered with a non-success status"""

    def __init__(self, upstream_status: int, message: Optional[str] = None):
        super().__init__(
            message or f"upstream status {upstream_status}", upstream_status)
        self.upstream_status = upstream_status
