from __future__ import annotations

from typing import Any, Optional


class AstarteError(Exception):
    pass


class AstarteAPIError(AstarteError):
    """A non-2xx answer from an Astarte or GitHub API."""

    def __init__(self, status: int, url: str, body: Any = None, reason: Optional[str] = None):
        self.status = status
        self.url = url
        self.body = body
        self.reason = reason
        detail = f": {body}" if body else ""
        super().__init__(f"{url} returned {status} {reason or ''}".rstrip() + detail)


class DecodeError(AstarteError):
    pass
