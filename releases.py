from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

import requests

from errors import AstarteAPIError, AstarteError, DecodeError

logger = logging.getLogger("astartectl.releases")

ASTARTE_ORG = "astarte-platform"
OPERATOR_REPO = "astarte-kubernetes-operator"

_SEMVER_RE = re.compile(
    r"^v?(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<pre>[0-9A-Za-z.\-]+))?(?:\+[0-9A-Za-z.\-]+)?$"
)


class ReleaseIndexError(AstarteError):
    pass


class NoStableRelease(ReleaseIndexError):
    pass


@dataclass(frozen=True)
class ReleaseVersion:
    major: int
    minor: int
    patch: int
    prerelease: Optional[str]
    original: str

    @property
    def is_stable(self) -> bool:
        return self.prerelease is None

    @property
    def key(self):
        return (self.major, self.minor, self.patch)


def parse_version(tag: str) -> Optional[ReleaseVersion]:
    """Parse a release tag such as ``v1.1.0``; None when it is not a version."""
    m = _SEMVER_RE.match(tag.strip())
    if not m:
        return None
    return ReleaseVersion(
        major=int(m.group("major")),
        minor=int(m.group("minor") or 0),
        patch=int(m.group("patch") or 0),
        prerelease=m.group("pre"),
        original=tag.strip()[1:] if tag.strip().startswith("v") else tag.strip(),
    )


def normalize_version(version: str) -> str:
    version = version.strip()
    return version[1:] if version.startswith("v") else version


def latest_stable(tags: Iterable[str]) -> str:
    stable: List[ReleaseVersion] = []
    for tag in tags:
        parsed = parse_version(tag)
        if parsed is None:
            logger.debug("ignoring non-version tag %s", tag)
            continue
        if parsed.is_stable:
            stable.append(parsed)

    if not stable:
        raise NoStableRelease("No stable release found in the release index")
    return max(stable, key=lambda v: v.key).original


class _GitHubService:
    def __init__(
        self,
        api_url: str = "https://api.github.com",
        owner: str = ASTARTE_ORG,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.owner = owner
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.setdefault("Accept", "application/vnd.github+json")

    def _get_json(self, path: str, params=None):
        url = f"{self.api_url}/{path.lstrip('/')}"
        resp = self._session.get(url, params=params, timeout=self.timeout)
        if not resp.ok:
            raise AstarteAPIError(resp.status_code, url, body=resp.text, reason=resp.reason)
        try:
            return resp.json()
        except ValueError as exc:
            raise DecodeError(f"{url} did not return JSON") from exc


class ReleaseIndex(_GitHubService):
    """Tag listing for astarte-platform repositories."""

    PER_PAGE = 100

    def list_tags(self, repo: str) -> List[str]:
        body = self._get_json(f"repos/{self.owner}/{repo}/tags", {"per_page": self.PER_PAGE})
        if not isinstance(body, list):
            raise ReleaseIndexError(f"Unexpected tag listing for {repo}: {body!r}")
        return [t["name"] for t in body if isinstance(t, dict) and isinstance(t.get("name"), str)]

    def latest_stable_release(self, repo: str = OPERATOR_REPO) -> str:
        return latest_stable(self.list_tags(repo))


class ContentSource(_GitHubService):
    """Raw file content of a repository at a release tag."""

    def get_content(self, repo: str, path: str, version: str) -> str:
        ref = f"v{normalize_version(version)}"
        body = self._get_json(f"repos/{self.owner}/{repo}/contents/{path.lstrip('/')}", {"ref": ref})
        if not isinstance(body, dict) or "content" not in body:
            raise DecodeError(f"{path}@{ref} is not a file")

        encoding = body.get("encoding", "base64")
        if encoding != "base64":
            raise DecodeError(f"{path}@{ref} has unsupported encoding {encoding!r}")
        try:
            return base64.b64decode(body["content"]).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise DecodeError(f"{path}@{ref} could not be decoded") from exc

    def get_operator_content(self, path: str, version: str) -> str:
        return self.get_content(OPERATOR_REPO, path, version)
