from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Optional


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    return value.strip() if value and value.strip() else default


def _env_optional_str(name: str) -> Optional[str]:
    value = os.environ.get(name)
    return value.strip() if value and value.strip() else None


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


@dataclass(frozen=True)
class AstarteSettings:
    """Runtime configuration for astartectl.

    Env vars:
    - ASTARTE_API_URL: base URL of the Astarte API. AppEngine and Realm
      Management URLs are derived from it unless set explicitly.
    - ASTARTE_APPENGINE_URL / ASTARTE_REALM_MANAGEMENT_URL
    - ASTARTE_REALM
    - ASTARTE_APPENGINE_JWT / ASTARTE_REALM_MANAGEMENT_JWT
    - ASTARTE_HTTP_TIMEOUT: seconds, per request
    - ASTARTE_PAGE_SIZE: samples requested per page by get-samples
    - GITHUB_API_URL: release index and manifest content source
    - K8S_KUBECONFIG / K8S_CONTEXT

    Command line options override the environment through `with_overrides`.
    """

    api_url: Optional[str]
    appengine_url: Optional[str]
    realm_management_url: Optional[str]
    realm: Optional[str]
    appengine_jwt: Optional[str]
    realm_management_jwt: Optional[str]
    http_timeout: int
    page_size: int
    github_api_url: str
    kubeconfig: Optional[str]
    kube_context: Optional[str]

    DEFAULT_HTTP_TIMEOUT: int = 30
    DEFAULT_PAGE_SIZE: int = 100
    DEFAULT_GITHUB_API_URL: str = "https://api.github.com"

    @classmethod
    def from_env(cls) -> "AstarteSettings":
        return cls(
            api_url=_env_optional_str("ASTARTE_API_URL"),
            appengine_url=_env_optional_str("ASTARTE_APPENGINE_URL"),
            realm_management_url=_env_optional_str("ASTARTE_REALM_MANAGEMENT_URL"),
            realm=_env_optional_str("ASTARTE_REALM"),
            appengine_jwt=_env_optional_str("ASTARTE_APPENGINE_JWT"),
            realm_management_jwt=_env_optional_str("ASTARTE_REALM_MANAGEMENT_JWT"),
            http_timeout=_env_int("ASTARTE_HTTP_TIMEOUT", cls.DEFAULT_HTTP_TIMEOUT),
            page_size=_env_int("ASTARTE_PAGE_SIZE", cls.DEFAULT_PAGE_SIZE),
            github_api_url=_env_str("GITHUB_API_URL", cls.DEFAULT_GITHUB_API_URL),
            kubeconfig=_env_optional_str("K8S_KUBECONFIG"),
            kube_context=_env_optional_str("K8S_CONTEXT"),
        )

    def with_overrides(self, **overrides: Optional[str]) -> "AstarteSettings":
        # Unset CLI options arrive as None and must not clobber the environment.
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def resolved_appengine_url(self) -> str:
        return self._resolve(self.appengine_url, "appengine", "AppEngine")

    def resolved_realm_management_url(self) -> str:
        return self._resolve(self.realm_management_url, "realmmanagement", "Realm Management")

    def require_realm(self) -> str:
        if not self.realm:
            raise ValueError("No realm configured. Use --realm or ASTARTE_REALM.")
        return self.realm

    def _resolve(self, explicit: Optional[str], suffix: str, label: str) -> str:
        if explicit:
            return explicit.rstrip("/")
        if self.api_url:
            return f"{self.api_url.rstrip('/')}/{suffix}"
        raise ValueError(
            f"No {label} URL configured. Use --astarte-url or ASTARTE_API_URL."
        )
