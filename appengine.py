from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, quote, urlsplit

import requests

from errors import AstarteAPIError, DecodeError
from gate import InterfaceDescription
from paginator import DatastreamPaginator, Page, ResultSetOrder, Sample, parse_timestamp

logger = logging.getLogger("astartectl.appengine")


# -------------------------------------------------------------------
# Response types
# -------------------------------------------------------------------

@dataclass(frozen=True)
class InterfaceIntrospection:
    major: int
    minor: int


@dataclass(frozen=True)
class DeviceDetails:
    device_id: str
    connected: bool
    introspection: Dict[str, InterfaceIntrospection] = field(default_factory=dict)
    aliases: Dict[str, str] = field(default_factory=dict)
    total_received_messages: int = 0
    total_received_bytes: int = 0
    last_connection: Optional[datetime] = None
    last_disconnection: Optional[datetime] = None
    first_registration: Optional[datetime] = None
    first_credentials_request: Optional[datetime] = None
    last_seen_ip: Optional[str] = None
    last_credentials_request_ip: Optional[str] = None

    @classmethod
    def from_json(cls, data: Any) -> "DeviceDetails":
        if not isinstance(data, Mapping) or not isinstance(data.get("id"), str):
            raise DecodeError(f"Malformed device details: {data!r}")

        introspection = {}
        for name, entry in (data.get("introspection") or {}).items():
            if not isinstance(entry, Mapping):
                raise DecodeError(f"Malformed introspection entry for {name}: {entry!r}")
            introspection[name] = InterfaceIntrospection(
                major=int(entry.get("major", 0)),
                minor=int(entry.get("minor", 0)),
            )

        return cls(
            device_id=data["id"],
            connected=bool(data.get("connected", False)),
            introspection=introspection,
            aliases=dict(data.get("aliases") or {}),
            total_received_messages=int(data.get("total_received_msgs") or 0),
            total_received_bytes=int(data.get("total_received_bytes") or 0),
            last_connection=_optional_timestamp(data.get("last_connection")),
            last_disconnection=_optional_timestamp(data.get("last_disconnection")),
            first_registration=_optional_timestamp(data.get("first_registration")),
            first_credentials_request=_optional_timestamp(data.get("first_credentials_request")),
            last_seen_ip=data.get("last_seen_ip"),
            last_credentials_request_ip=data.get("last_credentials_request_ip"),
        )


@dataclass(frozen=True)
class AggregateSnapshot:
    values: Dict[str, Any]
    timestamp: datetime
    reception_timestamp: datetime


def _optional_timestamp(value: Any) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


def _is_sample(node: Any) -> bool:
    return isinstance(node, Mapping) and "value" in node and "timestamp" in node


def flatten_samples(tree: Any, prefix: str = "") -> Dict[str, Sample]:
    """Map every endpoint path in a datastream value tree to its latest sample."""
    out: Dict[str, Sample] = {}
    if _is_sample(tree):
        out[prefix or "/"] = Sample.from_json(tree)
    elif isinstance(tree, list):
        if tree:
            out[prefix or "/"] = Sample.from_json(tree[0])
    elif isinstance(tree, Mapping):
        for key, node in tree.items():
            out.update(flatten_samples(node, f"{prefix}/{key}"))
    else:
        raise DecodeError(f"Unexpected datastream value at {prefix or '/'}: {tree!r}")
    return out


def flatten_properties(tree: Any, prefix: str = "") -> Dict[str, Any]:
    if not isinstance(tree, Mapping):
        return {prefix or "/": tree}
    out: Dict[str, Any] = {}
    for key, node in tree.items():
        out.update(flatten_properties(node, f"{prefix}/{key}"))
    return out


def cursor_from_link(link: Optional[str]) -> Optional[Dict[str, str]]:
    if not link:
        return None
    return dict(parse_qsl(urlsplit(link).query, keep_blank_values=True))


# -------------------------------------------------------------------
# HTTP plumbing
# -------------------------------------------------------------------

class _AstarteService:
    def __init__(
        self,
        base_url: str,
        token: Optional[str],
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    def _get(self, path: str, params: Optional[Mapping[str, str]] = None) -> requests.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        logger.debug("GET %s params=%s", url, dict(params or {}))
        resp = self._session.get(url, params=params, timeout=self.timeout)
        if not resp.ok:
            raise AstarteAPIError(resp.status_code, url, body=resp.text, reason=resp.reason)
        return resp

    def _get_body(self, path: str, params: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        resp = self._get(path, params)
        try:
            body = resp.json()
        except ValueError as exc:
            raise DecodeError(f"{resp.url} did not return JSON") from exc
        if not isinstance(body, Mapping) or "data" not in body:
            raise DecodeError(f"{resp.url} returned a body without data")
        return body


def _segment(value: str) -> str:
    return quote(value, safe="")


# -------------------------------------------------------------------
# AppEngine
# -------------------------------------------------------------------

class AppEngineClient(_AstarteService):
    """Device data access through the AppEngine API."""

    def _device_path(self, realm: str, device_id: str) -> str:
        return f"v1/{_segment(realm)}/devices/{_segment(device_id)}"

    def list_devices(self, realm: str) -> List[str]:
        data = self._get_body(f"v1/{_segment(realm)}/devices")["data"]
        if not isinstance(data, list):
            raise DecodeError(f"Malformed device list: {data!r}")
        return [str(d) for d in data]

    def get_device(self, realm: str, device_id: str) -> DeviceDetails:
        return DeviceDetails.from_json(self._get_body(self._device_path(realm, device_id))["data"])

    def get_properties(self, realm: str, device_id: str, interface_name: str) -> Dict[str, Any]:
        path = f"{self._device_path(realm, device_id)}/interfaces/{_segment(interface_name)}"
        return flatten_properties(self._get_body(path)["data"])

    def get_datastream_snapshot(self, realm: str, device_id: str, interface_name: str) -> Dict[str, Sample]:
        path = f"{self._device_path(realm, device_id)}/interfaces/{_segment(interface_name)}"
        return flatten_samples(self._get_body(path, {"limit": "1"})["data"])

    def get_aggregate_datastream_snapshot(
        self, realm: str, device_id: str, interface_name: str
    ) -> Optional[AggregateSnapshot]:
        path = f"{self._device_path(realm, device_id)}/interfaces/{_segment(interface_name)}"
        data = self._get_body(path, {"limit": "1"})["data"]
        if isinstance(data, Mapping):
            # Single-path aggregates are keyed by their endpoint prefix
            nested = [v for v in data.values() if isinstance(v, list)]
            data = nested[0] if len(nested) == 1 else data
        if not isinstance(data, list):
            raise DecodeError(f"Malformed aggregate snapshot: {data!r}")
        if not data:
            return None

        values = dict(data[0])
        timestamp = parse_timestamp(values.pop("timestamp", None))
        reception = values.pop("reception_timestamp", None)
        return AggregateSnapshot(
            values=values,
            timestamp=timestamp,
            reception_timestamp=parse_timestamp(reception) if reception else timestamp,
        )

    def fetch_samples_page(
        self,
        realm: str,
        device_id: str,
        interface_name: str,
        path: str,
        query: Mapping[str, str],
    ) -> Page:
        endpoint = "/".join(_segment(p) for p in path.split("/") if p)
        url_path = f"{self._device_path(realm, device_id)}/interfaces/{_segment(interface_name)}/{endpoint}"
        resp = self._get(url_path, query)
        try:
            body = resp.json()
        except ValueError as exc:
            raise DecodeError(f"{resp.url} did not return JSON") from exc

        if not isinstance(body, Mapping):
            raise DecodeError(f"{resp.url} returned an unexpected body")
        data = body.get("data") or []
        if not isinstance(data, list):
            raise DecodeError(f"{resp.url} did not return a list of samples")

        next_link = (body.get("links") or {}).get("next")
        if not next_link:
            next_link = (resp.links.get("next") or {}).get("url")

        return Page(
            samples=[Sample.from_json(item) for item in data],
            cursor=cursor_from_link(next_link),
        )

    def datastream_paginator(
        self,
        realm: str,
        device_id: str,
        interface_name: str,
        path: str,
        since: Optional[datetime] = None,
        to: Optional[datetime] = None,
        order: ResultSetOrder = ResultSetOrder.DESCENDING,
        page_size: int = DatastreamPaginator.DEFAULT_PAGE_SIZE,
    ) -> DatastreamPaginator:
        return DatastreamPaginator(
            self,
            realm,
            device_id,
            interface_name,
            path,
            since=since,
            to=to,
            order=order,
            page_size=page_size,
        )


# -------------------------------------------------------------------
# Realm Management
# -------------------------------------------------------------------

class RealmManagementClient(_AstarteService):
    def get_interface(self, realm: str, interface_name: str, major: int) -> InterfaceDescription:
        path = f"v1/{_segment(realm)}/interfaces/{_segment(interface_name)}/{int(major)}"
        data = self._get_body(path)["data"]
        if not isinstance(data, Mapping):
            raise DecodeError(f"Malformed interface description: {data!r}")
        return InterfaceDescription.from_json(data)
