"""
Time-windowed, ordered pagination over datastream samples.

A DatastreamPaginator walks the closed window [since, to] of one
device/interface/path one page at a time. The AppEngine API returns every
page already sorted in the requested order, so pages are forwarded as they
arrive and never re-sorted. The continuation link handed back by the server
is kept as an opaque cursor for the next request.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol

from errors import DecodeError


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_FRACTION_RE = re.compile(r"\.(\d+)")


class ResultSetOrder(enum.Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


def parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise DecodeError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # fromisoformat wants exactly microsecond precision on older interpreters
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise DecodeError(f"Invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _aware(value: datetime) -> datetime:
    # Naive datetimes are local time
    return value if value.tzinfo is not None else value.astimezone()


def format_timestamp(value: datetime) -> str:
    return _aware(value).astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Sample:
    value: Any
    timestamp: datetime
    reception_timestamp: datetime

    @classmethod
    def from_json(cls, data: Any) -> "Sample":
        if not isinstance(data, Mapping) or "value" not in data or "timestamp" not in data:
            raise DecodeError(f"Malformed datastream sample: {data!r}")
        timestamp = parse_timestamp(data["timestamp"])
        reception = data.get("reception_timestamp")
        return cls(
            value=data["value"],
            timestamp=timestamp,
            reception_timestamp=parse_timestamp(reception) if reception else timestamp,
        )


@dataclass(frozen=True)
class Page:
    samples: List[Sample]
    cursor: Optional[Dict[str, str]] = None

    @property
    def has_next(self) -> bool:
        return self.cursor is not None


class SamplePageSource(Protocol):
    def fetch_samples_page(
        self,
        realm: str,
        device_id: str,
        interface_name: str,
        path: str,
        query: Mapping[str, str],
    ) -> Page:
        ...


@dataclass
class PaginationState:
    realm: str
    device_id: str
    interface_name: str
    path: str
    window_start: datetime
    window_end: datetime
    order: ResultSetOrder
    cursor: Optional[Dict[str, str]] = field(default=None)


class DatastreamPaginator:
    DEFAULT_PAGE_SIZE = 100

    def __init__(
        self,
        source: SamplePageSource,
        realm: str,
        device_id: str,
        interface_name: str,
        path: str,
        since: Optional[datetime] = None,
        to: Optional[datetime] = None,
        order: ResultSetOrder = ResultSetOrder.DESCENDING,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._source = source
        self._page_size = page_size
        self._state = PaginationState(
            realm=realm,
            device_id=device_id,
            interface_name=interface_name,
            path=path if path.startswith("/") else f"/{path}",
            window_start=_aware(since) if since else EPOCH,
            window_end=_aware(to) if to else datetime.now(timezone.utc),
            order=order,
        )
        self._has_next = self._state.window_start <= self._state.window_end

    @property
    def state(self) -> PaginationState:
        return self._state

    def has_next_page(self) -> bool:
        return self._has_next

    def get_next_page(self) -> List[Sample]:
        """
        Fetch the next page of samples.

        Returns an empty list without touching the network once the
        paginator is exhausted. Errors propagate and leave the cursor
        where it was.
        """
        if not self._has_next:
            return []

        state = self._state
        page = self._source.fetch_samples_page(
            state.realm,
            state.device_id,
            state.interface_name,
            state.path,
            self._query(),
        )

        state.cursor = page.cursor
        # An empty page cannot advance the window, whatever the server claims
        self._has_next = page.has_next and bool(page.samples)
        return list(page.samples)

    def __iter__(self) -> Iterator[List[Sample]]:
        while self.has_next_page():
            yield self.get_next_page()

    def _query(self) -> Dict[str, str]:
        state = self._state
        if state.cursor is not None:
            return dict(state.cursor)
        return {
            "since": format_timestamp(state.window_start),
            "to": format_timestamp(state.window_end),
            "limit": str(self._page_size),
            "order": state.order.value,
        }


def iter_samples(paginator: DatastreamPaginator, limit: int = 0) -> Iterator[Sample]:
    """Yield samples lazily, fetching no page beyond the one holding the last wanted sample.

    limit <= 0 drains the whole window.
    """
    produced = 0
    while paginator.has_next_page():
        for sample in paginator.get_next_page():
            yield sample
            produced += 1
            if 0 < limit <= produced:
                return
