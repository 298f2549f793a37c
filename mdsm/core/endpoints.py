from __future__ import annotations

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

from mdsm.core.errors import ConfigError, DuplicateEndpointError


def normalize_url(url: str) -> str:
    """
    Strip exactly one leading and one trailing '/'.

    Only one of each is removed, so "//a//" becomes "/a/". Idempotent for URLs
    that are already normalized.
    """
    out = str(url or "")
    if out.startswith("/"):
        out = out[1:]
    if out.endswith("/"):
        out = out[:-1]
    return out


@dataclass(frozen=True)
class Endpoint:
    url: str
    allowed_class_types: FrozenSet[str]
    handler: Callable[..., Any]

    def allows(self, client_class: str) -> bool:
        return client_class in self.allowed_class_types


def _coerce(entry: Any) -> Endpoint:
    if isinstance(entry, Endpoint):
        return Endpoint(url=normalize_url(entry.url), allowed_class_types=entry.allowed_class_types, handler=entry.handler)
    if isinstance(entry, Mapping):
        url = entry.get("url")
        classes = entry.get("allowed_class_types", entry.get("allowedClassTypes"))
        handler = entry.get("handler")
    else:
        url = getattr(entry, "url", None)
        classes = getattr(entry, "allowed_class_types", None)
        handler = getattr(entry, "handler", None)
    if url is None:
        raise ConfigError("Endpoint is missing a url.")
    if not callable(handler):
        raise ConfigError("Endpoint handler must be callable.", url=str(url))
    if isinstance(classes, str) or classes is None:
        raise ConfigError("allowed_class_types must be a list of class names.", url=str(url))
    return Endpoint(url=normalize_url(url), allowed_class_types=frozenset(str(c) for c in classes), handler=handler)


class EndpointTable:
    """
    Immutable snapshot of registered endpoints. Sessions keep the table that
    was active when they were created.
    """

    def __init__(self, endpoints: Iterable[Endpoint] = ()):
        by_url: Dict[str, Endpoint] = {}
        for ep in endpoints:
            if ep.url in by_url:
                raise DuplicateEndpointError(url=ep.url)
            by_url[ep.url] = ep
        self._by_url: Mapping[str, Endpoint] = MappingProxyType(by_url)

    def match(self, url: str) -> Optional[Endpoint]:
        return self._by_url.get(normalize_url(url))

    def is_valid(self, url: str) -> bool:
        return self.match(url) is not None

    def urls(self) -> List[str]:
        return list(self._by_url.keys())

    def __len__(self) -> int:
        return len(self._by_url)

    def __iter__(self):
        return iter(self._by_url.values())


class EndpointRegistry:
    def __init__(self, entries: Iterable[Any] = ()):
        self._lock = threading.Lock()
        self._table = EndpointTable()
        entries = list(entries)
        if entries:
            self.register(entries)

    def register(self, entries: Iterable[Any]) -> EndpointTable:
        """
        Replace the active table with one built from `entries`.
        On error the previous table stays active.
        """
        table = EndpointTable(_coerce(e) for e in entries)
        with self._lock:
            self._table = table
        return table

    def snapshot(self) -> EndpointTable:
        with self._lock:
            return self._table

    def match(self, url: str) -> Optional[Endpoint]:
        return self.snapshot().match(url)

    def is_valid(self, url: str) -> bool:
        return self.snapshot().is_valid(url)
