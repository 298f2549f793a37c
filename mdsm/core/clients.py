from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


CLIENT_ID_BYTES = 32


def new_client_id() -> str:
    return secrets.token_hex(CLIENT_ID_BYTES)


@dataclass(eq=False)
class Client:
    client_id: str
    client_class: str
    client_data: Any = None

    def __setattr__(self, name: str, value: Any) -> None:
        # id and class are fixed once set; client_data stays writable for the embedder
        if name in {"client_id", "client_class"} and name in self.__dict__:
            raise AttributeError(f"{name} is immutable")
        super().__setattr__(name, value)


@dataclass
class ClientStore:
    """Clients of one session, keyed by client_id, in insertion order."""

    _clients: Dict[str, Client] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock)

    def add(self, client_class: str, client_data: Any = None) -> Client:
        with self._lock:
            client_id = new_client_id()
            while client_id in self._clients:
                client_id = new_client_id()
            client = Client(client_id=client_id, client_class=str(client_class), client_data=client_data)
            self._clients[client_id] = client
            return client

    def remove(self, client_id: str) -> bool:
        with self._lock:
            return self._clients.pop(str(client_id), None) is not None

    def find(self, client_id: str) -> Optional[Client]:
        with self._lock:
            return self._clients.get(str(client_id))

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._clients.keys())

    def clear(self) -> None:
        with self._lock:
            self._clients.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __contains__(self, client_id: object) -> bool:
        with self._lock:
            return client_id in self._clients
