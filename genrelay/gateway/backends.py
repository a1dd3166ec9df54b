"""Backend adapter interface and registry.

An adapter exposes one async method per supported operation (named after
the operation, e.g. ``generate_text``, ``embed``) and raises on failure.
Streaming operations are async generators.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from genrelay.gateway.types import BackendHandle

logger = logging.getLogger(__name__)


class BackendAdapter(ABC):
    """Base class for all backend adapters."""

    name: str = ""
    capabilities: frozenset[str] = frozenset()

    def __init__(self, model: str = "", api_key: str | None = None):
        self.model = model
        self.api_key = api_key

    def supports(self, operation: str) -> bool:
        return operation in self.capabilities and callable(getattr(self, operation, None))

    @abstractmethod
    def is_available(self) -> bool:
        """True when the adapter has what it needs (credentials) to serve calls."""
        ...

    def handle(self) -> BackendHandle:
        return BackendHandle(backend_id=self.name, capabilities=frozenset(self.capabilities), model=self.model)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, model={self.model!r})"


class BackendRegistry:
    """Adapters by identifier. The identifier doubles as the admission key."""

    def __init__(self, adapters: list[BackendAdapter] | None = None):
        self._adapters: dict[str, BackendAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: BackendAdapter, backend_id: str | None = None) -> str:
        backend_id = backend_id or adapter.name
        if not backend_id:
            raise ValueError(f"{adapter!r} has no identifier")
        if backend_id in self._adapters:
            logger.info("Replacing backend adapter %s", backend_id)
        self._adapters[backend_id] = adapter
        return backend_id

    def unregister(self, backend_id: str) -> bool:
        return self._adapters.pop(backend_id, None) is not None

    def get(self, backend_id: str) -> BackendAdapter | None:
        return self._adapters.get(backend_id)

    def __contains__(self, backend_id: str) -> bool:
        return backend_id in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    def ids(self) -> list[str]:
        return list(self._adapters)

    def handles(self) -> list[BackendHandle]:
        return [
            BackendHandle(backend_id=backend_id, capabilities=frozenset(a.capabilities), model=a.model)
            for backend_id, a in self._adapters.items()
        ]

    def supporting(self, operation: str) -> list[str]:
        """Identifiers of available adapters that support ``operation``."""
        return [
            backend_id
            for backend_id, a in self._adapters.items()
            if a.is_available() and a.supports(operation)
        ]
