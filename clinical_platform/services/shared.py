"""Namespaced shared data store used by the ``shared-namespace`` output target."""

import copy
from collections import defaultdict
from typing import Any, Dict

from clinical_platform.services.base import SharedDataService


class InMemorySharedDataService(SharedDataService):
    """Shared key/value namespaces held in memory.

    Values are deep-copied on write so a workflow instance cannot later
    mutate what another reader sees.
    """

    def __init__(self):
        self._namespaces: Dict[str, Dict[str, Any]] = defaultdict(dict)

    async def get(self, namespace: str, key: str, default: Any = None) -> Any:
        return self._namespaces.get(namespace, {}).get(key, default)

    async def set(self, namespace: str, key: str, value: Any) -> None:
        self._namespaces[namespace][key] = copy.deepcopy(value)

    async def get_namespace(self, namespace: str) -> Dict[str, Any]:
        return dict(self._namespaces.get(namespace, {}))

    async def clear_namespace(self, namespace: str) -> None:
        self._namespaces.pop(namespace, None)

    async def health_check(self) -> Dict[str, Any]:
        return {"healthy": True, "namespaces": len(self._namespaces)}
