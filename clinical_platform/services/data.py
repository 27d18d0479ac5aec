"""In-memory entity persistence."""

import copy
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from loguru import logger

from clinical_platform.services.base import DataService


class InMemoryDataService(DataService):
    """Stores records per entity name in dictionaries keyed by record id.

    Records are copied on the way in and out so callers cannot mutate
    stored state.
    """

    def __init__(self):
        self._entities: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)

    async def save(self, entity: str, record: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(record)
        stored.setdefault("id", str(uuid4()))
        now = datetime.now()
        stored.setdefault("created_at", now)
        stored["updated_at"] = now
        self._entities[entity][stored["id"]] = stored
        logger.debug(f"Saved {entity}/{stored['id']}")
        return copy.deepcopy(stored)

    async def find_one(self, entity: str, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._entities.get(entity, {}).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def find(self, entity: str, **filters: Any) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(record)
            for record in self._entities.get(entity, {}).values()
            if all(record.get(key) == value for key, value in filters.items())
        ]

    async def update(self, entity: str, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        record = self._entities.get(entity, {}).get(record_id)
        if record is None:
            raise KeyError(f"{entity}/{record_id} not found")
        record.update(copy.deepcopy(changes))
        record["id"] = record_id
        record["updated_at"] = datetime.now()
        return copy.deepcopy(record)

    async def delete(self, entity: str, record_id: str) -> bool:
        return self._entities.get(entity, {}).pop(record_id, None) is not None

    async def shutdown(self) -> None:
        self._entities.clear()

    async def health_check(self) -> Dict[str, Any]:
        return {
            "healthy": True,
            "entities": {name: len(records) for name, records in self._entities.items()},
        }
