"""In-memory versioned document storage."""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from loguru import logger

from clinical_platform.services.base import DocumentService


class InMemoryDocumentService(DocumentService):
    """Document service keeping every version of every document in memory."""

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._versions: Dict[str, List[Dict[str, Any]]] = {}

    async def store(self, name: str, content: Any, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        document_id = str(uuid4())
        now = datetime.now()
        document = {
            "id": document_id,
            "name": name,
            "content": copy.deepcopy(content),
            "metadata": dict(metadata or {}),
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }
        self._documents[document_id] = document
        self._versions[document_id] = [copy.deepcopy(document)]
        logger.debug(f"Stored document {name} ({document_id})")
        return self._describe(document)

    @staticmethod
    def _describe(document: Dict[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in document.items() if key != "content"}

    async def retrieve(self, document_id: str) -> Optional[Dict[str, Any]]:
        document = self._documents.get(document_id)
        return copy.deepcopy(document) if document else None

    async def update(self, document_id: str, content: Any) -> Dict[str, Any]:
        document = self._documents.get(document_id)
        if document is None:
            raise KeyError(f"Document '{document_id}' not found")
        document["content"] = copy.deepcopy(content)
        document["version"] += 1
        document["updated_at"] = datetime.now()
        self._versions[document_id].append(copy.deepcopy(document))
        return self._describe(document)

    async def delete(self, document_id: str) -> bool:
        self._versions.pop(document_id, None)
        return self._documents.pop(document_id, None) is not None

    async def get_versions(self, document_id: str) -> List[Dict[str, Any]]:
        return [self._describe(version) for version in self._versions.get(document_id, [])]

    async def search(self, **criteria: Any) -> List[Dict[str, Any]]:
        """Match ``name`` as a case-insensitive substring, anything else against metadata."""
        name = criteria.pop("name", None)
        results = []
        for document in self._documents.values():
            if name is not None and name.lower() not in document["name"].lower():
                continue
            if all(document["metadata"].get(key) == value for key, value in criteria.items()):
                results.append(self._describe(document))
        return results

    async def shutdown(self) -> None:
        self._documents.clear()
        self._versions.clear()

    async def health_check(self) -> Dict[str, Any]:
        return {"healthy": True, "documents": len(self._documents)}
