"""In-memory audit trail.

Keeps audit records in process memory, indexed by entity, with a
retention window enforced by ``purge_expired``.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from clinical_platform.core.datamodels import AuditEvent, AuditRecord
from clinical_platform.services.base import AuditService


class InMemoryAuditService(AuditService):
    """Audit service holding records in memory.

    Search criteria match record fields exactly, except ``since`` and
    ``until`` which bound the record timestamp.
    """

    def __init__(self, retention_days: int = 90):
        self.retention_days = retention_days
        self._records: List[AuditRecord] = []
        self._by_entity: Dict[tuple, List[AuditRecord]] = defaultdict(list)

    async def log(self, event: AuditEvent) -> AuditRecord:
        record = AuditRecord(**event.model_dump())
        self._records.append(record)
        self._by_entity[(record.entity_type, record.entity_id)].append(record)
        logger.debug(f"Audit: {record.action} {record.entity_type}/{record.entity_id} by {record.user_id}")
        return record

    async def get_audit_trail(self, entity_type: str, entity_id: str) -> List[AuditRecord]:
        records = self._by_entity.get((entity_type, entity_id), [])
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    async def search(self, **criteria: Any) -> List[AuditRecord]:
        since = criteria.pop("since", None)
        until = criteria.pop("until", None)

        results = []
        for record in self._records:
            if since is not None and record.timestamp < since:
                continue
            if until is not None and record.timestamp > until:
                continue
            if all(getattr(record, field, None) == value for field, value in criteria.items()):
                results.append(record)
        return results

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop records older than the retention window.

        Returns:
            Number of records removed
        """
        cutoff = (now or datetime.now()) - timedelta(days=self.retention_days)
        kept = [record for record in self._records if record.timestamp >= cutoff]
        removed = len(self._records) - len(kept)
        if removed:
            self._records = kept
            self._by_entity.clear()
            for record in kept:
                self._by_entity[(record.entity_type, record.entity_id)].append(record)
            logger.info(f"Purged {removed} audit records older than {self.retention_days} days")
        return removed

    async def shutdown(self) -> None:
        await self.purge_expired()

    async def health_check(self) -> Dict[str, Any]:
        return {"healthy": True, "records": len(self._records)}
