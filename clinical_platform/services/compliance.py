"""In-memory compliance checks and electronic signatures.

Frameworks are described as rule tables: keys that must be present
(violations when missing) and keys that should be present (recommendations
when missing). The score starts at 1.0 and drops by the framework's
violation and recommendation weights.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from loguru import logger

from clinical_platform.services.base import ComplianceService


@dataclass
class ComplianceFramework:
    """Rule table for one regulatory framework."""
    name: str
    required: Dict[str, str] = field(default_factory=dict)
    recommended: Dict[str, str] = field(default_factory=dict)
    violation_weight: float = 0.3
    recommendation_weight: float = 0.1


DEFAULT_FRAMEWORKS = {
    "gcp": ComplianceFramework(
        name="ICH Good Clinical Practice",
        required={
            "protocol": "Protocol document is required for GCP compliance",
            "audit_trail": "Audit trail is required for GCP compliance",
        },
        recommended={
            "investigators": "Consider documenting principal investigators",
        },
    ),
    "21cfr11": ComplianceFramework(
        name="21 CFR Part 11",
        required={
            "electronic_signature": "Electronic signature is required for 21 CFR Part 11 compliance",
            "audit_trail": "Complete audit trail is required for 21 CFR Part 11 compliance",
        },
        recommended={
            "data_integrity_checks": "Implement data integrity validation checks",
        },
        violation_weight=0.4,
    ),
    "gdpr": ComplianceFramework(
        name="GDPR",
        required={
            "consent_records": "Consent records are required for GDPR compliance",
            "retention_policy": "Data retention policy is required for GDPR compliance",
        },
        recommended={
            "data_subject_rights": "Document data subject rights procedures",
            "privacy_by_design": "Implement privacy by design principles",
        },
    ),
}


class InMemoryComplianceService(ComplianceService):
    """Compliance service evaluating rule tables held in memory."""

    def __init__(self, frameworks: Optional[Dict[str, ComplianceFramework]] = None):
        self.frameworks = dict(frameworks or DEFAULT_FRAMEWORKS)
        self._signatures: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    def register_framework(self, key: str, framework: ComplianceFramework) -> None:
        self.frameworks[key] = framework

    async def validate(self, framework: str, data: Dict[str, Any]) -> Dict[str, Any]:
        rules = self.frameworks.get(framework)
        if rules is None:
            raise KeyError(f"Unknown compliance framework '{framework}'")

        violations = [message for key, message in rules.required.items() if not data.get(key)]
        recommendations = [message for key, message in rules.recommended.items() if not data.get(key)]
        score = max(
            0.0,
            1.0 - len(violations) * rules.violation_weight - len(recommendations) * rules.recommendation_weight
        )

        if violations:
            logger.warning(f"{rules.name}: {len(violations)} violations")
        return {
            "framework": framework,
            "is_compliant": not violations,
            "violations": violations,
            "recommendations": recommendations,
            "score": round(score, 2),
        }

    async def create_electronic_signature(self, entity_id: str, signer: str, meaning: str) -> Dict[str, Any]:
        signature = {
            "id": str(uuid4()),
            "entity_id": entity_id,
            "signer": signer,
            "meaning": meaning,
            "signed_at": datetime.now(),
        }
        self._signatures[entity_id].append(signature)
        logger.info(f"Electronic signature by {signer} on {entity_id} ({meaning})")
        return dict(signature)

    async def get_signatures(self, entity_id: str) -> List[Dict[str, Any]]:
        return [dict(signature) for signature in self._signatures.get(entity_id, [])]

    async def shutdown(self) -> None:
        self._signatures.clear()
