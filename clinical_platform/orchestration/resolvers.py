"""External service resolvers for step inputs and outputs.

Steps read inputs with source ``external-service`` through ``fetch`` and
write outputs with target ``external-service`` through ``publish``. Two
implementations ship with the platform:

- DataServiceResolver: keys address records in the platform data service
- HttpExternalServiceResolver: keys are paths under a REST base URL
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx
from loguru import logger

from clinical_platform.core.config_manager import PlatformConfig
from clinical_platform.core.datamodels import WorkflowInstance
from clinical_platform.services.base import DataService


class ExternalServiceResolver(ABC):
    """Pluggable source and sink for ``external-service`` step wiring."""

    @abstractmethod
    async def fetch(self, key: str, instance: WorkflowInstance) -> Any:
        """Value for ``key``, or None when the service has none."""

    @abstractmethod
    async def publish(self, key: str, value: Any, instance: WorkflowInstance) -> None:
        """Store ``value`` under ``key``."""

    async def close(self) -> None:
        """Release connections held by the resolver."""


class DataServiceResolver(ExternalServiceResolver):
    """Resolver over the platform data service.

    Keys have the form ``<entity>/<record id>`` to address one record, or
    ``<entity>`` to address every record of the instance's study.
    """

    def __init__(self, data_service: DataService):
        self.data_service = data_service

    @staticmethod
    def _split(key: str) -> Tuple[str, Optional[str]]:
        entity, _, record_id = key.partition("/")
        return entity, record_id or None

    async def fetch(self, key: str, instance: WorkflowInstance) -> Any:
        entity, record_id = self._split(key)
        if record_id is not None:
            return await self.data_service.find_one(entity, record_id)

        records = await self.data_service.find(entity, study_id=instance.context.study_id)
        return records or None

    async def publish(self, key: str, value: Any, instance: WorkflowInstance) -> None:
        entity, record_id = self._split(key)
        record: Dict[str, Any] = dict(value) if isinstance(value, dict) else {"value": value}
        record.setdefault("study_id", instance.context.study_id)
        record.setdefault("instance_id", instance.id)
        if record_id is not None:
            record["id"] = record_id
        await self.data_service.save(entity, record)


class HttpExternalServiceResolver(ExternalServiceResolver):
    """Resolver talking to a REST service.

    ``fetch`` issues ``GET <base_url>/<key>`` and returns the decoded JSON
    body (None on 404). ``publish`` issues ``PUT <base_url>/<key>`` with the
    value and instance identifiers. Connection errors and timeouts are
    retried up to ``max_retries`` times; HTTP errors are raised.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        token: Optional[str] = None,
        max_retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """Initialize the resolver.

        Args:
            base_url: Service base URL
            timeout: Request timeout in seconds
            token: Bearer token sent with every request
            max_retries: Extra attempts after a connection error or timeout
            transport: Custom httpx transport (e.g. httpx.MockTransport in tests)
        """
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport
        )

    @classmethod
    def from_config(cls, config: PlatformConfig) -> "HttpExternalServiceResolver":
        if not config.external_service_url:
            raise ValueError("external_service_url is not configured")
        token = config.external_service_token.get_secret_value() if config.external_service_token else None
        return cls(config.external_service_url, timeout=config.external_service_timeout, token=token)

    async def _request(self, method: str, key: str, **kwargs) -> httpx.Response:
        path = "/" + key.lstrip("/")
        for attempt in range(self.max_retries + 1):
            try:
                logger.debug(f"{method} {self.base_url}{path} (attempt {attempt + 1}/{self.max_retries + 1})")
                return await self.client.request(method, path, **kwargs)
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                logger.warning(f"External service request {method} {path} failed: {e}")
                if attempt == self.max_retries:
                    raise
        raise ConnectionError(f"All attempts to reach {self.base_url}{path} failed")

    async def fetch(self, key: str, instance: WorkflowInstance) -> Any:
        params = {"instance_id": instance.id}
        if instance.context.study_id:
            params["study_id"] = instance.context.study_id

        response = await self._request("GET", key, params=params)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def publish(self, key: str, value: Any, instance: WorkflowInstance) -> None:
        payload = {
            "value": value,
            "instance_id": instance.id,
            "workflow_id": instance.workflow_id,
            "study_id": instance.context.study_id,
        }
        response = await self._request("PUT", key, json=payload)
        response.raise_for_status()
        logger.debug(f"Published {key} to external service ({response.status_code})")

    async def close(self) -> None:
        await self.client.aclose()
