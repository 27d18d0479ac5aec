"""Tests for the platform services and the service registry."""

from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from clinical_platform.core.config_manager import ConfigManager
from clinical_platform.core.datamodels import AuditEvent, Notification
from clinical_platform.core.exceptions import DependencyError, StartupError
from clinical_platform.core.logging_setup import redact_pii, setup_logging, shutdown_logging
from clinical_platform.services.audit import InMemoryAuditService
from clinical_platform.services.base import PlatformService
from clinical_platform.services.cache import DiskCacheService
from clinical_platform.services.compliance import InMemoryComplianceService
from clinical_platform.services.config import PlatformConfigurationService
from clinical_platform.services.data import InMemoryDataService
from clinical_platform.services.documents import InMemoryDocumentService
from clinical_platform.services.log_service import LoguruLoggingService
from clinical_platform.services.notifications import InMemoryNotificationService
from clinical_platform.services.registry import SERVICE_ORDER, ServiceRegistry
from clinical_platform.services.shared import InMemorySharedDataService
from clinical_platform.services.users import InMemoryUserService


class RecordingService(PlatformService):
    """Service that records lifecycle calls into a shared list."""

    def __init__(self, name, journal, fail_on_init=False):
        self.name = name
        self.journal = journal
        self.fail_on_init = fail_on_init

    async def initialize(self):
        if self.fail_on_init:
            raise RuntimeError(f"{self.name} unavailable")
        self.journal.append(("init", self.name))

    async def shutdown(self):
        self.journal.append(("shutdown", self.name))


class TestPiiRedaction:
    """Test PII redaction in log messages."""

    def test_redacts_email(self):
        assert redact_pii("Contact jane.doe@site.org now") == "Contact [EMAIL] now"

    def test_redacts_ssn_and_phone(self):
        text = redact_pii("SSN 123-45-6789, phone 555-123-4567")

        assert "[SSN]" in text
        assert "[PHONE]" in text
        assert "6789" not in text

    def test_redacts_long_ids(self):
        assert redact_pii("patient 123456789012") == "patient [ID]"

    def test_keeps_short_numbers(self):
        assert redact_pii("visit 3 of 12") == "visit 3 of 12"


class TestLogging:
    """Test log sink installation."""

    @pytest.mark.asyncio
    async def test_file_sinks(self, tmp_path):
        """Test 1: file logging writes application, error and structured logs"""
        from loguru import logger

        setup_logging(log_level="INFO", log_dir=tmp_path, enable_file_logging=True)
        logger.error("Subject mail: jane.doe@site.org")
        await shutdown_logging()

        assert (tmp_path / "application.log").exists()
        assert (tmp_path / "structured.jsonl").exists()
        errors = (tmp_path / "errors.log").read_text()
        assert "[EMAIL]" in errors
        assert "jane.doe@site.org" not in errors

    @pytest.mark.asyncio
    async def test_logging_service(self, config, tmp_path):
        config.enable_file_logging = True
        config.log_dir = str(tmp_path)
        service = LoguruLoggingService(config)

        await service.initialize()
        service.info("Study created", study_id="S-1")
        service.child("engine").warning("Step retried")
        await service.shutdown()

        assert (tmp_path / "application.log").exists()
        assert (await service.health_check())["healthy"] is True


class TestCacheService:
    """Test the diskcache-backed cache."""

    @pytest.mark.asyncio
    async def test_get_set_delete(self, tmp_path):
        """Test 1: values round-trip and misses return the default"""
        cache = DiskCacheService(cache_dir=str(tmp_path / "cache"))
        await cache.initialize()

        await cache.set("protocol:S-1", {"phase": "II"})

        assert await cache.get("protocol:S-1") == {"phase": "II"}
        assert await cache.get("missing", default="none") == "none"
        assert await cache.delete("protocol:S-1") is True
        assert await cache.get("protocol:S-1") is None

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 2
        await cache.shutdown()

    @pytest.mark.asyncio
    async def test_expiry(self, tmp_path):
        """Test 2: entries expire after their ttl"""
        cache = DiskCacheService(cache_dir=str(tmp_path / "cache"))

        await cache.set("short", "value", ttl=1)
        cache.cache.expire(now=datetime.now().timestamp() + 5)

        assert await cache.get("short") is None
        await cache.shutdown()

    @pytest.mark.asyncio
    async def test_clear(self, tmp_path):
        cache = DiskCacheService(cache_dir=str(tmp_path / "cache"))
        await cache.set("a", 1)

        await cache.clear()

        assert (await cache.health_check())["entries"] == 0
        await cache.shutdown()

    @pytest.mark.asyncio
    async def test_cached_none_is_a_hit(self, tmp_path):
        cache = DiskCacheService(cache_dir=str(tmp_path / "cache"))
        await cache.set("site:closed", None)

        assert await cache.get("site:closed", default="unset") is None
        assert cache.get_stats()["hits"] == 1
        assert cache.get_stats()["misses"] == 0
        await cache.shutdown()

    @pytest.mark.asyncio
    async def test_temporary_directory_removed_on_shutdown(self):
        """Test 3: without a cache_dir the service cleans up its own directory"""
        cache = DiskCacheService()
        await cache.initialize()
        directory = Path(cache.cache.directory)
        await cache.set("a", 1)

        assert directory.is_dir()
        await cache.shutdown()

        assert not directory.exists()

    @pytest.mark.asyncio
    async def test_configured_directory_is_kept(self, tmp_path):
        cache = DiskCacheService(cache_dir=str(tmp_path / "cache"))
        await cache.set("a", 1)
        await cache.shutdown()

        assert (tmp_path / "cache").is_dir()
        reopened = DiskCacheService(cache_dir=str(tmp_path / "cache"))
        assert await reopened.get("a") == 1
        await reopened.shutdown()


class TestConfigurationService:
    """Test dotted-key configuration access."""

    def test_aliases_and_fields(self, config):
        service = PlatformConfigurationService(config)

        assert service.get("modules.execution_timeout") == 5.0
        assert service.get("max_concurrent_workflows") == 10

        service.set("workflows.max_concurrent", 3)
        assert config.max_concurrent_workflows == 3

    def test_overlay(self, config):
        """Test 1: unknown keys are kept in an overlay with nested lookup"""
        service = PlatformConfigurationService(config)

        service.set("study", {"sites": 4})

        assert service.get("study.sites") == 4
        assert service.get("study.missing", "default") == "default"
        assert service.get_all()["study"] == {"sites": 4}
        assert "external_service_token" not in service.get_all()

    def test_invalid_value_rejected(self, config):
        service = PlatformConfigurationService(config)

        with pytest.raises(ValueError):
            service.set("platform.environment", "staging")

    @pytest.mark.asyncio
    async def test_reload(self, config, tmp_path, monkeypatch):
        monkeypatch.delenv("CLINICAL_ENV", raising=False)
        manager = ConfigManager(config_path=str(tmp_path / "none.yaml"))
        service = PlatformConfigurationService(config, manager)

        await service.reload()

        assert service.get("platform.environment") == "development"


class TestDataAndDocuments:
    """Test data and document services."""

    @pytest.mark.asyncio
    async def test_data_service(self):
        """Test 1: records are copied and filterable"""
        data = InMemoryDataService()

        saved = await data.save("subjects", {"name": "001", "study_id": "S-1"})
        await data.save("subjects", {"name": "002", "study_id": "S-2"})
        saved["name"] = "mutated"

        stored = await data.find_one("subjects", saved["id"])
        assert stored["name"] == "001"
        assert [r["name"] for r in await data.find("subjects", study_id="S-2")] == ["002"]

        updated = await data.update("subjects", saved["id"], {"status": "enrolled"})
        assert updated["status"] == "enrolled"
        assert await data.delete("subjects", saved["id"]) is True
        with pytest.raises(KeyError):
            await data.update("subjects", saved["id"], {})

    @pytest.mark.asyncio
    async def test_document_versions(self):
        """Test 2: every update keeps a version"""
        documents = InMemoryDocumentService()

        stored = await documents.store("Protocol v1.pdf", b"v1", {"study_id": "S-1"})
        await documents.update(stored["id"], b"v2")

        versions = await documents.get_versions(stored["id"])
        assert [v["version"] for v in versions] == [1, 2]
        assert (await documents.retrieve(stored["id"]))["content"] == b"v2"
        assert len(await documents.search(name="protocol", study_id="S-1")) == 1
        assert await documents.search(study_id="S-2") == []


class TestUsersAndNotifications:
    """Test users, permissions and notifications."""

    @pytest.mark.asyncio
    async def test_roles_and_permissions(self):
        users = InMemoryUserService()
        users.add_user("alice", "Alice", ["data-manager"])

        assert await users.has_role("alice", "data-manager")
        assert await users.has_permission("alice", "workflow:approve")
        assert not await users.has_permission("alice", "audit:read")
        assert await users.has_permission("system", "anything")
        assert not await users.has_role("nobody", "admin")

    @pytest.mark.asyncio
    async def test_sessions(self):
        users = InMemoryUserService(session_ttl=timedelta(seconds=-1))

        session = await users.create_session("system")

        assert await users.get_session(session["id"]) is None
        with pytest.raises(KeyError):
            await users.create_session("nobody")

    @pytest.mark.asyncio
    async def test_notifications(self):
        """Test 1: listeners receive notifications and failures are isolated"""
        notifications = InMemoryNotificationService()
        listener = AsyncMock()
        await notifications.subscribe("alice", Mock(side_effect=RuntimeError("listener bug")))
        await notifications.subscribe("alice", listener)

        note = Notification(recipient="alice", subject="Query raised", message="Please review")
        await notifications.send(note)

        listener.assert_awaited_once_with(note)
        assert len(await notifications.get_notifications("alice", unread_only=True)) == 1
        assert await notifications.mark_as_read("alice", note.id) is True
        assert await notifications.get_notifications("alice", unread_only=True) == []


class TestAuditAndCompliance:
    """Test audit trail and compliance checks."""

    @pytest.mark.asyncio
    async def test_audit_trail_and_search(self):
        audit = InMemoryAuditService(retention_days=30)
        await audit.log(AuditEvent(entity_type="study", entity_id="S-1", action="created", user_id="alice"))
        await audit.log(AuditEvent(entity_type="study", entity_id="S-1", action="updated"))
        await audit.log(AuditEvent(entity_type="study", entity_id="S-2", action="created"))

        assert len(await audit.get_audit_trail("study", "S-1")) == 2
        assert [r.entity_id for r in await audit.search(action="created", user_id="alice")] == ["S-1"]
        assert len(await audit.search(since=datetime.now() - timedelta(minutes=1))) == 3

    @pytest.mark.asyncio
    async def test_audit_retention(self):
        """Test 1: records outside the retention window are purged"""
        audit = InMemoryAuditService(retention_days=30)
        await audit.log(AuditEvent(entity_type="study", entity_id="S-1", action="created"))

        removed = await audit.purge_expired(now=datetime.now() + timedelta(days=31))

        assert removed == 1
        assert await audit.get_audit_trail("study", "S-1") == []

    @pytest.mark.asyncio
    async def test_compliance_validation(self):
        compliance = InMemoryComplianceService()

        report = await compliance.validate("gcp", {"protocol": True})

        assert report["is_compliant"] is False
        assert len(report["violations"]) == 1
        assert report["score"] == 0.6

        full = await compliance.validate("gcp", {"protocol": True, "audit_trail": True, "investigators": ["Dr. A"]})
        assert full["is_compliant"] is True
        assert full["score"] == 1.0

        with pytest.raises(KeyError):
            await compliance.validate("unknown", {})

    @pytest.mark.asyncio
    async def test_signatures(self):
        compliance = InMemoryComplianceService()

        await compliance.create_electronic_signature("report-1", "alice", "approval")

        signatures = await compliance.get_signatures("report-1")
        assert signatures[0]["signer"] == "alice"

    @pytest.mark.asyncio
    async def test_shared_store_copies_values(self):
        shared = InMemorySharedDataService()
        value = {"sites": ["A"]}

        await shared.set("study-S1", "sites", value)
        value["sites"].append("B")

        assert await shared.get("study-S1", "sites") == {"sites": ["A"]}
        assert await shared.get_namespace("study-S1") == {"sites": {"sites": ["A"]}}
        await shared.clear_namespace("study-S1")
        assert await shared.get("study-S1", "sites", "gone") == "gone"


class TestServiceRegistry:
    """Test service lifecycle ordering."""

    @pytest.mark.asyncio
    async def test_initialize_and_shutdown_order(self, config, tmp_path):
        """Test 1: services start in order and stop in reverse"""
        config.cache_dir = str(tmp_path / "cache")
        registry = ServiceRegistry(config, configure_logging=False)
        journal = []
        registry.register_service("data", RecordingService("data", journal))
        registry.register_service("extra", RecordingService("extra", journal))

        await registry.initialize()
        assert registry.is_initialized
        await registry.shutdown()

        assert journal == [("init", "data"), ("init", "extra"), ("shutdown", "extra"), ("shutdown", "data")]
        assert not registry.is_initialized

    @pytest.mark.asyncio
    async def test_failed_service_rolls_back(self, config, tmp_path):
        """Test 2: a failing service shuts down the ones already started"""
        config.cache_dir = str(tmp_path / "cache")
        registry = ServiceRegistry(config, configure_logging=False)
        journal = []
        registry.register_service("data", RecordingService("data", journal))
        registry.register_service("users", RecordingService("users", journal, fail_on_init=True))

        with pytest.raises(StartupError):
            await registry.initialize()

        assert journal == [("init", "data"), ("shutdown", "data")]

    def test_get_services_bundle(self, config):
        registry = ServiceRegistry(config, configure_logging=False)

        services = registry.get_services()

        assert isinstance(services.users, InMemoryUserService)
        assert isinstance(services.cache, DiskCacheService)
        assert list(SERVICE_ORDER)[0] == "logger"

    def test_missing_service(self, config):
        registry = ServiceRegistry(config, configure_logging=False)
        registry.unregister_service("documents")

        with pytest.raises(DependencyError):
            registry.get_service("documents")
        with pytest.raises(DependencyError):
            registry.get_services()

    @pytest.mark.asyncio
    async def test_health_check(self, config, tmp_path):
        config.cache_dir = str(tmp_path / "cache")
        registry = ServiceRegistry(config, configure_logging=False)
        broken = RecordingService("broken", [])
        broken.health_check = AsyncMock(side_effect=RuntimeError("down"))
        registry.register_service("broken", broken)

        report = await registry.health_check()

        assert report["users"]["healthy"] is True
        assert report["broken"] == {"healthy": False, "error": "down"}
