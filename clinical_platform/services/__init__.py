"""Cross-cutting services threaded through to modules.

Contracts live in ``clinical_platform.services.base``; each has one
in-memory implementation in this package. ``ServiceRegistry`` owns their
lifecycle.
"""

from clinical_platform.services.registry import PlatformServices, ServiceRegistry

__all__ = ["PlatformServices", "ServiceRegistry"]
