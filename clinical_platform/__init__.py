"""Clinical research platform: module and workflow orchestration.

Pluggable processing modules are sequenced into workflows over a shared,
per-instance execution context. See ``clinical_platform.orchestration`` for
the engine and ``clinical_platform.services`` for the cross-cutting services
threaded through to modules.
"""

__version__ = "0.1.0"
