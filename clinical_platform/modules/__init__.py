"""Pluggable processing modules.

This package defines the module execution contract (``BaseModule``) and the
``ModuleManager`` that catalogs modules, drives their lifecycle and executes
them under a timeout guard.
"""

from clinical_platform.modules.base import BaseModule, ExecutionMetadata, ModuleContext
from clinical_platform.modules.manager import ModuleManager

__all__ = ["BaseModule", "ExecutionMetadata", "ModuleContext", "ModuleManager"]
