"""Registry of immutable workflow definitions."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from loguru import logger
from pydantic import ValidationError

from clinical_platform.core.datamodels import WorkflowDefinition, WorkflowTrigger
from clinical_platform.core.exceptions import (
    ConfigurationError,
    DuplicateWorkflowError,
    WorkflowNotFoundError,
)


class WorkflowRegistry:
    """Stores workflow definitions by id.

    Definitions are frozen and stored as deep copies, so a registered
    workflow cannot change. A new version is registered under a new id.
    """

    def __init__(self):
        self._definitions: Dict[str, WorkflowDefinition] = {}

    def register(
        self,
        workflow_id: str,
        definition: Union[WorkflowDefinition, Dict[str, Any]]
    ) -> WorkflowDefinition:
        """Register a workflow definition.

        Args:
            workflow_id: Id to register under; must match the definition's id
            definition: Definition model or a dictionary of its fields

        Returns:
            The stored definition

        Raises:
            DuplicateWorkflowError: If the id is already registered
            ConfigurationError: If the definition is invalid or its id differs
        """
        if isinstance(definition, dict):
            try:
                definition = WorkflowDefinition(**{"id": workflow_id, **definition})
            except ValidationError as e:
                raise ConfigurationError(f"Invalid workflow definition '{workflow_id}': {e}", config_key=workflow_id) from e

        if definition.id != workflow_id:
            raise ConfigurationError(
                f"Workflow registered as '{workflow_id}' declares id '{definition.id}'",
                config_key=workflow_id
            )
        if workflow_id in self._definitions:
            raise DuplicateWorkflowError(workflow_id)

        stored = definition.model_copy(deep=True)
        self._definitions[workflow_id] = stored
        logger.info(f"Registered workflow {workflow_id} v{stored.version} ({len(stored.steps)} steps)")
        return stored

    def unregister(self, workflow_id: str) -> None:
        """Remove a workflow definition.

        Raises:
            WorkflowNotFoundError: If the id is not registered
        """
        if self._definitions.pop(workflow_id, None) is None:
            raise WorkflowNotFoundError(workflow_id)
        logger.info(f"Unregistered workflow {workflow_id}")

    def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self._definitions.get(workflow_id)

    def require(self, workflow_id: str) -> WorkflowDefinition:
        """Get a definition or raise WorkflowNotFoundError."""
        definition = self._definitions.get(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)
        return definition

    def get_all(self) -> List[WorkflowDefinition]:
        return list(self._definitions.values())

    def find_event_triggers(self, event_name: str) -> List[Tuple[WorkflowDefinition, WorkflowTrigger]]:
        """Every (definition, trigger) pair with an event trigger for ``event_name``."""
        return [
            (definition, trigger)
            for definition in self._definitions.values()
            for trigger in definition.event_triggers(event_name)
        ]

    def load_from_yaml(self, path: Union[str, Path]) -> List[WorkflowDefinition]:
        """Register every workflow defined in a YAML file.

        The file holds either a list of definitions or a mapping with a
        ``workflows`` list.

        Raises:
            ConfigurationError: If the file is missing or a definition is invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Workflow definitions file not found: {path}", config_key="workflow_definitions_path")

        with open(path, 'r') as f:
            content = yaml.safe_load(f) or []

        entries = content.get("workflows", []) if isinstance(content, dict) else content
        registered = []
        for entry in entries:
            if "id" not in entry:
                raise ConfigurationError(f"Workflow definition without id in {path}", config_key="workflow_definitions_path")
            registered.append(self.register(entry["id"], entry))

        logger.info(f"Loaded {len(registered)} workflows from {path}")
        return registered

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
