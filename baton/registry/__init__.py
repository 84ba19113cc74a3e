"""Workflow definition registry."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

import yaml

from .models import WorkflowDefinition, WorkflowStep


class WorkflowRegistry(Protocol):
    """Read-only lookup of workflow definitions."""

    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """Return the definition or ``None`` when unknown."""


class InMemoryWorkflowRegistry(WorkflowRegistry):
    """Keep workflow definitions in process memory."""

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition

    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return self._definitions.get(definition_id)

    def list_definitions(self) -> List[WorkflowDefinition]:
        return list(self._definitions.values())


def load_definitions(path: str | Path) -> InMemoryWorkflowRegistry:
    """Build a registry from a YAML file.

    The file holds a top-level ``workflows`` list whose entries follow the
    :class:`WorkflowDefinition` model.
    """

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    definitions = [WorkflowDefinition(**item) for item in data.get("workflows", [])]
    return InMemoryWorkflowRegistry(definitions)


# Process-wide default registry used when no other registry is configured.
REGISTRY = InMemoryWorkflowRegistry()


def register_workflow(definition: WorkflowDefinition) -> None:
    """Add ``definition`` to ``REGISTRY``, replacing any previous version."""
    REGISTRY.register(definition)


__all__ = [
    "WorkflowStep",
    "WorkflowDefinition",
    "WorkflowRegistry",
    "InMemoryWorkflowRegistry",
    "load_definitions",
    "REGISTRY",
    "register_workflow",
]
