"""Pydantic models describing workflow definitions."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class WorkflowStep(BaseModel):
    """One step of a workflow, bound to an agent capability."""

    step_id: str
    name: str
    agent_capability_id: str
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    approval_threshold: Optional[float] = Field(
        default=None, description="Overrides the engine-wide approval threshold"
    )

    @field_validator("input_schema", "output_schema", mode="before")
    @classmethod
    def _parse_schema_text(cls, v: Any) -> Any:
        # Definitions authored as JSON text are accepted as well as mappings.
        if isinstance(v, str):
            if not v.strip():
                return None
            return json.loads(v)
        return v

    @field_validator("agent_capability_id")
    @classmethod
    def _ensure_capability(cls, v: str) -> str:
        if not v:
            raise ValueError("agent_capability_id must be a non-empty string")
        return v


class WorkflowDefinition(BaseModel):
    """Ordered list of steps making up a workflow."""

    id: str
    name: str = ""
    description: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)

    def step_at(self, index: int) -> Optional[WorkflowStep]:
        """Return the step at 1-based ``index`` or ``None`` when out of range."""
        if 1 <= index <= len(self.steps):
            return self.steps[index - 1]
        return None

    def index_of(self, step_id: str) -> Optional[int]:
        """Return the 1-based index of ``step_id``."""
        for position, step in enumerate(self.steps, start=1):
            if step.step_id == step_id:
                return position
        return None
