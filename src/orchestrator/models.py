"""Pydantic models for graph and rule set documents.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to the in-memory ResourceGraph and RuleSet
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import MAX_GRAPH_NODES
from .graph import ResourceGraph

# Identifiers are used as artifact keys and log fields
VALID_NODE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$"


# =============================================================================
# Graph Documents
# =============================================================================


class ResourceSpec(BaseModel):
    """A single resource declaration."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    id: Annotated[str, Field(pattern=VALID_NODE_ID_PATTERN)]
    type: Annotated[str, Field(min_length=1, max_length=64)]
    config: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("dependsOn must not contain duplicates")
        return v

    @model_validator(mode="after")
    def validate_no_self_dependency(self) -> ResourceSpec:
        if self.id in self.depends_on:
            raise ValueError(f"resource '{self.id}' cannot depend on itself")
        return self


class GraphDocument(BaseModel):
    """A resource graph document."""

    model_config = {"extra": "ignore"}

    name: str | None = None
    resources: Annotated[list[ResourceSpec], Field(max_length=MAX_GRAPH_NODES)]

    @field_validator("resources")
    @classmethod
    def validate_unique_ids(cls, v: list[ResourceSpec]) -> list[ResourceSpec]:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for resource in v:
            if resource.id in seen:
                duplicates.add(resource.id)
            seen.add(resource.id)
        if duplicates:
            raise ValueError(f"duplicate resource ids: {sorted(duplicates)}")
        return v

    def to_graph(self) -> ResourceGraph:
        """Build the in-memory resource graph."""
        graph = ResourceGraph()
        for resource in self.resources:
            graph.add_node(
                resource.id,
                resource.type,
                config=resource.config,
                depends_on=resource.depends_on,
            )
        return graph


# =============================================================================
# Rule Set Documents
# =============================================================================


class RuleSetDocument(BaseModel):
    """Rule set tuning loaded from YAML.

    Example:
        disabledRules: [cost-center-tag]
        severityOverrides:
          overlapping-address-spaces: critical
        networkExposedTypes: [storage, key-vault]
        requiredConfig:
          network: [addressSpace]
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    disabled_rules: list[str] = Field(default_factory=list, alias="disabledRules")
    severity_overrides: dict[str, str] = Field(default_factory=dict, alias="severityOverrides")
    network_exposed_types: list[str] | None = Field(None, alias="networkExposedTypes")
    required_config: dict[str, list[str]] | None = Field(None, alias="requiredConfig")

    @field_validator("severity_overrides")
    @classmethod
    def validate_severities(cls, v: dict[str, str]) -> dict[str, str]:
        valid = {"info", "warning", "critical"}
        for rule, severity in v.items():
            if severity.lower() not in valid:
                raise ValueError(f"severity for '{rule}' must be one of {sorted(valid)}")
        return {rule: severity.lower() for rule, severity in v.items()}
