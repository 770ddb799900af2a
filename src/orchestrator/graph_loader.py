"""Graph and rule set document loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_GRAPH_FILE_SIZE_BYTES, MAX_RULESET_FILE_SIZE_BYTES
from .graph import ResourceGraph
from .models import GraphDocument, RuleSetDocument
from .policy import RuleSet

logger = logging.getLogger(__name__)


class GraphLoadError(Exception):
    """Raised when a graph or rule set document cannot be loaded or validated."""

    pass


def _read_mapping(path: Path, max_size: int) -> dict[str, Any]:
    """Read a size-bounded YAML mapping from disk.

    Raises:
        GraphLoadError: If the file is missing, too large, or not a mapping.
    """
    if not path.exists():
        raise GraphLoadError(f"File not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise GraphLoadError(f"Failed to stat {path}: {e}") from e

    if file_size > max_size:
        raise GraphLoadError(f"File exceeds maximum size of {max_size} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise GraphLoadError(f"Failed to read {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise GraphLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise GraphLoadError(f"File must contain a YAML mapping: {path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise GraphLoadError(f"Spec section must be a mapping: {path}")
        return spec_data

    return raw_data


def _validate(model: type[BaseModel], data: dict[str, Any], path: Path) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise GraphLoadError(f"Validation failed for {path}:\n{error_list}") from e


def parse_graph(data: dict[str, Any], source: Path | str = "<memory>") -> ResourceGraph:
    """Validate an already-parsed graph mapping and build the graph."""
    document: GraphDocument = _validate(GraphDocument, data, Path(str(source)))
    return document.to_graph()


def load_graph(path: Path) -> ResourceGraph:
    """Load and validate a resource graph from YAML.

    Raises:
        GraphLoadError: If the document cannot be loaded or fails validation.
    """
    data = _read_mapping(path, MAX_GRAPH_FILE_SIZE_BYTES)
    graph = parse_graph(data, path)
    logger.info("Loaded resource graph from %s", path, extra={"node_count": len(graph)})
    return graph


def load_ruleset(path: Path) -> RuleSet:
    """Load rule set tuning from YAML and apply it to the default rules.

    Raises:
        GraphLoadError: If the document cannot be loaded, fails validation,
            or names unknown rules.
    """
    data = _read_mapping(path, MAX_RULESET_FILE_SIZE_BYTES)
    document: RuleSetDocument = _validate(RuleSetDocument, data, path)
    try:
        ruleset = RuleSet.from_document(document)
    except ValueError as e:
        raise GraphLoadError(f"Invalid rule set {path}: {e}") from e

    logger.info(
        "Loaded rule set from %s",
        path,
        extra={"disabled_rules": sorted(document.disabled_rules)},
    )
    return ruleset
