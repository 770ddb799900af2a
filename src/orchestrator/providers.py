"""Provider loading and the bundled dry-run provider.

Real provider bindings live outside this package and are referenced by
``module:attribute`` path. The attribute may be a class (instantiated
without arguments), a factory function or method, or an instance.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from typing import Any

from .graph import ResourceNode
from .interfaces import ProbeResult, ProbeStatus, ProvisionResult

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "orchestrator.providers:DryRunProvider"


class ProviderLoadError(Exception):
    """Raised when a provider reference cannot be resolved."""

    pass


class DryRunProvider:
    """Provisioner and status probe that changes nothing.

    Every apply and verify succeeds and every poll reports Ready, which
    lets a run rehearse ordering, gating and checkpointing end to end.
    """

    def __init__(self) -> None:
        self.applied: list[str] = []

    def apply(self, node: ResourceNode) -> ProvisionResult:
        logger.info(
            "Dry run: would apply resource",
            extra={"node_id": node.id, "node_type": node.type},
        )
        self.applied.append(node.id)
        return ProvisionResult.succeeded("dry run")

    def verify(self, node: ResourceNode) -> ProvisionResult:
        return ProvisionResult.succeeded("dry run")

    def poll(self, node: ResourceNode) -> ProbeResult:
        return ProbeResult(status=ProbeStatus.READY, message="dry run")


def load_provider(reference: str) -> Any:
    """Resolve ``module:attribute`` to a provider object.

    Raises:
        ProviderLoadError: If the reference is malformed or cannot be imported.
    """
    module_path, sep, attribute = reference.partition(":")
    if not sep or not module_path or not attribute:
        raise ProviderLoadError(
            f"Invalid provider reference '{reference}': expected 'module.path:Attribute'"
        )

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ProviderLoadError(f"Cannot import provider module '{module_path}': {e}") from e

    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ProviderLoadError(f"'{module_path}' has no attribute '{attribute}'") from e

    # Instances are returned as is, even when they define __call__
    if inspect.isclass(target) or inspect.isfunction(target) or inspect.ismethod(target):
        provider = target()
    else:
        provider = target
    logger.debug("Provider loaded", extra={"provider": reference})
    return provider
