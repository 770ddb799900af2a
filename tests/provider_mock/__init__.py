"""Provider mock for executor, health and pipeline testing.

This package provides scripted stand-ins for the external collaborators
so tests can drive every execution path deterministically, without a
cloud provider and without real sleeps.

Key Features:
- Per-node scripted apply outcomes (results, raised errors, callables)
- Concurrency tracking for worker pool bounds
- Scripted status probe with published attributes
- Fake monotonic clock whose sleep advances time instantly

Usage:
    from provider_mock import FakeClock, ScriptedProvisioner

    clock = FakeClock()
    provisioner = ScriptedProvisioner({"b": [transient(), transient()]})
    executor = Executor(gate, sleep=clock.sleep, clock=clock)
    result = await executor.apply(plan, record, provisioner)

    assert provisioner.attempts("b") == 3
    assert clock.sleeps == [1.0, 2.0]
"""

from .clock import FakeClock
from .probe import ScriptedProbe, UnhealthyProbe
from .provisioner import (
    CALLABLE_PROVISIONER,
    CallableProvisioner,
    FailingProvisioner,
    ScriptedProvisioner,
    fatal,
    transient,
)
from .support import approve_plan, make_graph

__all__ = [
    "CALLABLE_PROVISIONER",
    "CallableProvisioner",
    "FailingProvisioner",
    "FakeClock",
    "ScriptedProbe",
    "ScriptedProvisioner",
    "UnhealthyProbe",
    "approve_plan",
    "fatal",
    "make_graph",
    "transient",
]
